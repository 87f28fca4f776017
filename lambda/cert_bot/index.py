import json
import logging
import os
from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from cert_plugin import aws
from cert_plugin.acme_client import AcmeClient
from cert_plugin.cert_store import CertificateStore
from cert_plugin.clock import Clock, Deadline
from cert_plugin.distribution_binder import DistributionBinder
from cert_plugin.dns_challenge import DnsChallengeSolver
from cert_plugin.errors import CertificateNotFound, StoreConflict
from cert_plugin.models import OutcomeKind
from cert_plugin.notifier import Notifier
from cert_plugin.orchestrator import RenewalOrchestrator
from cert_plugin.settings import Settings, load_settings

logger = logging.getLogger()
logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

# --- Time kept back from the Lambda timeout for challenge cleanup ---
CLEANUP_RESERVE_SECONDS = 60.0


def build_orchestrator(settings: Settings, context: Any) -> RenewalOrchestrator:
    """Wire the renewal run from the function's settings and remaining time."""
    clock = Clock()
    deadline = Deadline.from_context(clock, context, reserve=CLEANUP_RESERVE_SECONDS)
    store = CertificateStore(
        aws.client("iam", settings.region),
        aws.client("s3", settings.region),
        settings.bucket,
        clock,
        settings.stack_name,
        settings.certificate_path,
    )
    solver = DnsChallengeSolver(aws.client("route53", settings.region), clock, deadline)
    acme = AcmeClient(settings.acme_directory_url, settings.email, solver, clock, deadline)
    binder = DistributionBinder(
        aws.client("cloudfront", settings.region),
        clock,
        page_size=settings.dist_page_size,
        max_items=settings.max_dist_items,
        deadline=deadline,
    )
    notifier = Notifier(aws.client("sns", settings.region), settings.topic_arn, settings.stack_name)
    return RenewalOrchestrator(
        store, acme, binder, notifier, clock, deadline, settings.renew_interval_days
    )


def build_store() -> CertificateStore:
    # the management functions only talk to IAM
    return CertificateStore(
        aws.client("iam", os.environ.get("REGION")),
        None,
        None,
        Clock(),
        os.environ.get("STACK_NAME", "cloudfront-ssl-plugin"),
    )


def _response(status_code: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(payload),
    }


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    Entry point for the schedule and stack lifecycle rules. Both send events
    the function does not need to read: every run works off the configured
    domain list.
    """
    logger.info("Certificate run triggered by %s", (event or {}).get("detail-type", "direct invocation"))
    settings = load_settings()
    outcomes = build_orchestrator(settings, context).run(settings.domain_sets)

    failed = [o for o in outcomes if o.kind is OutcomeKind.FAILED]
    for outcome in outcomes:
        logger.info("%s: %s (%s)", outcome.domain_set, outcome.kind.value, outcome.reason)
    return _response(500 if failed else 200, {"outcomes": [o.as_dict() for o in outcomes]})


def list_certificates_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """GET /list-ssl-cert"""
    params = (event or {}).get("queryStringParameters") or {}
    path_prefix = params.get("path", "/")
    try:
        certificates = build_store().list(path_prefix)
    except (ClientError, BotoCoreError) as e:
        logger.error("Failed to list server certificates: %s", e)
        return _response(500, {"message": f"Failed to list server certificates: {e}"})
    return _response(200, {"certificates": certificates})


def delete_certificate_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """POST /delete-ssl-cert with a JSON body {"name": "<server certificate name>"}"""
    try:
        body = json.loads((event or {}).get("body") or "{}")
    except json.JSONDecodeError:
        return _response(400, {"message": "Request body must be JSON"})
    name = body.get("name") if isinstance(body, dict) else None
    if not name:
        return _response(400, {"message": "Missing 'name' of the server certificate to delete"})

    try:
        build_store().delete(name)
    except CertificateNotFound as e:
        return _response(404, {"message": str(e)})
    except StoreConflict as e:
        return _response(409, {"message": str(e)})
    except (ClientError, BotoCoreError) as e:
        logger.error("Failed to delete server certificate %s: %s", name, e)
        return _response(500, {"message": f"Failed to delete '{name}': {e}"})
    return _response(200, {"message": f"Deleted server certificate '{name}'", "name": name})
