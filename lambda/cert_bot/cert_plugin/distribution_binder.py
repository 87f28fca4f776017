import logging
from typing import List, Optional, Tuple

from botocore.exceptions import ClientError

from .aws import error_code
from .clock import Clock, Deadline
from .errors import DistributionUpdateFailed
from .models import DomainSet

logger = logging.getLogger(__name__)

DEFAULT_PROTOCOL_VERSION = "TLSv1.2_2021"

# CloudFront reports a certificate IAM has not propagated yet as InvalidViewerCertificate
RETRYABLE_UPDATE_ERRORS = {"PreconditionFailed", "InvalidViewerCertificate"}

DEADLINE_REACHED = "DeadlineReached"


class DistributionBinder:
    """
    Points the CloudFront distributions served by a DomainSet at its
    IAM server certificate.
    """

    MAX_UPDATE_ATTEMPTS = 3
    RETRY_DELAY = 5.0

    def __init__(
        self,
        cloudfront,
        clock: Clock,
        page_size: int = 20,
        max_items: int = 200,
        deadline: Optional[Deadline] = None,
    ):
        self._cloudfront = cloudfront
        self._clock = clock
        self._page_size = page_size
        self._max_items = max_items
        self._deadline = deadline

    def _time_left(self, needed: float = 0.0) -> bool:
        return self._deadline is None or self._deadline.remaining() > needed

    def _distributions(self) -> Tuple[List[dict], bool]:
        """Distribution summaries, and whether the listing reached its end."""
        summaries = []
        marker = None
        while len(summaries) < self._max_items:
            if not self._time_left():
                logger.warning("Invocation deadline reached after listing %d distributions", len(summaries))
                return summaries, False
            kwargs = {"MaxItems": str(min(self._page_size, self._max_items - len(summaries)))}
            if marker:
                kwargs["Marker"] = marker
            listing = self._cloudfront.list_distributions(**kwargs)["DistributionList"]
            summaries.extend(listing.get("Items", []))
            if not listing.get("IsTruncated"):
                break
            marker = listing["NextMarker"]
        return summaries, True

    @staticmethod
    def matches(domain_set: DomainSet, summary: dict) -> bool:
        aliases = summary.get("Aliases", {}).get("Items", [])
        return bool(aliases) and all(domain_set.covers(alias) for alias in aliases)

    def _update(self, distribution_id: str, certificate_id: str) -> bool:
        """Read-modify-write of the viewer certificate. False when nothing changed."""
        for attempt in range(1, self.MAX_UPDATE_ATTEMPTS + 1):
            response = self._cloudfront.get_distribution_config(Id=distribution_id)
            config = response["DistributionConfig"]
            current = config.get("ViewerCertificate", {})
            if current.get("IAMCertificateId") == certificate_id:
                return False
            config["ViewerCertificate"] = {
                "IAMCertificateId": certificate_id,
                "SSLSupportMethod": "sni-only",
                "MinimumProtocolVersion": current.get("MinimumProtocolVersion") or DEFAULT_PROTOCOL_VERSION,
                "CloudFrontDefaultCertificate": False,
            }
            try:
                self._cloudfront.update_distribution(
                    Id=distribution_id,
                    IfMatch=response["ETag"],
                    DistributionConfig=config,
                )
                return True
            except ClientError as e:
                delay = self.RETRY_DELAY * attempt
                if error_code(e) not in RETRYABLE_UPDATE_ERRORS or attempt == self.MAX_UPDATE_ATTEMPTS:
                    raise
                if not self._time_left(delay):
                    logger.warning("No time left to retry distribution %s after %s", distribution_id, error_code(e))
                    raise
                logger.warning(
                    "Update of distribution %s failed with %s (attempt %d/%d), retrying",
                    distribution_id, error_code(e), attempt, self.MAX_UPDATE_ATTEMPTS,
                )
                self._clock.sleep(delay)

    def bind(self, domain_set: DomainSet, certificate_id: str) -> List[str]:
        """
        Bind every distribution whose aliases are all covered by ``domain_set``.

        Returns the ids of the matching distributions, including those that
        already used the certificate. Raises DistributionUpdateFailed listing
        the distributions that could not be updated once all were attempted,
        or when the invocation deadline cut the listing short.
        """
        summaries, complete = self._distributions()
        matched = []
        failures = {}
        for summary in summaries:
            if not self.matches(domain_set, summary):
                continue
            distribution_id = summary["Id"]
            matched.append(distribution_id)
            if summary.get("ViewerCertificate", {}).get("IAMCertificateId") == certificate_id:
                logger.info("Distribution %s already uses %s", distribution_id, certificate_id)
                continue
            if not self._time_left():
                failures[distribution_id] = DEADLINE_REACHED
                continue
            try:
                if self._update(distribution_id, certificate_id):
                    logger.info("Distribution %s now uses %s", distribution_id, certificate_id)
            except ClientError as e:
                logger.error("Failed to update distribution %s: %s", distribution_id, e)
                failures[distribution_id] = error_code(e) or str(e)

        if failures or not complete:
            raise DistributionUpdateFailed(
                failures, [d for d in matched if d not in failures], listing_complete=complete
            )
        if not matched:
            logger.info("No distribution is served by %s", domain_set)
        return matched
