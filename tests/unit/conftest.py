import copy
import hashlib
import io
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from types import SimpleNamespace

import pytest
import requests
from acme import challenges, errors, messages
from botocore.exceptions import ClientError
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cert_plugin.acme_client import AcmeClient
from cert_plugin.cert_store import CertificateStore
from cert_plugin.clock import Clock
from cert_plugin.distribution_binder import DistributionBinder
from cert_plugin.dns_challenge import DnsChallengeSolver
from cert_plugin.models import CertificateRecord, DomainSet
from cert_plugin.notifier import Notifier
from cert_plugin.orchestrator import RenewalOrchestrator
from cert_plugin.pem import certificate_validity

TOPIC_ARN = "arn:aws-cn:sns:cn-northwest-1:123456789012:ssl-plugin-Topic"
BUCKET = "ssl-plugin-certbucket"
STACK_NAME = "ssl-plugin"
START = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def client_error(code, operation="Operation", status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


# =================================================================
# CLOCK
# =================================================================

class FakeClock(Clock):
    def __init__(self, now=START):
        self.start = now
        self.elapsed = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.elapsed

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.elapsed += seconds

    def utcnow(self):
        return self.start + timedelta(seconds=self.elapsed)

    def advance(self, **kwargs):
        self.elapsed += timedelta(**kwargs).total_seconds()


class FakeContext:
    def __init__(self, remaining_ms=900_000):
        self.remaining_ms = remaining_ms

    def get_remaining_time_in_millis(self):
        return self.remaining_ms


# =================================================================
# CERTIFICATES
# =================================================================

@lru_cache(maxsize=None)
def _rsa_key(name):
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def _pem(cert):
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def make_certificate(domains, not_before, days=90):
    """Leaf certificate signed by a throwaway intermediate: (cert, chain, key) PEMs."""
    ca_key = _rsa_key("ca")
    ca_name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Fake Intermediate R1")])
    ca = (
        x509.CertificateBuilder()
        .subject_name(ca_name)
        .issuer_name(ca_name)
        .public_key(ca_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before - timedelta(days=1))
        .not_valid_after(not_before + timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .sign(ca_key, hashes.SHA256())
    )
    key = _rsa_key("leaf")
    leaf = (
        x509.CertificateBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
        .issuer_name(ca_name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_before + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption(),
    ).decode("ascii")
    return _pem(leaf), _pem(ca), key_pem


def make_record(domain_set, issued_at, days=90):
    cert, chain, key = make_certificate(list(domain_set.domains), issued_at, days)
    issued, expires = certificate_validity(cert)
    return CertificateRecord(domain_set, issued, expires, certificate=cert, private_key=key, chain=chain)


# =================================================================
# AWS FAKES
# =================================================================

class FakeRoute53:
    def __init__(self, zones=None, sync_after=1):
        self.zones = zones if zones is not None else [
            {"Id": "/hostedzone/ZEXAMPLE", "Name": "example.cn.", "Config": {"PrivateZone": False}},
        ]
        self.sync_after = sync_after
        self.records = {}
        self.changes = []
        self.change_errors = []
        self.get_change_errors = []
        self._polls = {}

    def list_hosted_zones(self, **kwargs):
        return {"HostedZones": list(self.zones), "IsTruncated": False}

    def list_resource_record_sets(self, HostedZoneId, StartRecordName, StartRecordType, MaxItems):
        values = self.records.get((HostedZoneId, StartRecordName))
        if values is None:
            return {"ResourceRecordSets": [], "IsTruncated": False}
        rrset = {
            "Name": StartRecordName + ".",
            "Type": "TXT",
            "TTL": 10,
            "ResourceRecords": [{"Value": f'"{value}"'} for value in values],
        }
        return {"ResourceRecordSets": [rrset], "IsTruncated": False}

    def change_resource_record_sets(self, HostedZoneId, ChangeBatch):
        if self.change_errors:
            raise self.change_errors.pop(0)
        change = ChangeBatch["Changes"][0]
        rrset = change["ResourceRecordSet"]
        values = [r["Value"].strip('"') for r in rrset["ResourceRecords"]]
        key = (HostedZoneId, rrset["Name"])
        if change["Action"] == "DELETE":
            self.records.pop(key, None)
        else:
            self.records[key] = values
        self.changes.append((change["Action"], rrset["Name"], values))
        change_id = f"/change/C{len(self.changes)}"
        self._polls[change_id] = 0
        return {"ChangeInfo": {"Id": change_id, "Status": "PENDING"}}

    def get_change(self, Id):
        if self.get_change_errors:
            raise self.get_change_errors.pop(0)
        self._polls[Id] += 1
        in_sync = self.sync_after is not None and self._polls[Id] >= self.sync_after
        return {"ChangeInfo": {"Id": Id, "Status": "INSYNC" if in_sync else "PENDING"}}


class FakeIam:
    def __init__(self, clock):
        self.clock = clock
        self.certificates = {}
        self.in_use = set()
        self.taken_names = set()
        self.uploads = 0

    def _get(self, name):
        if name not in self.certificates:
            raise client_error("NoSuchEntity", status=404)
        return self.certificates[name]

    def upload_server_certificate(self, Path, ServerCertificateName, CertificateBody, PrivateKey, Tags, CertificateChain=None):
        if ServerCertificateName in self.certificates or ServerCertificateName in self.taken_names:
            raise client_error("EntityAlreadyExists", "UploadServerCertificate", 409)
        self.uploads += 1
        _, expires = certificate_validity(CertificateBody)
        meta = {
            "Path": Path,
            "ServerCertificateName": ServerCertificateName,
            "ServerCertificateId": f"ASCA{self.uploads:016d}",
            "Arn": f"arn:aws-cn:iam::123456789012:server-certificate{Path}{ServerCertificateName}",
            "UploadDate": self.clock.utcnow() + timedelta(seconds=self.uploads),
            "Expiration": expires,
        }
        self.certificates[ServerCertificateName] = {
            "meta": meta,
            "body": CertificateBody,
            "chain": CertificateChain,
            "key": PrivateKey,
            "tags": {t["Key"]: t["Value"] for t in Tags},
        }
        return {"ServerCertificateMetadata": dict(meta)}

    def list_server_certificates(self, PathPrefix="/", Marker=None):
        items = [dict(c["meta"]) for c in self.certificates.values() if c["meta"]["Path"].startswith(PathPrefix)]
        return {"ServerCertificateMetadataList": items, "IsTruncated": False}

    def list_server_certificate_tags(self, ServerCertificateName):
        tags = self._get(ServerCertificateName)["tags"]
        return {"Tags": [{"Key": k, "Value": v} for k, v in tags.items()], "IsTruncated": False}

    def tag_server_certificate(self, ServerCertificateName, Tags):
        self._get(ServerCertificateName)["tags"].update({t["Key"]: t["Value"] for t in Tags})

    def get_server_certificate(self, ServerCertificateName):
        cert = self._get(ServerCertificateName)
        body = {"ServerCertificateMetadata": dict(cert["meta"]), "CertificateBody": cert["body"]}
        if cert["chain"]:
            body["CertificateChain"] = cert["chain"]
        return {"ServerCertificate": body}

    def delete_server_certificate(self, ServerCertificateName):
        self._get(ServerCertificateName)
        if ServerCertificateName in self.in_use:
            raise client_error("DeleteConflict", "DeleteServerCertificate", 409)
        del self.certificates[ServerCertificateName]

    def with_status(self, domain_set, status):
        return [
            name for name, cert in self.certificates.items()
            if cert["tags"].get("DomainSet") == domain_set.key and cert["tags"].get("Status") == status
        ]


class FakeS3:
    def __init__(self):
        self.objects = {}

    def put_object(self, Bucket, Key, Body, ContentType=None, ServerSideEncryption=None):
        assert ServerSideEncryption == "AES256"
        self.objects[(Bucket, Key)] = Body

    def get_object(self, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise client_error("NoSuchKey", "GetObject", 404)
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)])}

    def keys(self, prefix=""):
        return sorted(k for _, k in self.objects if k.startswith(prefix))


class FakeCloudFront:
    def __init__(self, distributions=()):
        self.distributions = {}
        for dist_id, aliases, certificate_id in distributions:
            viewer = (
                {"IAMCertificateId": certificate_id, "SSLSupportMethod": "sni-only", "MinimumProtocolVersion": "TLSv1.2_2019"}
                if certificate_id else {"CloudFrontDefaultCertificate": True, "MinimumProtocolVersion": "TLSv1"}
            )
            alias_block = {"Quantity": len(aliases)}
            if aliases:
                alias_block["Items"] = list(aliases)
            self.distributions[dist_id] = {
                "config": {"CallerReference": dist_id, "Aliases": alias_block, "ViewerCertificate": viewer, "Enabled": True},
                "etag": "E1",
            }
        self.list_calls = []
        self.updates = []
        self.update_errors = {}

    def list_distributions(self, MaxItems, Marker=None):
        self.list_calls.append((MaxItems, Marker))
        ids = sorted(self.distributions)
        start = int(Marker) if Marker else 0
        size = int(MaxItems)
        items = [
            {
                "Id": dist_id,
                "Aliases": copy.deepcopy(self.distributions[dist_id]["config"]["Aliases"]),
                "ViewerCertificate": copy.deepcopy(self.distributions[dist_id]["config"]["ViewerCertificate"]),
            }
            for dist_id in ids[start:start + size]
        ]
        listing = {"Items": items, "Quantity": len(items), "MaxItems": size, "IsTruncated": start + size < len(ids)}
        if listing["IsTruncated"]:
            listing["NextMarker"] = str(start + size)
        return {"DistributionList": listing}

    def get_distribution_config(self, Id):
        dist = self.distributions[Id]
        return {"DistributionConfig": copy.deepcopy(dist["config"]), "ETag": dist["etag"]}

    def update_distribution(self, Id, IfMatch, DistributionConfig):
        pending = self.update_errors.get(Id)
        if pending:
            raise pending.pop(0)
        dist = self.distributions[Id]
        if IfMatch != dist["etag"]:
            raise client_error("PreconditionFailed", "UpdateDistribution", 412)
        dist["config"] = copy.deepcopy(DistributionConfig)
        dist["etag"] = f"E{int(dist['etag'][1:]) + 1}"
        self.updates.append(Id)
        return {"Distribution": {"Id": Id}, "ETag": dist["etag"]}

    def certificate_of(self, dist_id):
        return self.distributions[dist_id]["config"]["ViewerCertificate"].get("IAMCertificateId")


class FakeSns:
    def __init__(self):
        self.messages = []
        self.errors = []

    def publish(self, TopicArn, Subject, Message):
        if self.errors:
            raise self.errors.pop(0)
        self.messages.append({"TopicArn": TopicArn, "Subject": Subject, "Message": Message})
        return {"MessageId": str(len(self.messages))}


# =================================================================
# ACME SERVER FAKE
# =================================================================

class FakeAcme:
    """
    In-memory ACME v2 server speaking the subset of ``acme.client.ClientV2``
    the issuance flow uses.
    """

    def __init__(self, clock, route53=None, existing_account=False, invalid=(), already_valid=(),
                 polls_until_valid=2, unavailable=0, finalize_error=None):
        self.clock = clock
        self.route53 = route53
        self.existing_account = existing_account
        self.invalid = set(invalid)
        self.already_valid = set(already_valid)
        self.polls_until_valid = polls_until_valid
        self.unavailable = unavailable
        self.finalize_error = finalize_error
        self.registrations = []
        self.queried = []
        self.orders = []
        self.answered = []
        self.polls = []
        self.records_at_first_answer = None

    def new_account(self, registration):
        self.registrations.append(registration)
        if self.existing_account:
            raise errors.ConflictError("https://acme.test/acct/1")
        return SimpleNamespace(uri="https://acme.test/acct/1")

    def query_registration(self, regr):
        self.queried.append(regr.uri)
        return SimpleNamespace(uri=regr.uri)

    def new_order(self, csr_pem):
        if self.unavailable:
            self.unavailable -= 1
            raise requests.exceptions.ConnectionError("connection reset by peer")
        csr = x509.load_pem_x509_csr(csr_pem)
        names = csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value.get_values_for_type(x509.DNSName)
        authorizations = []
        for name in names:
            wildcard = name.startswith("*.")
            status = messages.STATUS_VALID if name in self.already_valid else messages.STATUS_PENDING
            token = hashlib.sha256(name.encode("utf-8")).digest()[:16]
            body = SimpleNamespace(
                identifier=SimpleNamespace(value=name[2:] if wildcard else name),
                wildcard=wildcard,
                status=status,
                challenges=[
                    SimpleNamespace(chall=challenges.HTTP01(token=token), error=None),
                    SimpleNamespace(chall=challenges.DNS01(token=token), error=None),
                ],
            )
            authorizations.append(SimpleNamespace(body=body, uri=f"https://acme.test/authz/{name}", name=name, answered=False, polled=0))
        order = SimpleNamespace(authorizations=authorizations, names=names, fullchain_pem=None)
        self.orders.append(order)
        return order

    def answer_challenge(self, challb, response):
        if self.records_at_first_answer is None and self.route53 is not None:
            self.records_at_first_answer = copy.deepcopy(self.route53.records)
        for authzr in self.orders[-1].authorizations:
            if challb in authzr.body.challenges:
                authzr.answered = True
                self.answered.append(authzr.name)
        return challb

    def poll(self, authzr):
        authzr.polled += 1
        self.polls.append(authzr.name)
        if authzr.answered and authzr.polled >= self.polls_until_valid:
            if authzr.name in self.invalid:
                authzr.body.status = messages.STATUS_INVALID
                authzr.body.challenges[1].error = "urn:ietf:params:acme:error:unauthorized :: Incorrect TXT record"
            else:
                authzr.body.status = messages.STATUS_VALID
        return authzr, None

    def finalize_order(self, order, deadline):
        if self.finalize_error is not None:
            raise self.finalize_error
        cert, chain, _ = make_certificate(order.names, self.clock.utcnow())
        order.fullchain_pem = cert + chain
        return order


# =================================================================
# FIXTURES
# =================================================================

class Plugin:
    """Every component of one run, wired against the fakes."""

    def __init__(self, clock, distributions=(), **acme_options):
        self.clock = clock
        self.route53 = FakeRoute53()
        self.iam = FakeIam(clock)
        self.s3 = FakeS3()
        self.cloudfront = FakeCloudFront(distributions)
        self.sns = FakeSns()
        self.acme = FakeAcme(clock, route53=self.route53, **acme_options)
        self.connections = 0
        self.store = CertificateStore(self.iam, self.s3, BUCKET, clock, STACK_NAME)
        self.solver = DnsChallengeSolver(self.route53, clock)
        self.acme_client = AcmeClient(
            "https://acme.test/directory", "ops@example.cn", self.solver, clock,
            client_factory=self._connect,
        )
        self.binder = DistributionBinder(self.cloudfront, clock, page_size=2, max_items=200)
        self.notifier = Notifier(self.sns, TOPIC_ARN, STACK_NAME)

    def _connect(self, account_key):
        self.connections += 1
        return self.acme

    def orchestrator(self, renew_interval_days=80, deadline=None):
        return RenewalOrchestrator(
            self.store, self.acme_client, self.binder, self.notifier, self.clock, deadline, renew_interval_days
        )

    def seed(self, domain_set, issued_at, days=90):
        return self.store.upload(make_record(domain_set, issued_at, days))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def plugin(clock):
    return Plugin(clock)


@pytest.fixture
def example_set():
    return DomainSet.parse("example.cn,*.example.cn")
