"""
IAM server certificate store, with the PEM artifacts mirrored to S3.

Certificates are uploaded under a path starting with ``/cloudfront/`` so
CloudFront can use them, and are tagged with the domain set they belong to and
a lifecycle status:

    pending     uploaded, not yet the current certificate of its set
    active      the certificate the next run compares against
    superseded  replaced by a newer certificate, kept until deleted by hand

Only one certificate per domain set is active after a completed upload.
"""
import json
import logging
from typing import List, Optional

from botocore.exceptions import ClientError

from .aws import error_code
from .clock import Clock
from .errors import CertificateNotFound, StoreConflict
from .models import CertificateRecord, DomainSet
from .pem import certificate_validity

logger = logging.getLogger(__name__)

TAG_MANAGED_BY = "ManagedBy"
TAG_DOMAIN_SET = "DomainSet"
TAG_STATUS = "Status"

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_SUPERSEDED = "superseded"

ACCOUNT_KEY_OBJECT = "account/account.key.pem"


class CertificateStore:
    MAX_NAME_ATTEMPTS = 3

    def __init__(
        self,
        iam,
        s3,
        bucket: str,
        clock: Clock,
        stack_name: str,
        certificate_path: str = "/cloudfront/",
    ):
        self._iam = iam
        self._s3 = s3
        self._bucket = bucket
        self._clock = clock
        self._stack_name = stack_name
        self._path = certificate_path

    # =========================================================================
    # S3 artifacts
    # =========================================================================

    def _put(self, key: str, body: str, content_type: str = "application/x-pem-file"):
        self._s3.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=body.encode("utf-8"),
            ContentType=content_type,
            ServerSideEncryption="AES256",
        )

    def load_account_key(self) -> Optional[bytes]:
        try:
            response = self._s3.get_object(Bucket=self._bucket, Key=ACCOUNT_KEY_OBJECT)
        except ClientError as e:
            if error_code(e) in ("NoSuchKey", "404"):
                return None
            raise
        return response["Body"].read()

    def save_account_key(self, pem: bytes) -> None:
        self._put(ACCOUNT_KEY_OBJECT, pem.decode("ascii"))
        logger.info("Stored ACME account key in s3://%s/%s", self._bucket, ACCOUNT_KEY_OBJECT)

    def _write_artifacts(self, record: CertificateRecord, prefix: str) -> None:
        self._put(prefix + "cert.pem", record.certificate)
        self._put(prefix + "chain.pem", record.chain or "")
        self._put(prefix + "fullchain.pem", record.fullchain)
        self._put(prefix + "privkey.pem", record.private_key)

    def _write_metadata(self, record: CertificateRecord) -> None:
        metadata = {
            "domains": list(record.domain_set.domains),
            "domain_set": record.domain_set.key,
            "issued_at": record.issued_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "certificate_name": record.store_name,
            "certificate_id": record.certificate_id,
            "arn": record.arn,
        }
        self._put(record.object_prefix + "metadata.json", json.dumps(metadata, indent=2), "application/json")

    # =========================================================================
    # IAM registry
    # =========================================================================

    def _metadata_list(self, path_prefix: str) -> List[dict]:
        items = []
        marker = None
        while True:
            kwargs = {"PathPrefix": path_prefix}
            if marker:
                kwargs["Marker"] = marker
            page = self._iam.list_server_certificates(**kwargs)
            items.extend(page.get("ServerCertificateMetadataList", []))
            if not page.get("IsTruncated"):
                return items
            marker = page["Marker"]

    def _tags(self, name: str) -> dict:
        response = self._iam.list_server_certificate_tags(ServerCertificateName=name)
        return {tag["Key"]: tag["Value"] for tag in response.get("Tags", [])}

    def _set_status(self, name: str, status: str) -> None:
        self._iam.tag_server_certificate(
            ServerCertificateName=name,
            Tags=[{"Key": TAG_STATUS, "Value": status}],
        )

    def _active(self, domain_set: DomainSet) -> List[dict]:
        """Active certificates of ``domain_set``, newest first."""
        active = []
        for meta in self._metadata_list(self._path):
            if not meta["ServerCertificateName"].startswith(domain_set.slug + "-"):
                continue
            tags = self._tags(meta["ServerCertificateName"])
            if tags.get(TAG_DOMAIN_SET) == domain_set.key and tags.get(TAG_STATUS) == STATUS_ACTIVE:
                active.append(meta)
        active.sort(key=lambda m: m["UploadDate"], reverse=True)
        return active

    def _register(self, record: CertificateRecord, stamp: str) -> dict:
        domain_set = record.domain_set
        for attempt in range(self.MAX_NAME_ATTEMPTS):
            name = f"{domain_set.slug}-{stamp}" if attempt == 0 else f"{domain_set.slug}-{stamp}-{attempt}"
            kwargs = {
                "Path": self._path,
                "ServerCertificateName": name,
                "CertificateBody": record.certificate,
                "PrivateKey": record.private_key,
                "Tags": [
                    {"Key": TAG_MANAGED_BY, "Value": self._stack_name},
                    {"Key": TAG_DOMAIN_SET, "Value": domain_set.key},
                    {"Key": TAG_STATUS, "Value": STATUS_PENDING},
                ],
            }
            if record.chain:
                kwargs["CertificateChain"] = record.chain
            try:
                response = self._iam.upload_server_certificate(**kwargs)
            except ClientError as e:
                if error_code(e) == "EntityAlreadyExists":
                    logger.warning("Server certificate name %s is taken, trying another", name)
                    continue
                raise
            return response["ServerCertificateMetadata"]
        raise StoreConflict(f"Could not find a free server certificate name for {domain_set}")

    def upload(self, record: CertificateRecord) -> CertificateRecord:
        """
        Store a newly issued certificate and make it the active one of its set.

        The PEM files go to S3 first, then the certificate is registered in IAM
        as pending, older active certificates of the set are marked superseded
        and finally the new one is marked active. Returns the record with its
        IAM name, id, ARN and S3 prefix filled in.
        """
        domain_set = record.domain_set
        stamp = self._clock.utcnow().strftime("%Y%m%dT%H%M%SZ")
        prefix = f"certificates/{domain_set.slug}/{stamp}/"
        self._write_artifacts(record, prefix)

        previous = self._active(domain_set)
        meta = self._register(record, stamp)
        stored = record.stored(
            store_name=meta["ServerCertificateName"],
            certificate_id=meta["ServerCertificateId"],
            arn=meta["Arn"],
            object_prefix=prefix,
        )
        for old in previous:
            self._set_status(old["ServerCertificateName"], STATUS_SUPERSEDED)
        self._set_status(stored.store_name, STATUS_ACTIVE)
        self._write_metadata(stored)

        logger.info("Uploaded server certificate %s (%s) for %s", stored.store_name, stored.certificate_id, domain_set)
        return stored

    def get(self, domain_set: DomainSet) -> Optional[CertificateRecord]:
        active = self._active(domain_set)
        if not active:
            return None
        current = active[0]
        for stale in active[1:]:
            # left over by an interrupted upload
            logger.warning("Marking %s superseded, %s is newer", stale["ServerCertificateName"], current["ServerCertificateName"])
            self._set_status(stale["ServerCertificateName"], STATUS_SUPERSEDED)

        body = self._iam.get_server_certificate(ServerCertificateName=current["ServerCertificateName"])["ServerCertificate"]
        issued_at, expires_at = certificate_validity(body["CertificateBody"])
        return CertificateRecord(
            domain_set=domain_set,
            issued_at=issued_at,
            expires_at=expires_at,
            certificate=body["CertificateBody"],
            chain=body.get("CertificateChain"),
            store_name=current["ServerCertificateName"],
            certificate_id=current["ServerCertificateId"],
            arn=current["Arn"],
        )

    def delete(self, name: str) -> None:
        """Delete the IAM server certificate. The S3 copies are kept."""
        try:
            self._iam.delete_server_certificate(ServerCertificateName=name)
        except ClientError as e:
            code = error_code(e)
            if code == "NoSuchEntity":
                raise CertificateNotFound(f"Server certificate '{name}' does not exist") from e
            if code == "DeleteConflict":
                raise StoreConflict(f"Server certificate '{name}' is still in use") from e
            raise
        logger.info("Deleted server certificate %s", name)

    def list(self, path_prefix: str = "/") -> List[dict]:
        return [
            {
                "name": meta["ServerCertificateName"],
                "id": meta["ServerCertificateId"],
                "arn": meta["Arn"],
                "path": meta["Path"],
                "uploaded_at": _iso(meta.get("UploadDate")),
                "expires_at": _iso(meta.get("Expiration")),
            }
            for meta in self._metadata_list(path_prefix)
        ]


def _iso(value):
    return value.isoformat() if hasattr(value, "isoformat") else value
