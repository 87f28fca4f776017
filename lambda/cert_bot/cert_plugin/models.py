import hashlib
import math
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional, Sequence

from .errors import ConfigurationError

# RFC 1035 label, optionally preceded by a single wildcard label
DOMAIN_PATTERN = re.compile(
    r"^(\*\.)?([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z0-9-]{2,63}$"
)


@dataclass(frozen=True)
class DomainSet:
    """The domains covered by one certificate, in configured order."""

    domains: tuple

    def __post_init__(self):
        if not self.domains:
            raise ConfigurationError("A domain set needs at least one domain")
        if len(set(self.domains)) != len(self.domains):
            raise ConfigurationError(f"Duplicate domains in set: {', '.join(self.domains)}")
        for domain in self.domains:
            if not DOMAIN_PATTERN.match(domain):
                raise ConfigurationError(f"Invalid domain name '{domain}'")

    @classmethod
    def parse(cls, raw: str) -> "DomainSet":
        domains = [d.strip().lower() for d in raw.split(",") if d.strip()]
        return cls(tuple(domains))

    @classmethod
    def parse_many(cls, raw: Optional[str]) -> List["DomainSet"]:
        """
        Parse the DOMAINS_LIST value. A plain comma separated list is one set
        (one certificate); several sets may be separated with ';'.
        """
        if not raw or not raw.strip():
            raise ConfigurationError("Domain list is empty")
        sets = [cls.parse(chunk) for chunk in raw.split(";") if chunk.strip()]
        keys = [s.key for s in sets]
        if len(set(keys)) != len(keys):
            raise ConfigurationError("The same domain set is configured twice")
        return sets

    @property
    def primary(self) -> str:
        return self.domains[0]

    @property
    def key(self) -> str:
        # order independent: re-ordering the configured list keeps the lineage
        canonical = ",".join(sorted(self.domains))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]

    @property
    def slug(self) -> str:
        base = self.primary.replace("*", "wildcard")
        base = re.sub(r"[^a-z0-9.-]", "-", base)
        return f"{base[:80]}-{self.key[:8]}"

    def covers(self, hostname: str) -> bool:
        """True when a certificate for this set is valid for ``hostname``."""
        hostname = hostname.lower().rstrip(".")
        for domain in self.domains:
            if domain == hostname:
                return True
            if domain.startswith("*."):
                head, _, tail = hostname.partition(".")
                if head and tail == domain[2:]:
                    return True
        return False

    def __str__(self):
        return ",".join(self.domains)


@dataclass
class CertificateRecord:
    domain_set: DomainSet
    issued_at: datetime
    expires_at: datetime
    certificate: Optional[str] = None
    private_key: Optional[str] = None
    chain: Optional[str] = None
    store_name: Optional[str] = None
    certificate_id: Optional[str] = None
    arn: Optional[str] = None
    object_prefix: Optional[str] = None

    @property
    def fullchain(self) -> str:
        return self.certificate + (self.chain or "")

    def stored(self, **kwargs) -> "CertificateRecord":
        return replace(self, **kwargs)


@dataclass
class ChallengeToken:
    domain: str
    record_name: str
    record_value: str
    zone_id: str
    change_id: Optional[str] = None
    expiry: Optional[float] = None

    def seconds_left(self, now: float) -> float:
        """Lifetime left at monotonic time ``now``; unbounded without an expiry."""
        if self.expiry is None:
            return float("inf")
        return max(0.0, self.expiry - now)


@dataclass(frozen=True)
class RenewalDecision:
    due: bool
    reason: str
    renew_at: Optional[datetime] = None

    @classmethod
    def evaluate(
        cls, record: Optional[CertificateRecord], interval_days: int, now: datetime
    ) -> "RenewalDecision":
        if record is None:
            return cls(True, "no existing certificate")
        if now >= record.expires_at:
            return cls(True, f"certificate expired at {record.expires_at.isoformat()}")
        # the next scheduled run is interval_days away, so a certificate whose
        # remaining life (in started days) is shorter than that is due now
        renew_at = min(
            record.issued_at + timedelta(days=interval_days),
            record.expires_at - timedelta(days=interval_days - 1),
        )
        days_left = math.ceil((record.expires_at - now) / timedelta(days=1))
        if days_left < interval_days:
            return cls(True, f"only {days_left} days left before expiry at {record.expires_at.isoformat()}", renew_at)
        if now >= renew_at:
            return cls(True, f"renewal was due at {renew_at.isoformat()}", renew_at)
        return cls(False, f"next renewal at {renew_at.isoformat()}", renew_at)


class OutcomeKind(str, Enum):
    ISSUED = "Issued"
    RENEWED = "Renewed"
    SKIPPED = "Skipped"
    FAILED = "Failed"


@dataclass
class Outcome:
    domain_set: DomainSet
    kind: OutcomeKind
    reason: Optional[str] = None
    record: Optional[CertificateRecord] = None
    distributions: Sequence[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "domains": list(self.domain_set.domains),
            "outcome": self.kind.value,
            "reason": self.reason,
            "certificate_name": self.record.store_name if self.record else None,
            "certificate_id": self.record.certificate_id if self.record else None,
            "expires_at": self.record.expires_at.isoformat() if self.record else None,
            "distributions": list(self.distributions),
            "warnings": list(self.warnings),
        }
