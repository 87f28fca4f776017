"""
DNS-01 challenge records in Route 53.

Tokens sharing a record name (``example.cn`` and ``*.example.cn`` both answer at
``_acme-challenge.example.cn``) are kept in one TXT record set holding every
value. The set is read before each write so values this function did not
create (a certificate being issued by hand, another tool) stay in place; only
this run's own values are ever added or removed.
"""
import logging
from contextlib import contextmanager
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from .aws import is_transient_aws_error
from .clock import Clock, Deadline, Poller, PollState, retry_transient
from .errors import AuthorizationFailed, DNSProviderUnavailable
from .models import ChallengeToken

logger = logging.getLogger(__name__)

CHALLENGE_PREFIX = "_acme-challenge"


def challenge_record_name(domain: str) -> str:
    domain = domain.lower().rstrip(".")
    if domain.startswith("*."):
        domain = domain[2:]
    return f"{CHALLENGE_PREFIX}.{domain}"


class DnsChallengeSolver:
    TTL = 10

    def __init__(
        self,
        route53,
        clock: Clock,
        deadline: Optional[Deadline] = None,
        token_lifetime: float = 600.0,
    ):
        self._route53 = route53
        self._clock = clock
        self._deadline = deadline
        # how long a challenge record may wait for validation before it is abandoned
        self._token_lifetime = token_lifetime
        self._zones = None
        # record name -> {"zone_id": ..., "values": [values created by this run]}
        self._records: Dict[str, dict] = {}

    @property
    def clock(self) -> Clock:
        return self._clock

    def _call(self, operation, **kwargs):
        try:
            return retry_transient(
                lambda: getattr(self._route53, operation)(**kwargs),
                is_transient_aws_error,
                self._clock,
                self._deadline,
            )
        except (ClientError, BotoCoreError) as e:
            if is_transient_aws_error(e):
                raise DNSProviderUnavailable(f"Route 53 {operation} kept failing: {e}") from e
            raise

    def _hosted_zones(self):
        if self._zones is None:
            zones = []
            marker = None
            while True:
                kwargs = {"Marker": marker} if marker else {}
                page = self._call("list_hosted_zones", **kwargs)
                for zone in page.get("HostedZones", []):
                    if zone.get("Config", {}).get("PrivateZone"):
                        continue
                    zones.append((zone["Name"].rstrip(".").lower(), zone["Id"]))
                if not page.get("IsTruncated"):
                    break
                marker = page["NextMarker"]
            self._zones = zones
        return self._zones

    def find_zone(self, domain: str) -> str:
        """Hosted zone id whose name is the longest suffix of ``domain``."""
        name = challenge_record_name(domain)[len(CHALLENGE_PREFIX) + 1:]
        best = None
        for zone_name, zone_id in self._hosted_zones():
            if name == zone_name or name.endswith("." + zone_name):
                if best is None or len(zone_name) > len(best[0]):
                    best = (zone_name, zone_id)
        if best is None:
            raise AuthorizationFailed(domain, "no public Route 53 hosted zone matches this domain")
        return best[1]

    def _current_values(self, zone_id: str, record_name: str) -> List[str]:
        response = self._call(
            "list_resource_record_sets",
            HostedZoneId=zone_id,
            StartRecordName=record_name,
            StartRecordType="TXT",
            MaxItems="1",
        )
        for rrset in response.get("ResourceRecordSets", []):
            if rrset["Name"].rstrip(".").lower() == record_name and rrset["Type"] == "TXT":
                return [r["Value"].strip('"') for r in rrset.get("ResourceRecords", [])]
        return []

    def _write(self, action: str, zone_id: str, record_name: str, values: List[str]) -> str:
        response = self._call(
            "change_resource_record_sets",
            HostedZoneId=zone_id,
            ChangeBatch={
                "Comment": "ACME DNS-01 challenge",
                "Changes": [
                    {
                        "Action": action,
                        "ResourceRecordSet": {
                            "Name": record_name,
                            "Type": "TXT",
                            "TTL": self.TTL,
                            "ResourceRecords": [{"Value": f'"{value}"'} for value in values],
                        },
                    }
                ],
            },
        )
        return response["ChangeInfo"]["Id"]

    def create_challenge(self, domain: str, value: str) -> ChallengeToken:
        zone_id = self.find_zone(domain)
        record_name = challenge_record_name(domain)
        entry = self._records.setdefault(record_name, {"zone_id": zone_id, "values": []})
        added = value not in entry["values"]
        if added:
            entry["values"].append(value)
        try:
            current = self._current_values(zone_id, record_name)
            foreign = [v for v in current if v not in entry["values"]]
            if foreign:
                logger.warning("Keeping %d existing value(s) of TXT %s", len(foreign), record_name)
            change_id = self._write("UPSERT", zone_id, record_name, foreign + entry["values"])
        except Exception:
            if added:
                entry["values"].remove(value)
            if not entry["values"]:
                del self._records[record_name]
            raise
        logger.info("Created TXT %s for %s (change %s)", record_name, domain, change_id)
        return ChallengeToken(
            domain=domain,
            record_name=record_name,
            record_value=value,
            zone_id=zone_id,
            change_id=change_id,
            expiry=self._clock.monotonic() + self._token_lifetime,
        )

    def await_propagation(self, token: ChallengeToken, timeout: float) -> bool:
        if self._deadline is not None:
            timeout = self._deadline.budget(timeout)

        def in_sync():
            response = self._call("get_change", Id=token.change_id)
            return response["ChangeInfo"]["Status"] == "INSYNC"

        state = Poller(self._clock, timeout, interval=2.0, max_interval=10.0).run(in_sync)
        if state is PollState.READY:
            return True
        logger.warning("Change %s for %s not in sync after %.0fs", token.change_id, token.record_name, timeout)
        return False

    def remove_challenge(self, token: ChallengeToken) -> None:
        """Best-effort removal of this token's value; failures are logged, never raised."""
        entry = self._records.get(token.record_name)
        if entry is None or token.record_value not in entry["values"]:
            return
        try:
            current = self._current_values(entry["zone_id"], token.record_name)
            remaining = [v for v in current if v != token.record_value]
            if remaining != current:
                if remaining:
                    self._write("UPSERT", entry["zone_id"], token.record_name, remaining)
                else:
                    self._write("DELETE", entry["zone_id"], token.record_name, current)
            logger.info("Removed challenge value for %s", token.domain)
        except (ClientError, BotoCoreError, DNSProviderUnavailable) as e:
            logger.warning("Failed to remove challenge record %s: %s", token.record_name, e)
        entry["values"].remove(token.record_value)
        if not entry["values"]:
            del self._records[token.record_name]

    @contextmanager
    def challenges(self):
        """Scope in which every created token is removed on exit, whatever happens."""
        session = ChallengeSession(self)
        try:
            yield session
        finally:
            for token in reversed(session.tokens):
                try:
                    self.remove_challenge(token)
                except Exception:
                    logger.exception("Cleanup of challenge record %s failed", token.record_name)


class ChallengeSession:
    def __init__(self, solver: DnsChallengeSolver):
        self.solver = solver
        self.tokens: List[ChallengeToken] = []

    def create(self, domain: str, value: str) -> ChallengeToken:
        token = self.solver.create_challenge(domain, value)
        self.tokens.append(token)
        return token

    def await_propagation(self, timeout: float) -> bool:
        started = self.solver.clock.monotonic()
        for token in self.tokens:
            left = timeout - (self.solver.clock.monotonic() - started)
            if left <= 0 or not self.solver.await_propagation(token, left):
                return False
        return True
