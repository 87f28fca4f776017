"""
Renewal run over every configured DomainSet.

Each set is handled on its own: look up the active certificate, decide whether
it is due, issue and store a new one when it is, point the matching
distributions at it and send one notification. A failure ends the work on
that set only and is reported as a Failed outcome.
"""
import logging
from typing import List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError

from .acme_client import AcmeClient, load_or_create_account_key
from .cert_store import CertificateStore
from .clock import Clock, Deadline
from .distribution_binder import DistributionBinder
from .errors import AuthorityUnavailable, CertPluginError, DistributionUpdateFailed
from .models import CertificateRecord, DomainSet, Outcome, OutcomeKind, RenewalDecision
from .notifier import Notifier

logger = logging.getLogger(__name__)


class RenewalOrchestrator:
    AUTHORITY_ATTEMPTS = 3
    AUTHORITY_RETRY_DELAY = 20.0

    def __init__(
        self,
        store: CertificateStore,
        acme: AcmeClient,
        binder: DistributionBinder,
        notifier: Notifier,
        clock: Clock,
        deadline: Optional[Deadline] = None,
        renew_interval_days: int = 80,
    ):
        self._store = store
        self._acme = acme
        self._binder = binder
        self._notifier = notifier
        self._clock = clock
        self._deadline = deadline
        self._renew_interval_days = renew_interval_days
        self._account_key = None

    def run(self, domain_sets: Sequence[DomainSet]) -> List[Outcome]:
        outcomes = []
        for domain_set in domain_sets:
            outcome = self._process(domain_set)
            self._notify(outcome)
            outcomes.append(outcome)
        return outcomes

    def _account(self):
        if self._account_key is None:
            self._account_key = load_or_create_account_key(self._store)
        return self._account_key

    def _issue(self, domain_set: DomainSet) -> CertificateRecord:
        for attempt in range(1, self.AUTHORITY_ATTEMPTS + 1):
            try:
                return self._acme.issue(domain_set, self._account())
            except AuthorityUnavailable as e:
                delay = self.AUTHORITY_RETRY_DELAY * attempt
                no_time_left = self._deadline is not None and self._deadline.remaining() < delay
                if attempt == self.AUTHORITY_ATTEMPTS or no_time_left:
                    raise
                logger.warning("Certificate authority unavailable for %s, retrying in %.0fs: %s", domain_set, delay, e)
                self._clock.sleep(delay)

    def _process(self, domain_set: DomainSet) -> Outcome:
        if self._deadline is not None and self._deadline.expired():
            return Outcome(domain_set, OutcomeKind.FAILED, "invocation deadline reached before processing")
        try:
            current = self._store.get(domain_set)
            decision = RenewalDecision.evaluate(current, self._renew_interval_days, self._clock.utcnow())
            if not decision.due:
                logger.info("Certificate for %s is not due, %s", domain_set, decision.reason)
                return Outcome(domain_set, OutcomeKind.SKIPPED, decision.reason, record=current)

            logger.info("Requesting certificate for %s: %s", domain_set, decision.reason)
            stored = self._store.upload(self._issue(domain_set))
        except CertPluginError as e:
            logger.error("Certificate run for %s failed: %s", domain_set, e)
            return Outcome(domain_set, OutcomeKind.FAILED, str(e))
        except Exception as e:
            logger.exception("Unexpected error while processing %s", domain_set)
            return Outcome(domain_set, OutcomeKind.FAILED, f"{type(e).__name__}: {e}")

        kind = OutcomeKind.ISSUED if current is None else OutcomeKind.RENEWED
        outcome = Outcome(domain_set, kind, decision.reason, record=stored)
        try:
            outcome.distributions = self._binder.bind(domain_set, stored.certificate_id)
        except DistributionUpdateFailed as e:
            outcome.distributions = e.bound
            outcome.warnings.append(str(e))
        except (ClientError, BotoCoreError) as e:
            logger.error("Could not list distributions for %s: %s", domain_set, e)
            outcome.warnings.append(f"Distribution binding failed: {e}")
        return outcome

    def _notify(self, outcome: Outcome) -> None:
        try:
            self._notifier.notify(outcome)
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to publish notification for %s: %s", outcome.domain_set, e)
            outcome.warnings.append(f"Notification failed: {e}")
