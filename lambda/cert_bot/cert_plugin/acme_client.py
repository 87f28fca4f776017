"""
ACME v2 issuance with DNS-01 challenges.

One order covers every domain of a DomainSet. All challenge records of the
order are published and confirmed in sync before the first challenge is
answered, and the order fails as a whole when any authorization does.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

import josepy as jose
import requests
from acme import challenges, client, crypto_util, errors, messages

from .clock import Clock, Deadline, Poller, PollState, retry_transient
from .dns_challenge import DnsChallengeSolver
from .errors import AuthorityUnavailable, AuthorizationFailed, OrderTimeout
from .models import CertificateRecord, ChallengeToken, DomainSet
from .pem import certificate_validity, generate_private_key, split_fullchain

logger = logging.getLogger(__name__)

USER_AGENT = "cloudfront-ssl-plugin"

# problem types worth another attempt
TRANSIENT_PROBLEMS = {"serverInternal", "badNonce"}


def is_transient_acme_error(e: Exception) -> bool:
    if isinstance(e, requests.exceptions.RequestException):
        return True
    if isinstance(e, messages.Error):
        return e.code in TRANSIENT_PROBLEMS
    # non-JSON error pages, usually a gateway in front of the CA
    return isinstance(e, errors.ClientError) and not isinstance(e, errors.ConflictError)


def load_or_create_account_key(store) -> jose.JWKRSA:
    pem = store.load_account_key()
    if pem is None:
        logger.info("No ACME account key found, generating one")
        pem = generate_private_key()
        store.save_account_key(pem)
    return jose.JWKRSA.load(pem)


class AcmeClient:
    MAX_AUTHORIZATION_POLLS = 10

    def __init__(
        self,
        directory_url: str,
        email: str,
        solver: DnsChallengeSolver,
        clock: Clock,
        deadline: Optional[Deadline] = None,
        client_factory: Optional[Callable] = None,
        propagation_timeout: float = 120.0,
        authorization_timeout: float = 180.0,
        finalize_timeout: float = 120.0,
    ):
        self._directory_url = directory_url
        self._email = email
        self._solver = solver
        self._clock = clock
        self._deadline = deadline
        self._client_factory = client_factory
        self._propagation_timeout = propagation_timeout
        self._authorization_timeout = authorization_timeout
        self._finalize_timeout = finalize_timeout

    def _budget(self, timeout: float) -> float:
        return self._deadline.budget(timeout) if self._deadline is not None else timeout

    def _call(self, fn, *args):
        try:
            return retry_transient(lambda: fn(*args), is_transient_acme_error, self._clock, self._deadline)
        except (requests.exceptions.RequestException, errors.ClientError, messages.Error) as e:
            if is_transient_acme_error(e):
                raise AuthorityUnavailable(f"ACME server unavailable: {e}") from e
            raise

    def _connect(self, account_key: jose.JWKRSA):
        if self._client_factory is not None:
            return self._client_factory(account_key)
        net = client.ClientNetwork(account_key, user_agent=USER_AGENT)
        directory = self._call(client.ClientV2.get_directory, self._directory_url, net)
        return client.ClientV2(directory, net=net)

    def _register(self, acme) -> None:
        registration = messages.NewRegistration.from_data(email=self._email, terms_of_service_agreed=True)
        try:
            account = self._call(acme.new_account, registration)
            logger.info("Registered ACME account %s", account.uri)
        except errors.ConflictError as e:
            account = self._call(acme.query_registration, messages.RegistrationResource(uri=e.location))
            logger.info("Reusing ACME account %s", account.uri)

    @staticmethod
    def _dns_challenge(authzr, domain: str):
        for challb in authzr.body.challenges:
            if isinstance(challb.chall, challenges.DNS01):
                return challb
        raise AuthorizationFailed(domain, "the authority offered no dns-01 challenge")

    @staticmethod
    def _problem(authzr) -> str:
        for challb in authzr.body.challenges:
            error = getattr(challb, "error", None)
            if error is not None:
                return str(error)
        return "authorization is invalid"

    def _await_authorization(self, acme, authzr, domain: str, token: ChallengeToken) -> None:
        current = {"authzr": authzr}

        def valid():
            updated, _ = self._call(acme.poll, current["authzr"])
            current["authzr"] = updated
            if updated.body.status == messages.STATUS_INVALID:
                raise AuthorizationFailed(domain, self._problem(updated))
            return updated.body.status == messages.STATUS_VALID

        left = token.seconds_left(self._clock.monotonic())
        if left <= 0:
            raise OrderTimeout(f"Challenge record for '{domain}' expired before validation")
        poller = Poller(
            self._clock,
            self._budget(min(self._authorization_timeout, left)),
            interval=2.0,
            max_interval=15.0,
            max_attempts=self.MAX_AUTHORIZATION_POLLS,
        )
        if poller.run(valid) is not PollState.READY:
            raise OrderTimeout(f"Authorization for '{domain}' still pending after {poller.attempts} polls")
        logger.info("Authorization for %s is valid", domain)

    def _finalize(self, acme, order, domain_set: DomainSet):
        # the acme library compares against naive local time
        deadline = datetime.now() + timedelta(seconds=self._budget(self._finalize_timeout))
        try:
            return acme.finalize_order(order, deadline)
        except errors.TimeoutError as e:
            raise OrderTimeout(f"Order for {domain_set} was not finalised in time") from e
        except errors.IssuanceError as e:
            raise AuthorizationFailed(domain_set.primary, f"order became invalid: {e.error}") from e
        except (requests.exceptions.RequestException, errors.ClientError, messages.Error) as e:
            if is_transient_acme_error(e):
                raise AuthorityUnavailable(f"ACME server unavailable while finalising: {e}") from e
            raise

    def issue(self, domain_set: DomainSet, account_key: jose.JWKRSA) -> CertificateRecord:
        """Obtain a certificate for every domain of ``domain_set`` in one order."""
        acme = self._connect(account_key)
        self._register(acme)

        key_pem = generate_private_key()
        csr_pem = crypto_util.make_csr(key_pem, list(domain_set.domains))
        order = self._call(acme.new_order, csr_pem)
        logger.info("Created order for %s with %d authorizations", domain_set, len(order.authorizations))

        with self._solver.challenges() as session:
            pending = []
            for authzr in order.authorizations:
                domain = authzr.body.identifier.value
                if getattr(authzr.body, "wildcard", False):
                    domain = "*." + domain
                if authzr.body.status == messages.STATUS_VALID:
                    logger.info("Reusing valid authorization for %s", domain)
                    continue
                challb = self._dns_challenge(authzr, domain)
                response, validation = challb.chall.response_and_validation(account_key)
                token = session.create(domain, validation)
                pending.append((authzr, challb, response, domain, token))

            if pending and not session.await_propagation(self._budget(self._propagation_timeout)):
                raise OrderTimeout(f"Challenge records for {domain_set} did not propagate in time")

            for _, challb, response, _, _ in pending:
                self._call(acme.answer_challenge, challb, response)
            for authzr, _, _, domain, token in pending:
                self._await_authorization(acme, authzr, domain, token)

        order = self._finalize(acme, order, domain_set)
        certificate, chain = split_fullchain(order.fullchain_pem)
        issued_at, expires_at = certificate_validity(certificate)
        logger.info("Issued certificate for %s, valid until %s", domain_set, expires_at.isoformat())
        return CertificateRecord(
            domain_set=domain_set,
            issued_at=issued_at,
            expires_at=expires_at,
            certificate=certificate,
            private_key=key_pem.decode("ascii"),
            chain=chain,
        )
