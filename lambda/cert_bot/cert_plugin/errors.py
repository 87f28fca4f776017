class CertPluginError(Exception):
    """Base class for every failure the certificate function reports."""


class ConfigurationError(CertPluginError):
    """Invalid domain list, email or renew interval. Raised before any run."""


class AuthorizationFailed(CertPluginError):
    """The certificate authority rejected a challenge for one of the domains."""

    def __init__(self, domain: str, detail: str):
        super().__init__(f"Authorization for '{domain}' failed: {detail}")
        self.domain = domain
        self.detail = detail


class AuthorityUnavailable(CertPluginError):
    """Network error or 5xx from the certificate authority."""


class DNSProviderUnavailable(CertPluginError):
    """Route 53 kept throttling or failing after the retry budget was spent."""


class OrderTimeout(CertPluginError):
    """An authorization, DNS change or order did not settle in time."""


class StoreConflict(CertPluginError):
    """IAM name collision, certificate in use, or another concurrent change."""


class CertificateNotFound(CertPluginError):
    """No IAM server certificate with the requested name."""


class DistributionUpdateFailed(CertPluginError):
    """One or more distributions could not be pointed at the new certificate."""

    def __init__(self, failures, bound=None, listing_complete=True):
        details = ", ".join(f"{dist_id} ({reason})" for dist_id, reason in failures.items())
        message = f"Failed to update distributions: {details}" if failures else "Distribution binding incomplete"
        if not listing_complete:
            message += "; listing stopped at the invocation deadline"
        super().__init__(message)
        self.failures = dict(failures)
        self.bound = list(bound or [])
        self.listing_complete = listing_complete
