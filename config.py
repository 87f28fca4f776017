import os
import re
from typing import Optional

import tldextract
from dotenv import load_dotenv

# Load environment variables from a .env file
load_dotenv()

EMAIL_PATTERN = re.compile(r"^[\w.%+-]+@[\w.-]+\.[a-zA-Z]{2,6}$")

MIN_RENEW_INTERVAL_DAYS = 1
MAX_RENEW_INTERVAL_DAYS = 89
DEFAULT_RENEW_INTERVAL_DAYS = 80

# Bundled public suffix snapshot only: synth must not depend on network access
_extract = tldextract.TLDExtract(suffix_list_urls=())


class ConfigurationError(RuntimeError):
    """Invalid deployment configuration, raised before anything is synthesized."""


class EnvConfig:
    """
    Stores environment-specific configuration for the certificate stack.
    """
    def __init__(
        self,
        env_name: str,
        account: str,
        region: str,
        domain_names: str,
        notify_email: str,
        renew_interval_days: int = DEFAULT_RENEW_INTERVAL_DAYS,
        acme_directory_url: Optional[str] = None,
    ):
        self.name = env_name
        self.account = account
        self.region = region
        self.domain_names = normalize_domain_names(domain_names)
        self.notify_email = validate_email(notify_email)
        self.renew_interval_days = validate_renew_interval(renew_interval_days)
        self.acme_directory_url = acme_directory_url


def normalize_domain_names(raw: str) -> str:
    """
    Lower-cases and validates the domain list. Domains are separated by commas;
    several certificates can be requested by separating domain groups with ';'.
    """
    groups = []
    for group in raw.split(";"):
        domains = [d.strip().lower() for d in group.split(",") if d.strip()]
        if not domains:
            continue
        for domain in domains:
            name = domain[2:] if domain.startswith("*.") else domain
            extracted = _extract(name)
            if "*" in name or not extracted.domain or not extracted.suffix:
                raise ConfigurationError(f"❌ INVALID CONFIG: '{domain}' is not a domain under a public suffix")
        groups.append(",".join(domains))
    if not groups:
        raise ConfigurationError("❌ INVALID CONFIG: The domain list is empty")
    return ";".join(groups)


def validate_email(email: str) -> str:
    if not EMAIL_PATTERN.match(email.strip()):
        raise ConfigurationError(f"❌ INVALID CONFIG: '{email}' is not a valid email address")
    return email.strip()


def validate_renew_interval(days) -> int:
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise ConfigurationError(f"❌ INVALID CONFIG: Renew interval '{days}' is not a number")
    if not MIN_RENEW_INTERVAL_DAYS <= days <= MAX_RENEW_INTERVAL_DAYS:
        raise ConfigurationError(
            f"❌ INVALID CONFIG: Renew interval must be between {MIN_RENEW_INTERVAL_DAYS} "
            f"and {MAX_RENEW_INTERVAL_DAYS} days, got {days}"
        )
    return days


def get_required_env(key: str) -> str:
    """
    Retrieves a required environment variable or raises a ConfigurationError if missing.
    """
    value = os.getenv(key)
    if not value:
        raise ConfigurationError(f"❌ MISSING CONFIG: Required environment variable '{key}' not found in .env")
    return value


def get_config(scope) -> EnvConfig:
    """
    Factory function to generate the EnvConfig object based on CDK context.
    Usage: cdk deploy -c env=prod
    """
    # Default to 'dev' environment if no context is provided
    env_name = scope.node.try_get_context("env") or "dev"
    prefix = env_name.upper()

    print(f"🔍 Initializing CloudFront SSL plugin for environment: {prefix}")

    # Load Mandatory Variables
    account = get_required_env(f"{prefix}_ACCOUNT")
    region = get_required_env(f"{prefix}_REGION")
    domain_names = get_required_env(f"{prefix}_DOMAIN_NAMES")
    notify_email = get_required_env(f"{prefix}_NOTIFY_EMAIL")

    # Load Optional Variables
    renew_interval_days = os.getenv(f"{prefix}_RENEW_INTERVAL_DAYS") or DEFAULT_RENEW_INTERVAL_DAYS
    acme_directory_url = os.getenv("ACME_DIRECTORY_URL")

    if not region.startswith("cn-"):
        print(f"⚠️ Region '{region}' is outside the China partition; IAM server certificates work there too, ACM is usually preferable")

    return EnvConfig(
        env_name=env_name,
        account=account,
        region=region,
        domain_names=domain_names,
        notify_email=notify_email,
        renew_interval_days=renew_interval_days,
        acme_directory_url=acme_directory_url,
    )
