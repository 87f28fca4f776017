import os
from typing import List, Optional

from .errors import ConfigurationError
from .models import DomainSet

LETSENCRYPT_DIRECTORY = "https://acme-v02.api.letsencrypt.org/directory"

MIN_RENEW_INTERVAL_DAYS = 1
MAX_RENEW_INTERVAL_DAYS = 89


class Settings:
    """
    Runtime configuration of the certificate function, taken from the
    environment the stack assigns to it.
    """
    def __init__(
        self,
        bucket: str,
        domain_sets: List[DomainSet],
        email: str,
        topic_arn: str,
        stack_name: str,
        region: Optional[str] = None,
        renew_interval_days: int = 80,
        max_dist_items: int = 200,
        dist_page_size: int = 20,
        acme_directory_url: str = LETSENCRYPT_DIRECTORY,
        certificate_path: str = "/cloudfront/",
    ):
        if not MIN_RENEW_INTERVAL_DAYS <= renew_interval_days <= MAX_RENEW_INTERVAL_DAYS:
            raise ConfigurationError(
                f"Renew interval must be between {MIN_RENEW_INTERVAL_DAYS} and "
                f"{MAX_RENEW_INTERVAL_DAYS} days, got {renew_interval_days}"
            )
        if not certificate_path.startswith("/cloudfront/") or not certificate_path.endswith("/"):
            raise ConfigurationError(f"Certificate path '{certificate_path}' must start with /cloudfront/ and end with /")

        self.bucket = bucket
        self.domain_sets = domain_sets
        self.email = email
        self.topic_arn = topic_arn
        self.stack_name = stack_name
        self.region = region
        self.renew_interval_days = renew_interval_days
        self.max_dist_items = max_dist_items
        self.dist_page_size = dist_page_size
        self.acme_directory_url = acme_directory_url
        self.certificate_path = certificate_path


def get_required_env(key: str) -> str:
    value = os.environ.get(key)
    if not value:
        raise ConfigurationError(f"Required environment variable '{key}' is not set")
    return value


def _int_env(key: str, default: int) -> int:
    value = os.environ.get(key)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"Environment variable '{key}' must be an integer, got '{value}'")


def load_settings() -> Settings:
    return Settings(
        bucket=get_required_env("CERTBOT_BUCKET"),
        domain_sets=DomainSet.parse_many(get_required_env("DOMAINS_LIST")),
        email=get_required_env("DOMAINS_EMAIL"),
        topic_arn=get_required_env("TOPIC_ARN"),
        stack_name=os.environ.get("STACK_NAME", "cloudfront-ssl-plugin"),
        region=os.environ.get("REGION") or os.environ.get("AWS_REGION"),
        renew_interval_days=_int_env("RENEW_INTERVAL_DAYS", 80),
        max_dist_items=_int_env("MAX_DIST_ITEMS", 200),
        dist_page_size=_int_env("DIST_PAGE_SIZE", 20),
        acme_directory_url=os.environ.get("ACME_DIRECTORY_URL") or LETSENCRYPT_DIRECTORY,
        certificate_path=os.environ.get("CERT_PATH", "/cloudfront/"),
    )
