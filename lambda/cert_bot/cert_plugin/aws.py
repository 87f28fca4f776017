import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, ConnectionClosedError, EndpointConnectionError, ReadTimeoutError

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "TooManyRequestsException",
    "RequestLimitExceeded",
    "PriorRequestNotComplete",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalFailure",
    "InternalError",
}

# boto3's own retries stay short, the polling loops handle the rest
CLIENT_CONFIG = Config(retries={"max_attempts": 3, "mode": "standard"})


def client(service: str, region=None):
    return boto3.client(service, region_name=region, config=CLIENT_CONFIG)


def error_code(e: Exception) -> str:
    if isinstance(e, ClientError):
        return e.response.get("Error", {}).get("Code", "")
    return ""


def is_transient_aws_error(e: Exception) -> bool:
    if isinstance(e, (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)):
        return True
    if isinstance(e, ClientError):
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return error_code(e) in TRANSIENT_ERROR_CODES or status >= 500
    return False
