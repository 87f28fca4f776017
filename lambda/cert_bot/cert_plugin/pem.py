from datetime import datetime
from typing import Tuple

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa


def certificate_validity(pem: str) -> Tuple[datetime, datetime]:
    """Return (notValidBefore, notValidAfter) of a leaf certificate, in UTC."""
    cert = x509.load_pem_x509_certificate(pem.encode("utf-8"))
    return cert.not_valid_before_utc, cert.not_valid_after_utc


def split_fullchain(fullchain: str) -> Tuple[str, str]:
    """Split a PEM bundle into the leaf certificate and the rest of the chain."""
    certs = x509.load_pem_x509_certificates(fullchain.encode("utf-8"))
    if not certs:
        raise ValueError("No certificate found in the downloaded chain")
    blocks = [c.public_bytes(serialization.Encoding.PEM).decode("ascii") for c in certs]
    return blocks[0], "".join(blocks[1:])


def generate_private_key(key_size: int = 2048) -> bytes:
    # IAM server certificates accept PKCS#1 RSA keys for CloudFront
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
