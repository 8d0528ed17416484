from __future__ import annotations

import datetime
import ipaddress
import logging
import threading
from typing import Dict

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .types import ProxyCertificate

LOGGER = logging.getLogger("KubeAuthProxy.Certificates")

_KEY_SIZE = 2048
_VALIDITY = datetime.timedelta(days=365)


def _subject_alt_name(hostname: str) -> x509.GeneralName:
    try:
        return x509.IPAddress(ipaddress.ip_address(hostname))
    except ValueError:
        return x509.DNSName(hostname)


def generate_certificate(hostname: str) -> ProxyCertificate:
    """Create an RSA key and a self-signed certificate naming ``hostname``."""

    key = rsa.generate_private_key(public_exponent=65537, key_size=_KEY_SIZE)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    now = datetime.datetime.now(datetime.timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + _VALIDITY)
        .add_extension(
            x509.SubjectAlternativeName([_subject_alt_name(hostname)]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = certificate.public_bytes(serialization.Encoding.PEM)
    return ProxyCertificate(private=private_pem.decode("ascii"), cert=cert_pem.decode("ascii"))


class SelfSignedCertificateProvider:
    """Hand out one self-signed certificate per hostname, generated lazily."""

    def __init__(self) -> None:
        self._cache: Dict[str, ProxyCertificate] = {}
        self._lock = threading.Lock()

    def __call__(self, hostname: str) -> ProxyCertificate:
        with self._lock:
            certificate = self._cache.get(hostname)
            if certificate is None:
                LOGGER.info("Generating proxy certificate for '%s'.", hostname)
                certificate = generate_certificate(hostname)
                self._cache[hostname] = certificate
            return certificate
