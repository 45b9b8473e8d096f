"""X.509 generation and verification for the internal bot CA.

Three kinds of certificate are issued:

- the CA itself (RSA-4096, ten years, keyCertSign/cRLSign)
- a server certificate for the mTLS config API (serverAuth, SAN = DNS + IP)
- one client certificate per bot (clientAuth, CN ``bot-<id>``)
"""

from __future__ import annotations

import ipaddress
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

CA_COMMON_NAME = "Botcloud Internal CA"
ORGANIZATION = "Botcloud"
BOT_ORGANIZATION = "Botcloud Bot"
BOT_CN_PREFIX = "bot-"
CA_VALIDITY_YEARS = 10
CERT_VALIDITY_DAYS = 365


@dataclass(frozen=True)
class CertificatePair:
    certificate: str
    private_key: str


def _new_key(bits: int) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def _key_to_pem(key: rsa.RSAPrivateKey) -> str:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


def _cert_to_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def _random_serial() -> int:
    # 16 random bytes, top bit cleared so the serial stays positive
    return int.from_bytes(os.urandom(16), "big") >> 1


def _load_ca(ca_cert_pem: str, ca_key_pem: str) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
    ca_cert = x509.load_pem_x509_certificate(ca_cert_pem.encode("ascii"))
    ca_key = serialization.load_pem_private_key(ca_key_pem.encode("ascii"), password=None)
    return ca_cert, ca_key


def _leaf_builder(
    subject: x509.Name,
    key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    usage: x509.ObjectIdentifier,
) -> x509.CertificateBuilder:
    now = datetime.now(timezone.utc)
    ca_ski = ca_cert.extensions.get_extension_for_class(x509.SubjectKeyIdentifier).value
    return (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(_random_serial())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=CERT_VALIDITY_DAYS))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=False)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=False,
        )
        .add_extension(x509.ExtendedKeyUsage([usage]), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski),
            critical=False,
        )
    )


def generate_ca_certificate() -> CertificatePair:
    """Create a self-signed root for the bot fleet."""
    key = _new_key(4096)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, CA_COMMON_NAME),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        ]
    )
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(1)
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=365 * CA_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=False,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return CertificatePair(certificate=_cert_to_pem(cert), private_key=_key_to_pem(key))


def generate_server_certificate(
    hostname: str, private_ip: str, ca_cert_pem: str, ca_key_pem: str
) -> CertificatePair:
    """Issue the config API's TLS certificate, valid for *hostname* and *private_ip*."""
    ca_cert, ca_key = _load_ca(ca_cert_pem, ca_key_pem)
    key = _new_key(2048)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, hostname),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, ORGANIZATION),
        ]
    )
    san = x509.SubjectAlternativeName(
        [x509.DNSName(hostname), x509.IPAddress(ipaddress.ip_address(private_ip))]
    )
    cert = (
        _leaf_builder(subject, key, ca_cert, ExtendedKeyUsageOID.SERVER_AUTH)
        .add_extension(san, critical=False)
        .sign(ca_key, hashes.SHA256())
    )
    return CertificatePair(certificate=_cert_to_pem(cert), private_key=_key_to_pem(key))


def generate_bot_certificate(bot_id: str, ca_cert_pem: str, ca_key_pem: str) -> CertificatePair:
    """Issue a client certificate whose CN identifies *bot_id*."""
    ca_cert, ca_key = _load_ca(ca_cert_pem, ca_key_pem)
    key = _new_key(2048)
    subject = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, f"{BOT_CN_PREFIX}{bot_id}"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, BOT_ORGANIZATION),
        ]
    )
    cert = _leaf_builder(subject, key, ca_cert, ExtendedKeyUsageOID.CLIENT_AUTH).sign(
        ca_key, hashes.SHA256()
    )
    return CertificatePair(certificate=_cert_to_pem(cert), private_key=_key_to_pem(key))


def extract_bot_id_from_cert(cert_pem: str | None) -> str | None:
    """Return the id in a ``bot-<id>`` CN, or None if absent or unparseable."""
    if not cert_pem:
        return None
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("ascii"))
        attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    except (ValueError, UnicodeEncodeError):
        return None
    if not attrs:
        return None
    cn = attrs[0].value
    if not isinstance(cn, str) or not cn.startswith(BOT_CN_PREFIX):
        return None
    return cn[len(BOT_CN_PREFIX) :] or None


def verify_certificate(cert_pem: str | None, ca_cert_pem: str | None) -> bool:
    """True iff *cert_pem* was signed by the CA in *ca_cert_pem*. Never raises."""
    if not cert_pem or not ca_cert_pem:
        return False
    try:
        cert = x509.load_pem_x509_certificate(cert_pem.encode("ascii"))
        ca_cert = x509.load_pem_x509_certificate(ca_cert_pem.encode("ascii"))
        cert.verify_directly_issued_by(ca_cert)
    except (ValueError, TypeError, InvalidSignature, UnicodeEncodeError) as e:
        logger.debug(f"Certificate verification failed: {e}")
        return False
    return True


def der_to_pem(der: bytes) -> str:
    """Convert a DER certificate (as returned by SSLSocket.getpeercert) to PEM."""
    return _cert_to_pem(x509.load_der_x509_certificate(der))
