"""Active certificate authority: loading, caching, rotation, and bot issuance."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import timedelta

from .certificates import (
    CA_VALIDITY_YEARS,
    generate_bot_certificate,
    generate_ca_certificate,
    generate_server_certificate,
)
from .db_models import CertificateAuthorityRecord, utcnow
from .encryption import decrypt, encrypt
from .network import BACKEND_PRIVATE_IP
from .settings import get_setting
from .storage import ca_store

logger = logging.getLogger(__name__)


class CANotInitializedError(RuntimeError):
    """No active CA row exists. Run scripts/init_ca.py first."""


@dataclass(frozen=True)
class ActiveCA:
    ca_cert: str
    ca_key: str
    server_cert: str
    server_key: str


@dataclass(frozen=True)
class BotCertificateBundle:
    certificate: str
    private_key: str
    ca_certificate: str


_cached_ca: ActiveCA | None = None
_cache_lock = threading.Lock()


def get_active_ca() -> ActiveCA:
    """Return the active CA with decrypted keys, loading it once per process."""
    global _cached_ca
    with _cache_lock:
        if _cached_ca is not None:
            return _cached_ca

        record = ca_store.get_active()
        if record is None:
            raise CANotInitializedError("No active CA found. Run scripts/init_ca.py first.")

        _cached_ca = ActiveCA(
            ca_cert=record.ca_cert,
            ca_key=decrypt(record.ca_key_encrypted),
            server_cert=record.server_cert,
            server_key=decrypt(record.server_key_encrypted),
        )
        return _cached_ca


def clear_ca_cache() -> None:
    global _cached_ca
    with _cache_lock:
        _cached_ca = None


def generate_bot_certificate_from_ca(bot_id: str) -> BotCertificateBundle:
    ca = get_active_ca()
    pair = generate_bot_certificate(bot_id, ca.ca_cert, ca.ca_key)
    return BotCertificateBundle(
        certificate=pair.certificate,
        private_key=pair.private_key,
        ca_certificate=ca.ca_cert,
    )


def initialize_ca(
    hostname: str | None = None, private_ip: str = BACKEND_PRIVATE_IP
) -> CertificateAuthorityRecord:
    """Generate a new CA and config API server cert, and make them active.

    Existing bot certificates stop verifying once the old CA is rotated out.
    """
    hostname = hostname or get_setting("config_api.hostname")

    logger.info("Generating CA certificate")
    ca = generate_ca_certificate()
    logger.info(f"Generating server certificate for {hostname} ({private_ip})")
    server = generate_server_certificate(hostname, private_ip, ca.certificate, ca.private_key)

    record = ca_store.rotate(
        CertificateAuthorityRecord(
            ca_cert=ca.certificate,
            ca_key_encrypted=encrypt(ca.private_key),
            server_cert=server.certificate,
            server_key_encrypted=encrypt(server.private_key),
            expires_at=utcnow() + timedelta(days=365 * CA_VALIDITY_YEARS),
        )
    )
    clear_ca_cache()
    logger.info(f"CA {record.id} is now active")
    return record
