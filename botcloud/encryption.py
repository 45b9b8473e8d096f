"""AES-256-GCM encryption for secrets stored in the database.

Stored values are base64(iv | tag | ciphertext) with a 16-byte IV and a
16-byte tag. The key is 32 bytes, given as 64 hex characters in
ENCRYPTION_KEY.
"""

from __future__ import annotations

import base64
import binascii
import os
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_ENV_VAR = "ENCRYPTION_KEY"


class EncryptionError(RuntimeError):
    """Raised when the key is missing/invalid or a ciphertext fails to decrypt."""


def _get_key() -> bytes:
    raw = os.environ.get(KEY_ENV_VAR, "")
    if not raw:
        raise EncryptionError(f"{KEY_ENV_VAR} environment variable is not set")
    if len(raw) != 64:
        raise EncryptionError(f"{KEY_ENV_VAR} must be 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(raw)
    except ValueError as exc:
        raise EncryptionError(f"{KEY_ENV_VAR} is not valid hex") from exc


def encrypt(plaintext: str) -> str:
    """Encrypt *plaintext* and return the base64 storage form."""
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_get_key()).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt(stored: str) -> str:
    """Decrypt a value produced by encrypt(). Raises EncryptionError on tampering."""
    try:
        blob = base64.b64decode(stored, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise EncryptionError("Ciphertext is not valid base64") from exc
    if len(blob) < IV_LENGTH + TAG_LENGTH:
        raise EncryptionError("Ciphertext is too short")

    iv = blob[:IV_LENGTH]
    tag = blob[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
    ciphertext = blob[IV_LENGTH + TAG_LENGTH :]
    try:
        plaintext = AESGCM(_get_key()).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise EncryptionError("Ciphertext failed authentication") from exc
    return plaintext.decode("utf-8")


def is_encrypted(value: str | None) -> bool:
    """Heuristic: base64 that decodes to at least iv + tag + one byte."""
    if not value:
        return False
    try:
        blob = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(blob) > IV_LENGTH + TAG_LENGTH


def generate_encryption_key() -> str:
    """Return a fresh key suitable for ENCRYPTION_KEY."""
    return secrets.token_hex(32)
