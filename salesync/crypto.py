"""Authenticated encryption for integration secrets stored in the settings tables.

Tokens use AES-256-GCM and the layout ``<iv hex>:<auth tag hex>:<ciphertext hex>``.
The master key is read from ``SALESYNC_ENCRYPTION_KEY`` (64 hex characters) on
every call, so the module can be imported before the key is provisioned.
"""

from __future__ import annotations

import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from salesync.exceptions import ConfigurationError, IntegrityError

KEY_ENV_VAR = "SALESYNC_ENCRYPTION_KEY"
IV_LENGTH = 16
TAG_LENGTH = 16
MASKED_VALUE = "********"


def _master_key() -> bytes:
    raw = (os.getenv(KEY_ENV_VAR) or "").strip()
    if not raw:
        raise ConfigurationError(f"{KEY_ENV_VAR} is not set; cannot encrypt or decrypt secrets")
    try:
        key = bytes.fromhex(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{KEY_ENV_VAR} must be a hex string") from exc
    if len(key) != 32:
        raise ConfigurationError(f"{KEY_ENV_VAR} must be 64 hex characters (32 bytes)")
    return key


def encrypt_secret(plaintext: str) -> str:
    aead = AESGCM(_master_key())
    iv = os.urandom(IV_LENGTH)
    sealed = aead.encrypt(iv, plaintext.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_secret(token: str) -> str:
    key = _master_key()
    parts = (token or "").split(":")
    if len(parts) != 3:
        raise IntegrityError("Encrypted value is malformed")
    try:
        iv, tag, ciphertext = (binascii.unhexlify(part) for part in parts)
    except (binascii.Error, ValueError) as exc:
        raise IntegrityError("Encrypted value is not valid hex") from exc
    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise IntegrityError("Encrypted value has an invalid IV or tag length")
    try:
        plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as exc:
        raise IntegrityError("Encrypted value failed authentication") from exc
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise IntegrityError("Decrypted value is not valid UTF-8") from exc


def mask_secret(value: str | None) -> str:
    return MASKED_VALUE if value else ""
