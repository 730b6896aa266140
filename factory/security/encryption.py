"""factory.security.encryption

Authenticated encryption for secret values.

- AES-256-GCM, 128-bit tag appended to the ciphertext
- PBKDF2-HMAC-SHA256, 65 536 iterations, fresh 16-byte salt per call
- fresh 12-byte nonce per call

Wire format: base64(salt):base64(iv):base64(ciphertext||tag)

Values produced by earlier releases of the factory decrypt unchanged, so the
KDF parameters are part of the format. Do not tune them in place.
"""

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from factory.core.exceptions import (
    AuthenticationFailedError,
    CryptoValidationError,
    EncryptionError,
    PayloadFormatError,
)

ITERATIONS = 65_536
KEY_LENGTH = 32
SALT_LENGTH = 16
IV_LENGTH = 12
TAG_LENGTH = 16
MIN_PASSPHRASE_LENGTH = 8

_SEPARATOR = ":"


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------


def _b64decode_field(name: str, value: str) -> bytes:
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise PayloadFormatError(f"Invalid base64 in {name} field") from e
    # Reject encodings that decode but do not round-trip (stray padding bits).
    if base64.b64encode(raw).decode("ascii") != value:
        raise PayloadFormatError(f"Non-canonical base64 in {name} field")
    return raw


@dataclass(frozen=True, slots=True)
class EncryptedPayload:
    """At-rest representation of one secret. Never mutated, never reused."""

    salt: bytes
    iv: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        return _SEPARATOR.join(
            base64.b64encode(part).decode("ascii") for part in (self.salt, self.iv, self.ciphertext)
        )

    @classmethod
    def parse(cls, text: str) -> EncryptedPayload:
        if not text:
            raise PayloadFormatError("Encrypted data cannot be empty")

        parts = text.split(_SEPARATOR)
        if len(parts) != 3:
            raise PayloadFormatError(
                f"Invalid encrypted data format: expected 3 fields (salt:iv:encrypted), got {len(parts)}"
            )

        salt = _b64decode_field("salt", parts[0])
        iv = _b64decode_field("iv", parts[1])
        ciphertext = _b64decode_field("ciphertext", parts[2])

        if len(salt) != SALT_LENGTH:
            raise PayloadFormatError(f"Invalid salt length: {len(salt)}, expected {SALT_LENGTH}")
        if len(iv) != IV_LENGTH:
            raise PayloadFormatError(f"Invalid IV length: {len(iv)}, expected {IV_LENGTH}")
        if len(ciphertext) < TAG_LENGTH:
            raise PayloadFormatError(f"Invalid ciphertext length: {len(ciphertext)}, expected >= {TAG_LENGTH}")

        return cls(salt=salt, iv=iv, ciphertext=ciphertext)


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------


def derive_key(passphrase: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=ITERATIONS,
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _check_passphrase(passphrase: str) -> None:
    if not passphrase:
        raise CryptoValidationError("Master key cannot be empty")
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise CryptoValidationError(f"Master key must be at least {MIN_PASSPHRASE_LENGTH} characters")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def encrypt(plaintext: str, passphrase: str) -> str:
    """Encrypt a UTF-8 string and return the serialized payload.

    Raises:
        CryptoValidationError: empty plaintext, empty or short passphrase.
        EncryptionError: the cipher failed.
    """

    if not plaintext:
        raise CryptoValidationError("Data to encrypt cannot be empty")
    _check_passphrase(passphrase)

    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    try:
        key = derive_key(passphrase, salt)
        ciphertext = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    except (ValueError, OverflowError) as e:
        raise EncryptionError(f"Failed to encrypt data: {type(e).__name__}") from e

    return EncryptedPayload(salt=salt, iv=iv, ciphertext=ciphertext).serialize()


def decrypt(serialized: str, passphrase: str) -> str:
    """Decrypt a serialized payload.

    Wrong passphrase and tampering are deliberately reported the same way.

    Raises:
        CryptoValidationError: empty passphrase.
        PayloadFormatError: malformed payload.
        AuthenticationFailedError: tag verification failed.
    """

    if not passphrase:
        raise CryptoValidationError("Master key cannot be empty")

    payload = EncryptedPayload.parse(serialized)
    key = derive_key(passphrase, payload.salt)
    try:
        data = AESGCM(key).decrypt(payload.iv, payload.ciphertext, None)
    except InvalidTag as e:
        raise AuthenticationFailedError(
            "Authentication failed. Data may have been tampered with or wrong master key provided."
        ) from e

    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise PayloadFormatError(f"Decrypted payload is not UTF-8 ({len(data)} bytes)") from e


def wipe(buffer: bytearray) -> None:
    """Zero a mutable buffer in place. Best-effort: copies may exist elsewhere."""

    for i in range(len(buffer)):
        buffer[i] = 0
