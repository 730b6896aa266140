"""factory.core.exceptions

Errors are part of the interface.

Messages name keys, paths and byte lengths. Never values.
"""

from __future__ import annotations


class FactoryError(Exception):
    """Base exception for the mail server factory."""


class ConfigError(FactoryError):
    """Configuration is missing, invalid, or inconsistent."""


class SecurityError(FactoryError):
    """Security invariant violated."""


class CryptoValidationError(SecurityError, ValueError):
    """Input to encrypt/decrypt is malformed (empty data, short passphrase)."""


class PayloadFormatError(CryptoValidationError):
    """Serialized payload does not match salt:iv:ciphertext."""


class AuthenticationFailedError(SecurityError):
    """Tag verification failed: wrong passphrase or tampered ciphertext."""


class EncryptionError(SecurityError):
    """The cipher refused to encrypt."""


class MissingSecretError(SecurityError, LookupError):
    """No source supplied a required secret."""

    def __init__(self, *keys: str) -> None:
        self.keys = tuple(keys)
        if len(self.keys) == 1:
            msg = f"Required secret not found: {self.keys[0]}"
        else:
            msg = f"Missing required secrets: {', '.join(self.keys)}"
        super().__init__(msg)


class AuditError(FactoryError):
    """Audit storage could not be initialized. Privileged work must not proceed."""
