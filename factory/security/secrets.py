"""factory.security.secrets

Secret resolution with a fixed, auditable precedence.

Lookup order (first hit wins):
1. process environment (live lookup, then the MAIL_FACTORY_* snapshot taken at load)
2. secrets file (MAIL_FACTORY_SECRETS_FILE, properties syntax)
3. the configuration value: `encrypted:` values are decrypted with the master
   key, anything else is used as-is with a warning

Nothing is cached beyond the two source maps. Every call re-derives the value;
callers drop plaintext as soon as it is used.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from factory.core.config import SecretsConfig
from factory.core.exceptions import MissingSecretError, SecurityError
from factory.core.properties import load_properties
from factory.security import encryption
from factory.security.audit import AuditAction, AuditTrail

logger = logging.getLogger(__name__)

ENCRYPTED_PREFIX = "encrypted:"

# Credential name -> environment override.
WELL_KNOWN_SECRETS: dict[str, str] = {
    "database.password": "MAIL_FACTORY_DB_PASSWORD",
    "ssh.password": "MAIL_FACTORY_SSH_PASSWORD",
    "docker.username": "MAIL_FACTORY_DOCKER_USERNAME",
    "docker.password": "MAIL_FACTORY_DOCKER_PASSWORD",
}


class SecretSource(StrEnum):
    ENVIRONMENT = "environment"
    SECRETS_FILE = "secrets_file"
    ENCRYPTED_CONFIG = "encrypted_config"
    PLAINTEXT_CONFIG = "plaintext_config"


@dataclass(frozen=True, slots=True)
class Credential:
    key: str
    value: str = field(repr=False)
    source: SecretSource


def is_encrypted(value: str | None, prefix: str = ENCRYPTED_PREFIX) -> bool:
    return bool(value) and str(value).startswith(prefix)


def load_secrets_file(path: Path) -> dict[str, str]:
    """Read the secrets file. Values are literal (no `${VAR}` interpolation)."""

    return load_properties(path)


class SecretResolver:
    """Resolve named credentials from environment, secrets file, or config."""

    def __init__(
        self,
        config: SecretsConfig | None = None,
        *,
        audit: AuditTrail | None = None,
        environ: Mapping[str, str] | None = None,
        autoload: bool = True,
    ) -> None:
        self.config = config or SecretsConfig()
        self.audit = audit
        self._environ: Mapping[str, str] = os.environ if environ is None else environ
        self._lock = threading.RLock()
        self._env_secrets: dict[str, str] = {}
        self._file_secrets: dict[str, str] = {}
        self._loaded = False
        if autoload:
            self.load()

    # --- sources ---

    @property
    def loaded(self) -> bool:
        return self._loaded

    def load(self) -> None:
        """(Re)load the environment snapshot and the secrets file."""

        namespace = self.config.env_namespace
        env_secrets = {k: v for k, v in self._environ.items() if k.startswith(namespace)}
        file_secrets = self._read_secrets_file()
        with self._lock:
            self._env_secrets = env_secrets
            self._file_secrets = file_secrets
            self._loaded = True

    def clear_secrets(self) -> None:
        """Forget the loaded source maps. Call `load()` to read them again."""

        with self._lock:
            self._env_secrets = {}
            self._file_secrets = {}
            self._loaded = False

    def _read_secrets_file(self) -> dict[str, str]:
        path = self.config.secrets_file
        if path is None:
            return {}
        if not path.exists():
            logger.warning("secrets_file_missing", extra={"path": str(path)})
            return {}
        try:
            secrets = load_secrets_file(path)
        except (OSError, ValueError) as e:
            logger.error("secrets_file_unreadable", extra={"path": str(path), "error": type(e).__name__})
            return {}
        logger.info("secrets_file_loaded", extra={"path": str(path), "count": len(secrets)})
        return secrets

    @staticmethod
    def _names(key: str) -> list[str]:
        alias = WELL_KNOWN_SECRETS.get(key)
        return [key, alias] if alias else [key]

    def _lookup(self, key: str) -> tuple[str, SecretSource] | None:
        names = self._names(key)
        for name in names:
            v = self._environ.get(name)
            if v:
                return v, SecretSource.ENVIRONMENT
        with self._lock:
            for name in names:
                v = self._env_secrets.get(name)
                if v:
                    return v, SecretSource.ENVIRONMENT
            for name in names:
                v = self._file_secrets.get(name)
                if v:
                    return v, SecretSource.SECRETS_FILE
        return None

    # --- lookups ---

    def is_encrypted(self, value: str | None) -> bool:
        return is_encrypted(value, self.config.encrypted_prefix)

    def get_secret(self, key: str) -> str | None:
        """Environment, then secrets file. `None` when absent."""

        hit = self._lookup(key)
        return hit[0] if hit is not None else None

    def require_secret(self, key: str) -> str:
        """Environment or secrets file only. Never falls back to configuration.

        Raises:
            MissingSecretError: the key is absent from both sources.
        """

        value = self.get_secret(key)
        if value is None:
            raise MissingSecretError(key)
        return value

    def validate_required(self, keys: Iterable[str]) -> None:
        """Raise once, naming every missing key."""

        missing = [k for k in keys if self.get_secret(k) is None]
        if missing:
            raise MissingSecretError(*missing)

    def master_key(self) -> str:
        return self.require_secret(self.config.master_key_var)

    def resolve_credential(self, key: str, config_value: str | None = None) -> Credential:
        hit = self._lookup(key)
        if hit is not None:
            value, source = hit
            return Credential(key=key, value=value, source=source)

        if config_value:
            if self.is_encrypted(config_value):
                return Credential(
                    key=key,
                    value=self.decrypt_value(config_value, key=key),
                    source=SecretSource.ENCRYPTED_CONFIG,
                )
            logger.warning("plaintext_secret_in_config", extra={"key": key})
            return Credential(key=key, value=config_value, source=SecretSource.PLAINTEXT_CONFIG)

        raise MissingSecretError(key)

    def resolve(self, key: str, config_value: str | None = None) -> str:
        """Plaintext for `key`, following the fixed precedence.

        Raises:
            MissingSecretError: no source supplied the key, or the master key
                is absent when an encrypted value needs it.
            SecurityError: the encrypted value is malformed or fails authentication.
        """

        return self.resolve_credential(key, config_value).value

    def database_password(self, config_value: str | None = None) -> str:
        return self.resolve("database.password", config_value)

    def ssh_password(self, config_value: str | None = None) -> str:
        return self.resolve("ssh.password", config_value)

    def docker_password(self, config_value: str | None = None) -> str:
        return self.resolve("docker.password", config_value)

    # --- encryption ---

    def decrypt_value(self, value: str, *, key: str = "config") -> str:
        """Decrypt an `encrypted:` value (prefix optional) with the master key."""

        prefix = self.config.encrypted_prefix
        payload = value[len(prefix):] if value.startswith(prefix) else value
        passphrase = self.master_key()
        try:
            plaintext = encryption.decrypt(payload, passphrase)
        except SecurityError:
            self._audit_encryption(AuditAction.DECRYPT, key, success=False)
            raise
        self._audit_encryption(AuditAction.DECRYPT, key, success=True)
        return plaintext

    def encrypt_value(self, plaintext: str, *, key: str = "config") -> str:
        """Encrypt with the master key and return a prefixed config value."""

        passphrase = self.master_key()
        try:
            payload = encryption.encrypt(plaintext, passphrase)
        except SecurityError:
            self._audit_encryption(AuditAction.ENCRYPT, key, success=False)
            raise
        self._audit_encryption(AuditAction.ENCRYPT, key, success=True)
        return f"{self.config.encrypted_prefix}{payload}"

    def _audit_encryption(self, action: AuditAction, key: str, *, success: bool) -> None:
        if self.audit is not None:
            self.audit.log_encryption(action, key, success)
