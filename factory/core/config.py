"""factory.core.config

Two config surfaces only:
1) `config/default.yaml` (optional overlay)
2) Environment variables, all under the `MAIL_FACTORY_` namespace (win over YAML)

Secret values are never fields here. Only where to find them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings

from factory.core.exceptions import ConfigError

_MB = 1024 * 1024


class AuditConfig(BaseSettings):
    """Audit trail storage and scheduling.

    Env: MAIL_FACTORY_AUDIT_LOG_DIR, _MAX_SIZE (MB), _RETENTION_DAYS, _FLUSH_INTERVAL (s).
    """

    dir: Path = Path("logs/audit")
    max_size: float = 100
    retention_days: int = 90
    flush_interval: float = 5.0
    cleanup_interval: float = 24 * 60 * 60
    cleanup_delay: float = 60 * 60
    shutdown_timeout: float = 10.0

    model_config = {"env_prefix": "MAIL_FACTORY_AUDIT_LOG_"}

    @field_validator("max_size", "flush_interval", "cleanup_interval", "shutdown_timeout")
    @classmethod
    def must_be_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("must be > 0")
        return v

    @field_validator("retention_days")
    @classmethod
    def retention_at_least_one_day(cls, v: int) -> int:
        if v < 1:
            raise ValueError("retention_days must be >= 1")
        return v

    @field_validator("cleanup_delay")
    @classmethod
    def delay_not_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("cleanup_delay must be >= 0")
        return v

    @property
    def max_size_bytes(self) -> int:
        return max(1, int(self.max_size * _MB))


class SecretsConfig(BaseSettings):
    """Where secrets come from. Env: MAIL_FACTORY_SECRETS_FILE."""

    secrets_file: Path | None = None
    env_namespace: str = "MAIL_FACTORY_"
    master_key_var: str = "MAIL_FACTORY_MASTER_KEY"
    encrypted_prefix: str = "encrypted:"

    model_config = {"env_prefix": "MAIL_FACTORY_"}

    @field_validator("encrypted_prefix", "master_key_var")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


def _env_over_yaml(section_cls: type[BaseSettings], values: dict[str, Any]) -> BaseSettings:
    """Build a section from YAML values with its own env vars taking precedence."""

    from_env = section_cls()
    env_values = from_env.model_dump(include=from_env.model_fields_set)
    return section_cls(**{**values, **env_values})


class LoggingConfig(BaseModel):
    level: str = "INFO"


class FactoryConfig(BaseSettings):
    """Root configuration. Single source of truth."""

    audit: AuditConfig = Field(default_factory=AuditConfig)
    secrets: SecretsConfig = Field(default_factory=SecretsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"env_prefix": "MAIL_FACTORY_", "env_nested_delimiter": "__"}

    @classmethod
    def from_yaml(cls, path: Path) -> FactoryConfig:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        raw: Any = yaml.safe_load(path.read_text()) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Config file must contain a mapping: {path}")

        data = dict(raw)
        for name, section_cls in (("audit", AuditConfig), ("secrets", SecretsConfig)):
            values = data.get(name)
            if isinstance(values, dict):
                data[name] = _env_over_yaml(section_cls, values)
        return cls(**data)

    @classmethod
    def from_repo_defaults(cls, repo_root: Path | None = None) -> FactoryConfig:
        root = repo_root or Path.cwd()
        path = root / "config" / "default.yaml"
        if not path.exists():
            return cls()
        return cls.from_yaml(path)
