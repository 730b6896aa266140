"""factory.security.context

The one process-wide security handle.

Built once at startup, passed to whoever needs it, closed at shutdown.
No module-level singletons: the audit file handle, the scheduler and the
secrets maps all live here.
"""

from __future__ import annotations

from dataclasses import dataclass

from factory.core.config import FactoryConfig
from factory.security.audit import AuditTrail
from factory.security.docker_credentials import DockerCredentialsManager
from factory.security.secrets import SecretResolver


@dataclass(frozen=True)
class SecurityContext:
    """Shared security services injected into connection and config layers."""

    config: FactoryConfig
    audit: AuditTrail
    secrets: SecretResolver

    @classmethod
    def from_config(cls, config: FactoryConfig | None = None) -> SecurityContext:
        cfg = config or FactoryConfig()
        audit = AuditTrail(cfg.audit)
        secrets = SecretResolver(cfg.secrets, audit=audit, autoload=False)
        return cls(config=cfg, audit=audit, secrets=secrets)

    def start(self) -> SecurityContext:
        """Open audit storage (fatal on failure), then load secret sources."""

        self.audit.initialize()
        self.secrets.load()
        return self

    def close(self) -> None:
        self.secrets.clear_secrets()
        self.audit.shutdown()

    def docker(self) -> DockerCredentialsManager:
        return DockerCredentialsManager(self.secrets, self.audit)

    def __enter__(self) -> SecurityContext:
        return self.start()

    def __exit__(self, *exc: object) -> None:
        self.close()
