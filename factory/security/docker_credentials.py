"""factory.security.docker_credentials

Container-registry login on a remote host without leaking the password.

- password comes from the environment, the secrets file, or an `encrypted:` config value
- the password reaches `docker login` on stdin, never on the argument list
- every login/logout/cleanup is audited
- the remote credential store is chmod'ed to owner-only after use

The transport is not ours. Anything with `execute(command) -> CommandResult`
works; transport failures are expected to surface as `OSError`.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import shlex
from dataclasses import dataclass, field
from typing import Literal, Protocol

from factory.core.exceptions import SecurityError
from factory.security.audit import AuditAction, AuditEvent, AuditResult, AuditTrail
from factory.security.secrets import SecretResolver

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "https://index.docker.io/v1/"
DOCKER_CONFIG_DIR = '"$HOME/.docker"'
DOCKER_CONFIG_FILE = '"$HOME/.docker/config.json"'

_USERNAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._@-]{0,254}$")
_HELPER_RE = re.compile(r"^[A-Za-z0-9-]+$")
_MIN_PASSWORD_LENGTH = 8


@dataclass(frozen=True)
class CommandResult:
    success: bool
    output: str = ""


class CommandRunner(Protocol):
    def execute(self, command: str) -> CommandResult: ...


@dataclass(frozen=True)
class CredentialCheck:
    status: Literal["valid", "warning", "invalid"]
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status != "invalid"


def validate_credentials(username: str, password: str) -> CredentialCheck:
    if not username or not _USERNAME_RE.match(username):
        return CredentialCheck("invalid", "Invalid username")
    if not password:
        return CredentialCheck("invalid", "Password cannot be empty")
    if len(password) < _MIN_PASSWORD_LENGTH:
        return CredentialCheck("warning", f"Password is short (< {_MIN_PASSWORD_LENGTH} characters)")
    return CredentialCheck("valid")


@dataclass(frozen=True)
class DockerCredentials:
    username: str
    password: str = field(repr=False)
    registry: str = DEFAULT_REGISTRY

    def validate(self) -> CredentialCheck:
        return validate_credentials(self.username, self.password)

    def encrypted(self, resolver: SecretResolver) -> DockerCredentials:
        """Copy with the password in `encrypted:` form (idempotent)."""

        if resolver.is_encrypted(self.password):
            return self
        return dataclasses.replace(self, password=resolver.encrypt_value(self.password, key="docker.password"))


class DockerCredentialsManager:
    def __init__(self, resolver: SecretResolver, audit: AuditTrail) -> None:
        self.resolver = resolver
        self.audit = audit

    def credentials(
        self,
        config_username: str | None = None,
        config_password: str | None = None,
        registry: str = DEFAULT_REGISTRY,
    ) -> DockerCredentials | None:
        """Environment first, configuration second. `None` when either half is missing.

        Decryption failures propagate.
        """

        username = self.resolver.get_secret("docker.username") or config_username
        if not username:
            logger.error("docker_username_missing")
            return None

        password = self.resolver.get_secret("docker.password")
        if password is None:
            if not config_password:
                logger.error("docker_password_missing")
                return None
            password = self.resolver.resolve("docker.password", config_password)

        return DockerCredentials(username=username, password=password, registry=registry)

    def login(self, runner: CommandRunner, credentials: DockerCredentials) -> bool:
        username = credentials.username
        logger.info("docker_login_started", extra={"user": username, "registry": credentials.registry})

        if not _USERNAME_RE.match(username or ""):
            logger.error("docker_username_invalid")
            self.audit.log_authentication(username, success=False, details="Invalid username")
            return False
        if not credentials.registry:
            logger.error("docker_registry_missing")
            return False

        try:
            password = credentials.password
            if self.resolver.is_encrypted(password):
                password = self.resolver.decrypt_value(password, key="docker.password")
            else:
                logger.warning("docker_password_plaintext")
            if not password:
                logger.error("docker_password_empty")
                return False

            command = (
                f"printf '%s\\n' {shlex.quote(password)} | docker login -u {shlex.quote(username)} "
                f"--password-stdin {shlex.quote(credentials.registry)}"
            )
            result = runner.execute(command)
        except (OSError, SecurityError) as e:
            logger.error("docker_login_error", extra={"user": username, "error": type(e).__name__})
            self.audit.log_authentication(username, success=False, details=f"Docker login error: {type(e).__name__}")
            return False

        if not result.success:
            logger.error("docker_login_failed", extra={"user": username})
            self.audit.log_authentication(username, success=False, details="Docker registry authentication failed")
            return False

        logger.info("docker_login_succeeded", extra={"user": username})
        self.audit.log_authentication(
            username,
            success=True,
            details=f"Docker registry authentication to {credentials.registry}",
        )
        self.secure_config(runner)
        return True

    def logout(self, runner: CommandRunner, registry: str = DEFAULT_REGISTRY) -> bool:
        try:
            result = runner.execute(f"docker logout {shlex.quote(registry)}")
        except OSError:
            logger.error("docker_logout_error", exc_info=True)
            return False

        if not result.success:
            logger.warning("docker_logout_failed", extra={"registry": registry})
            return False

        self.audit.log(
            AuditEvent.AUTHENTICATION,
            AuditAction.LOGOUT,
            f"Docker registry logout from {registry}",
            AuditResult.SUCCESS,
            resource=registry,
        )
        return True

    def configure_credential_helper(self, runner: CommandRunner, helper: str) -> bool:
        if not _HELPER_RE.match(helper):
            logger.error("docker_credential_helper_invalid", extra={"helper": helper})
            return False

        try:
            check = runner.execute(f"command -v docker-credential-{helper}")
            if not check.success:
                logger.error("docker_credential_helper_not_found", extra={"helper": helper})
                return False

            runner.execute(f"mkdir -p {DOCKER_CONFIG_DIR} && chmod 700 {DOCKER_CONFIG_DIR}")
            runner.execute(f"printf '%s\\n' '{{\"credsStore\": \"{helper}\"}}' > {DOCKER_CONFIG_FILE}")
            runner.execute(f"chmod 600 {DOCKER_CONFIG_FILE}")
        except OSError:
            logger.error("docker_credential_helper_error", exc_info=True)
            return False

        self.audit.log_configuration_change("system", "docker_config", f"Configured credential helper: {helper}")
        return True

    def secure_config(self, runner: CommandRunner) -> None:
        try:
            runner.execute(f"chmod 700 {DOCKER_CONFIG_DIR} 2>/dev/null || true")
            runner.execute(f"chmod 600 {DOCKER_CONFIG_FILE} 2>/dev/null || true")
        except OSError:
            logger.warning("docker_config_secure_failed", exc_info=True)

    def cleanup(self, runner: CommandRunner) -> bool:
        """Remove the remote credential store (shred when available)."""

        try:
            check = runner.execute(f"test -f {DOCKER_CONFIG_FILE} && echo exists || echo not_found")
            if check.output.strip() != "exists":
                return True
            runner.execute(f"shred -u {DOCKER_CONFIG_FILE} 2>/dev/null || rm -f {DOCKER_CONFIG_FILE}")
        except OSError:
            logger.error("docker_cleanup_error", exc_info=True)
            return False

        self.audit.log(
            AuditEvent.FILE_ACCESS,
            AuditAction.DELETE,
            "Docker credentials file deleted",
            AuditResult.SUCCESS,
            resource="~/.docker/config.json",
        )
        return True

    def is_logged_in(self, runner: CommandRunner, registry: str = DEFAULT_REGISTRY) -> bool:
        needle = shlex.quote(f'"{registry}"')
        try:
            result = runner.execute(
                f"test -f {DOCKER_CONFIG_FILE} && grep -qF {needle} {DOCKER_CONFIG_FILE} && echo yes || echo no"
            )
        except OSError:
            return False
        return result.output.strip() == "yes"
