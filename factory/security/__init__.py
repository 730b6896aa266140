"""factory.security

Security primitives for the provisioning layer.

Secret precedence:
- environment variables (MAIL_FACTORY_*)
- secrets file (key=value)
- configuration, `encrypted:` values decrypted with the master key

Every privileged action leaves an audit entry.
"""

from factory.security.audit import AuditAction, AuditEntry, AuditEvent, AuditResult, AuditState, AuditTrail
from factory.security.context import SecurityContext
from factory.security.encryption import EncryptedPayload, decrypt, encrypt
from factory.security.redaction import redact_secrets, sanitize_for_log
from factory.security.secrets import Credential, SecretResolver, SecretSource, is_encrypted

__all__ = [
    "AuditAction",
    "AuditEntry",
    "AuditEvent",
    "AuditResult",
    "AuditState",
    "AuditTrail",
    "Credential",
    "EncryptedPayload",
    "SecretResolver",
    "SecretSource",
    "SecurityContext",
    "decrypt",
    "encrypt",
    "is_encrypted",
    "redact_secrets",
    "sanitize_for_log",
]
