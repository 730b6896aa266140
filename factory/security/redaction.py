"""factory.security.redaction

Secret redaction helpers.

Pragmatic by intent: mask likely secrets before anything reaches a log or an
audit entry. Command lines are the usual offender.
"""

from __future__ import annotations

import copy
import re
from typing import Any

REDACTED = "[REDACTED]"

_REDACTION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # echo <pw> | docker login ... / printf '%s\n' <pw> | docker login ...
    (
        re.compile(r"(?i)\b(echo|printf\s+'%s\\n')\s+.*?(?=\s*\|\s*docker\s+login\b)"),
        rf"\1 {REDACTED}",
    ),
    # --password pw / --password=pw
    (re.compile(r"(?i)(\s--password)(?:\s+|=)(?!-)(\S+)"), rf"\1 {REDACTED}"),
    # login ... -p pw
    (re.compile(r"(?i)(\blogin\b[^|;&\n]*?\s-p)\s+(?!-)(\S+)"), rf"\1 {REDACTED}"),
    # Embedded encrypted payloads
    (re.compile(r"encrypted:[A-Za-z0-9+/=]+:[A-Za-z0-9+/=]+:[A-Za-z0-9+/=]+"), f"encrypted:{REDACTED}"),
    # Generic key/value
    (
        re.compile(r"(?i)((?:api[_-]?key|secret|password|passwd|passphrase|master[_-]?key|token)\s*[:=]\s*)[^\s\"',;]+"),
        rf"\1{REDACTED}",
    ),
    # Authorization headers
    (re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]{8,}"), rf"\1 {REDACTED}"),
    # PEM private keys
    (
        re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.DOTALL),
        REDACTED,
    ),
]

_SENSITIVE_FIELD_NAMES = {
    "password",
    "passwd",
    "passphrase",
    "secret",
    "token",
    "api_key",
    "apikey",
    "master_key",
    "private_key",
    "auth",
    "authorization",
}


def redact_secrets(text: str) -> str:
    out = text
    for pattern, repl in _REDACTION_PATTERNS:
        out = pattern.sub(repl, out)
    return out


def is_sensitive_field(name: str) -> bool:
    key = str(name).lower().replace("-", "_")
    return key in _SENSITIVE_FIELD_NAMES or key.endswith("_password") or key.endswith("_secret")


def sanitize_for_log(data: dict[str, Any]) -> dict[str, Any]:
    """Deep-copy and redact sensitive fields + embedded secrets."""

    def _walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            new: dict[str, Any] = {}
            for k, v in obj.items():
                if is_sensitive_field(k):
                    new[k] = REDACTED
                else:
                    new[k] = _walk(v)
            return new
        if isinstance(obj, (list, tuple)):
            return [_walk(v) for v in obj]
        if isinstance(obj, str):
            return redact_secrets(obj)
        return obj

    return _walk(copy.deepcopy(data))
