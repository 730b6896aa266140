from __future__ import annotations

import os
import sys
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

# pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from factory.core.config import AuditConfig  # noqa: E402
from factory.security.audit import AuditTrail  # noqa: E402

MASTER_KEY = "correct-horse-battery-staple"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """No MAIL_FACTORY_* variable leaks in from the developer's shell."""

    for key in list(os.environ):
        if key.startswith("MAIL_FACTORY_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def master_key(monkeypatch: pytest.MonkeyPatch) -> str:
    monkeypatch.setenv("MAIL_FACTORY_MASTER_KEY", MASTER_KEY)
    return MASTER_KEY


@pytest.fixture()
def audit_config(temp_dir: Path) -> Callable[..., AuditConfig]:
    """Audit config rooted in a temp dir; background tasks effectively parked."""

    def _make(**overrides: Any) -> AuditConfig:
        values: dict[str, Any] = {
            "dir": temp_dir / "audit",
            "flush_interval": 3600,
            "cleanup_delay": 3600,
            "shutdown_timeout": 5,
        }
        values.update(overrides)
        return AuditConfig(**values)

    return _make


@pytest.fixture()
def audit_trail(audit_config: Callable[..., AuditConfig]) -> Iterator[AuditTrail]:
    trail = AuditTrail(audit_config())
    yield trail
    trail.shutdown()
