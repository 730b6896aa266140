from __future__ import annotations

import json
import logging
import os
import re
import stat
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from factory.core.config import AuditConfig
from factory.core.exceptions import AuditError
from factory.security.audit import (
    AuditAction,
    AuditEntry,
    AuditEvent,
    AuditResult,
    AuditState,
    AuditTrail,
)

_TS_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}\.\d{3}Z$")


def _entries(trail: AuditTrail) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for path in trail.log_files():
        for line in path.read_text(encoding="utf-8").splitlines():
            out.append(json.loads(line))
    return out


def _user_entries(trail: AuditTrail) -> list[dict[str, Any]]:
    return [e for e in _entries(trail) if e["event"] != "SYSTEM"]


def _old_file(directory: Path, name: str, age: timedelta, ref: datetime) -> Path:
    path = directory / name
    path.write_text("{}\n", encoding="utf-8")
    ts = (ref - age).timestamp()
    os.utime(path, (ts, ts))
    return path


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


def test_entry_json_field_order_and_escaping() -> None:
    entry = AuditEntry(
        timestamp=datetime(2024, 1, 2, 3, 4, 5, 678_901, tzinfo=UTC),
        event=AuditEvent.CONFIGURATION,
        action=AuditAction.MODIFY,
        details='quote " backslash \\ newline \n tab \t',
        result=AuditResult.SUCCESS,
        user="admin",
        resource="postfix/main.cf",
        metadata={"k": "v"},
    )
    line = entry.to_json()

    assert "\n" not in line
    parsed = json.loads(line)
    assert list(parsed) == ["timestamp", "event", "action", "result", "details", "user", "resource", "metadata"]
    assert parsed["timestamp"] == "2024-01-02T03:04:05.678Z"
    assert parsed["details"] == 'quote " backslash \\ newline \n tab \t'
    assert parsed["metadata"] == {"k": "v"}


def test_entry_omits_absent_optional_fields() -> None:
    entry = AuditEntry(
        timestamp=datetime.now(UTC),
        event=AuditEvent.SYSTEM,
        action=AuditAction.START,
        details="boot",
        result=AuditResult.SUCCESS,
    )
    parsed = json.loads(entry.to_json())

    assert "user" not in parsed
    assert "resource" not in parsed
    assert "metadata" not in parsed


def test_entry_is_immutable() -> None:
    source = {"a": "1"}
    entry = AuditEntry(
        timestamp=datetime.now(UTC),
        event=AuditEvent.SYSTEM,
        action=AuditAction.START,
        details="x",
        result=AuditResult.SUCCESS,
        metadata=source,
    )
    source["a"] = "changed"

    assert entry.metadata["a"] == "1"
    with pytest.raises(TypeError):
        entry.metadata["b"] = "2"  # type: ignore[index]
    with pytest.raises(AttributeError):
        entry.details = "y"  # type: ignore[misc]


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_initialize_creates_owner_only_storage(audit_trail: AuditTrail) -> None:
    audit_trail.initialize()

    assert audit_trail.state is AuditState.RUNNING
    assert stat.S_IMODE(audit_trail.config.dir.stat().st_mode) == 0o700
    current = audit_trail.current_file
    assert current is not None
    assert current.name.startswith("audit_") and current.suffix == ".log"
    assert stat.S_IMODE(current.stat().st_mode) == 0o600


def test_initialize_is_idempotent(audit_trail: AuditTrail) -> None:
    audit_trail.initialize()
    first = audit_trail.current_file
    audit_trail.initialize()
    audit_trail.flush()

    assert audit_trail.current_file == first
    assert len(audit_trail.log_files()) == 1
    starts = [e for e in _entries(audit_trail) if e["action"] == "INITIALIZE"]
    assert len(starts) == 1


def test_first_log_call_initializes(audit_trail: AuditTrail) -> None:
    assert audit_trail.state is AuditState.UNINITIALIZED
    audit_trail.log(AuditEvent.SYSTEM, AuditAction.START, "implicit", AuditResult.SUCCESS)

    assert audit_trail.state is AuditState.RUNNING
    audit_trail.flush()
    assert [e["details"] for e in _entries(audit_trail)] == ["Audit trail started", "implicit"]


def test_string_values_are_coerced(audit_trail: AuditTrail) -> None:
    audit_trail.log("CONNECTION", "CONNECT", "ssh", "SUCCESS", user="root")
    audit_trail.flush()

    (entry,) = _user_entries(audit_trail)
    assert (entry["event"], entry["action"], entry["result"]) == ("CONNECTION", "CONNECT", "SUCCESS")


def test_lowercase_names_are_accepted(audit_trail: AuditTrail) -> None:
    audit_trail.log("authentication", "login", "x", "success", user="alice")
    audit_trail.flush()

    (entry,) = _user_entries(audit_trail)
    assert (entry["event"], entry["action"], entry["result"]) == ("AUTHENTICATION", "LOGIN", "SUCCESS")


def test_unknown_enum_value_is_dropped_not_raised(
    audit_trail: AuditTrail, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level(logging.WARNING, logger="factory.security.audit"):
        audit_trail.log("NOT_AN_EVENT", "START", "x", "SUCCESS")
        audit_trail.log(AuditEvent.SYSTEM, "no-such-action", "x", AuditResult.SUCCESS)
    audit_trail.log_authentication("alice", success=True)
    audit_trail.flush()

    assert audit_trail.dropped == 2
    assert any(r.getMessage() == "audit_entry_invalid" for r in caplog.records)
    assert [e["user"] for e in _user_entries(audit_trail)] == ["alice"]


def test_unserializable_entry_does_not_abort_drain(
    audit_trail: AuditTrail, caplog: pytest.LogCaptureFixture
) -> None:
    audit_trail.log(AuditEvent.SYSTEM, AuditAction.START, object(), AuditResult.SUCCESS)  # type: ignore[arg-type]
    audit_trail.log_authentication("after", success=True)

    with caplog.at_level(logging.WARNING, logger="factory.security.audit"):
        audit_trail.flush()

    assert audit_trail.dropped == 1
    assert any(r.getMessage() == "audit_write_failed" for r in caplog.records)
    assert [e["user"] for e in _user_entries(audit_trail)] == ["after"]

    audit_trail.log(AuditEvent.SYSTEM, AuditAction.STOP, {1, 2}, AuditResult.SUCCESS)  # type: ignore[arg-type]
    audit_trail.shutdown()
    assert audit_trail.state is AuditState.STOPPED
    assert audit_trail._stream is None


def test_drain_after_shutdown_never_reopens_a_file(audit_trail: AuditTrail) -> None:
    audit_trail.initialize()
    audit_trail.shutdown()
    files_before = audit_trail.log_files()

    # an entry that slipped into the queue while shutdown was in progress
    audit_trail._enqueue(AuditEvent.SYSTEM, AuditAction.START, "late", AuditResult.SUCCESS)
    audit_trail.flush()

    assert audit_trail.log_files() == files_before
    assert audit_trail._stream is None
    assert audit_trail.current_file is None or audit_trail.current_file in files_before
    assert audit_trail.dropped == 1
    assert audit_trail.pending == 0


def test_timestamps_are_utc_millis(audit_trail: AuditTrail) -> None:
    audit_trail.log_authentication("alice", success=True)
    audit_trail.flush()

    assert all(_TS_RE.match(e["timestamp"]) for e in _entries(audit_trail))


def test_shutdown_writes_final_entry_and_is_idempotent(audit_trail: AuditTrail) -> None:
    audit_trail.log_authentication("alice", success=True)
    audit_trail.shutdown()
    audit_trail.shutdown()

    assert audit_trail.state is AuditState.STOPPED
    entries = _entries(audit_trail)
    assert entries[-1]["action"] == "SHUTDOWN"
    assert entries[-1]["details"] == "Audit trail shutting down"
    assert sum(1 for e in entries if e["action"] == "SHUTDOWN") == 1


def test_log_after_shutdown_is_discarded(audit_trail: AuditTrail) -> None:
    audit_trail.initialize()
    audit_trail.shutdown()
    before = _entries(audit_trail)

    audit_trail.log_authentication("late", success=True)
    audit_trail.flush()

    assert audit_trail.state is AuditState.STOPPED
    assert _entries(audit_trail) == before
    assert audit_trail.pending == 0


def test_shutdown_without_initialize(audit_config: Callable[..., AuditConfig]) -> None:
    trail = AuditTrail(audit_config())
    trail.shutdown()

    assert trail.state is AuditState.STOPPED
    assert not trail.config.dir.exists()


def test_context_manager(audit_config: Callable[..., AuditConfig]) -> None:
    with AuditTrail(audit_config()) as trail:
        assert trail.state is AuditState.RUNNING
        trail.log_connection(AuditAction.CONNECT, "mail.example.com", "root", True)

    assert trail.state is AuditState.STOPPED
    (entry,) = _user_entries(trail)
    assert entry["resource"] == "mail.example.com"


def test_initialize_failure_is_fatal(temp_dir: Path, audit_config: Callable[..., AuditConfig]) -> None:
    blocker = temp_dir / "not-a-dir"
    blocker.write_text("file", encoding="utf-8")
    trail = AuditTrail(audit_config(dir=blocker))

    with pytest.raises(AuditError, match="Failed to initialize audit logging"):
        trail.initialize()
    assert trail.state is AuditState.UNINITIALIZED

    # implicit initialization surfaces the same failure
    with pytest.raises(AuditError):
        trail.log_authentication("alice", success=True)


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------


def test_concurrent_writers_lose_nothing(audit_trail: AuditTrail) -> None:
    threads_n, per_thread = 8, 250
    audit_trail.initialize()

    def worker(i: int) -> None:
        for n in range(per_thread):
            audit_trail.log(AuditEvent.COMMAND_EXECUTION, AuditAction.EXECUTE, str(n), AuditResult.SUCCESS, user=f"t{i}")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(threads_n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    audit_trail.flush()

    entries = _user_entries(audit_trail)
    assert len(entries) == threads_n * per_thread
    for i in range(threads_n):
        mine = [int(e["details"]) for e in entries if e["user"] == f"t{i}"]
        assert mine == list(range(per_thread))


def test_rotation_respects_size_limit(audit_config: Callable[..., AuditConfig]) -> None:
    trail = AuditTrail(audit_config(max_size=0.0005))
    limit = trail.config.max_size_bytes
    try:
        for n in range(40):
            trail.log_file_access(AuditAction.READ, f"/etc/postfix/file-{n}.cf", "root", True)
        trail.flush()
    finally:
        trail.shutdown()

    files = trail.log_files()
    assert len(files) >= 2
    for path in files:
        assert path.stat().st_size <= limit
        assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert len(_user_entries(trail)) == 40


def test_write_failure_is_dropped_not_raised(audit_trail: AuditTrail, caplog: pytest.LogCaptureFixture) -> None:
    audit_trail.initialize()
    audit_trail.flush()
    assert audit_trail._stream is not None
    audit_trail._stream.close()

    with caplog.at_level(logging.WARNING, logger="factory.security.audit"):
        audit_trail.log_authentication("alice", success=True)
        audit_trail.flush()

    assert audit_trail.dropped == 1
    assert any(r.getMessage() == "audit_write_failed" for r in caplog.records)


def test_background_flush(audit_config: Callable[..., AuditConfig]) -> None:
    trail = AuditTrail(audit_config(flush_interval=0.05))
    try:
        trail.log_authentication("bob", success=False, details="bad password")
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline and not _user_entries(trail):
            time.sleep(0.02)

        (entry,) = _user_entries(trail)
        assert entry["result"] == "FAILURE"
        assert entry["details"] == "bad password"
    finally:
        trail.shutdown()


# ---------------------------------------------------------------------------
# Convenience wrappers
# ---------------------------------------------------------------------------


def test_authorization_denied(audit_trail: AuditTrail) -> None:
    audit_trail.log_authorization("mallory", "/etc/shadow", allowed=False, details="not in wheel")
    audit_trail.flush()

    (entry,) = _user_entries(audit_trail)
    assert entry["event"] == "AUTHORIZATION"
    assert entry["action"] == "ACCESS"
    assert entry["result"] == "DENIED"
    assert entry["resource"] == "/etc/shadow"


def test_privileged_and_configuration_wrappers(audit_trail: AuditTrail) -> None:
    audit_trail.log_privileged_operation(AuditAction.REBOOT, "reboot after kernel upgrade", "root", True)
    audit_trail.log_configuration_change("admin", "dovecot.conf", "enable imaps")
    audit_trail.flush()

    priv, conf = _user_entries(audit_trail)
    assert (priv["event"], priv["action"], priv["result"]) == ("PRIVILEGED_OPERATION", "REBOOT", "SUCCESS")
    assert (conf["event"], conf["action"], conf["resource"]) == ("CONFIGURATION", "MODIFY", "dovecot.conf")


def test_command_execution_is_redacted(audit_trail: AuditTrail) -> None:
    audit_trail.log_command_execution(
        "mysql -u root --password=hunter2secret -e 'select 1'", "root", "db.example.com", True
    )
    audit_trail.flush()

    (entry,) = _user_entries(audit_trail)
    assert entry["details"].startswith("Command: ")
    assert "hunter2secret" not in json.dumps(entry)
    assert "[REDACTED]" in entry["metadata"]["command"]


def test_encryption_wrapper_names_resource_only(audit_trail: AuditTrail) -> None:
    audit_trail.log_encryption(AuditAction.ENCRYPT, "database.password", True)
    audit_trail.flush()

    (entry,) = _user_entries(audit_trail)
    assert entry["details"] == "Encryption operation on database.password"
    assert entry["resource"] == "database.password"


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------


def test_cleanup_deletes_only_expired_files(audit_config: Callable[..., AuditConfig]) -> None:
    trail = AuditTrail(audit_config(retention_days=30))
    directory = trail.config.dir
    directory.mkdir(parents=True)
    ref = datetime(2025, 6, 1, tzinfo=UTC)

    expired = _old_file(directory, "audit_expired.log", timedelta(days=30, seconds=1), ref)
    kept = _old_file(directory, "audit_kept.log", timedelta(days=30) - timedelta(seconds=1), ref)
    other = _old_file(directory, "unrelated.log", timedelta(days=400), ref)

    deleted = trail.cleanup(now=ref)

    assert deleted == [expired]
    assert not expired.exists()
    assert kept.exists()
    assert other.exists()


def test_cleanup_never_deletes_current_file(audit_trail: AuditTrail) -> None:
    audit_trail.initialize()
    current = audit_trail.current_file
    assert current is not None

    far_future = datetime.now(UTC) + timedelta(days=10_000)
    assert audit_trail.cleanup(now=far_future) == []
    assert current.exists()


def test_cleanup_delete_failure_is_logged(
    audit_config: Callable[..., AuditConfig],
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    trail = AuditTrail(audit_config(retention_days=1))
    trail.config.dir.mkdir(parents=True)
    ref = datetime(2025, 6, 1, tzinfo=UTC)
    stuck = _old_file(trail.config.dir, "audit_stuck.log", timedelta(days=5), ref)
    gone = _old_file(trail.config.dir, "audit_gone.log", timedelta(days=5), ref)

    real_unlink = Path.unlink

    def fake_unlink(self: Path, missing_ok: bool = False) -> None:
        if self.name == stuck.name:
            raise PermissionError("read-only")
        real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", fake_unlink)
    with caplog.at_level(logging.WARNING, logger="factory.security.audit"):
        deleted = trail.cleanup(now=ref)

    assert deleted == [gone]
    assert stuck.exists()
    assert any(r.getMessage() == "audit_log_delete_failed" for r in caplog.records)


def test_cleanup_on_missing_directory(audit_trail: AuditTrail) -> None:
    assert audit_trail.cleanup() == []
