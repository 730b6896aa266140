"""factory.security.audit

File-backed audit trail for every privileged action.

The goal is forensic usability, not theatrics:
- callers enqueue and return; one background thread owns the disk
- newline-delimited JSON, one object per entry, owner-only files
- size-based rotation, age-based retention

Two error channels. Initialization failures raise `AuditError`: a process that
cannot audit must not do privileged work. Steady-state write failures are
logged and the entry is dropped: the audit trail never breaks the operation
it is recording.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any, TextIO, TypeVar

from factory.core.config import AuditConfig
from factory.core.exceptions import AuditError
from factory.core.time import format_iso_millis, to_utc, utc_now
from factory.security.redaction import redact_secrets

logger = logging.getLogger(__name__)

FILE_PREFIX = "audit_"
FILE_SUFFIX = ".log"
_DIR_MODE = 0o700
_FILE_MODE = 0o600

_E = TypeVar("_E", bound=StrEnum)


class AuditEvent(StrEnum):
    AUTHENTICATION = "AUTHENTICATION"
    AUTHORIZATION = "AUTHORIZATION"
    CONFIGURATION = "CONFIGURATION"
    PRIVILEGED_OPERATION = "PRIVILEGED_OPERATION"
    ENCRYPTION = "ENCRYPTION"
    CONNECTION = "CONNECTION"
    FILE_ACCESS = "FILE_ACCESS"
    COMMAND_EXECUTION = "COMMAND_EXECUTION"
    SYSTEM = "SYSTEM"


class AuditAction(StrEnum):
    LOGIN = "LOGIN"
    LOGOUT = "LOGOUT"
    ACCESS = "ACCESS"
    CREATE = "CREATE"
    READ = "READ"
    MODIFY = "MODIFY"
    DELETE = "DELETE"
    EXECUTE = "EXECUTE"
    ENCRYPT = "ENCRYPT"
    DECRYPT = "DECRYPT"
    CONNECT = "CONNECT"
    DISCONNECT = "DISCONNECT"
    REBOOT = "REBOOT"
    START = "START"
    STOP = "STOP"
    INITIALIZE = "INITIALIZE"
    SHUTDOWN = "SHUTDOWN"


class AuditResult(StrEnum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    DENIED = "DENIED"
    ERROR = "ERROR"


class AuditState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def _outcome(success: bool) -> AuditResult:
    return AuditResult.SUCCESS if success else AuditResult.FAILURE


def _coerce(enum_cls: type[_E], value: _E | str) -> _E:
    """Enum member from a member or its name in any case. ValueError otherwise."""

    if isinstance(value, enum_cls):
        return value
    return enum_cls(str(value).upper())


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AuditEntry:
    """One immutable audit record."""

    timestamp: datetime
    event: AuditEvent
    action: AuditAction
    details: str
    result: AuditResult
    user: str | None = None
    resource: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        frozen = MappingProxyType({str(k): str(v) for k, v in self.metadata.items()})
        object.__setattr__(self, "metadata", frozen)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "timestamp": format_iso_millis(self.timestamp),
            "event": str(self.event),
            "action": str(self.action),
            "result": str(self.result),
            "details": self.details,
        }
        if self.user is not None:
            out["user"] = self.user
        if self.resource is not None:
            out["resource"] = self.resource
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out

    def to_json(self) -> str:
        # ensure_ascii keeps every entry on one physical line
        return json.dumps(self.to_dict(), ensure_ascii=True, separators=(",", ":"))


@dataclass
class AuditLogFile:
    """A rotation unit. `size_bytes` is the running counter, not a stat()."""

    path: Path
    created_at: datetime
    size_bytes: int = 0


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@dataclass
class _PeriodicTask:
    name: str
    interval: float
    fn: Callable[[], object]
    next_run: float


class _Scheduler:
    """One daemon thread running fixed-rate tasks."""

    def __init__(self, name: str = "audit-scheduler") -> None:
        self._tasks: list[_PeriodicTask] = []
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def every(self, name: str, interval: float, fn: Callable[[], object], *, delay: float | None = None) -> None:
        first = interval if delay is None else delay
        self._tasks.append(_PeriodicTask(name=name, interval=interval, fn=fn, next_run=time.monotonic() + first))

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float) -> bool:
        """Signal the thread and wait up to `timeout`. True if it exited."""

        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        return not self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            now = time.monotonic()
            for task in self._tasks:
                if now < task.next_run:
                    continue
                try:
                    task.fn()
                except Exception:
                    logger.exception("audit_task_failed", extra={"task": task.name})
                task.next_run += task.interval
                if task.next_run < now:
                    task.next_run = now + task.interval
            if not self._tasks:
                self._stop.wait()
                return
            wait = min(t.next_run for t in self._tasks) - time.monotonic()
            self._stop.wait(max(0.0, wait))


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------


class AuditTrail:
    """Asynchronous, rotating, retention-bounded audit logger.

    Lifecycle: uninitialized -> initializing -> running -> shutting_down -> stopped.
    `initialize()` and `shutdown()` are idempotent; any logging call initializes
    on first use. After shutdown, logging calls are accepted and discarded.
    """

    def __init__(self, config: AuditConfig | None = None) -> None:
        self.config = config or AuditConfig()
        self._queue: queue.SimpleQueue[AuditEntry] = queue.SimpleQueue()
        self._state = AuditState.UNINITIALIZED
        self._state_lock = threading.RLock()
        # Guards the current file handle and its size counter.
        self._write_lock = threading.RLock()
        self._current: AuditLogFile | None = None
        self._stream: TextIO | None = None
        self._scheduler: _Scheduler | None = None
        self._dropped = 0

    # --- lifecycle ---

    @property
    def state(self) -> AuditState:
        return self._state

    @property
    def current_file(self) -> Path | None:
        current = self._current
        return current.path if current is not None else None

    @property
    def dropped(self) -> int:
        """Entries lost to write failures since construction."""

        return self._dropped

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def initialize(self) -> None:
        """Create storage, open the first file, start the scheduler.

        Raises:
            AuditError: the log directory or first file cannot be created.
        """

        with self._state_lock:
            if self._state is not AuditState.UNINITIALIZED:
                return
            self._state = AuditState.INITIALIZING
            try:
                self._prepare_directory()
                with self._write_lock:
                    self._rotate()
            except OSError as e:
                self._state = AuditState.UNINITIALIZED
                logger.error("audit_initialize_failed", extra={"dir": str(self.config.dir)})
                raise AuditError(f"Failed to initialize audit logging in {self.config.dir}") from e

            scheduler = _Scheduler()
            scheduler.every("flush", self.config.flush_interval, self.flush)
            scheduler.every("cleanup", self.config.cleanup_interval, self.cleanup, delay=self.config.cleanup_delay)
            scheduler.start()
            self._scheduler = scheduler
            self._state = AuditState.RUNNING

            logger.info(
                "audit_initialized",
                extra={
                    "dir": str(self.config.dir.resolve()),
                    "max_size_bytes": self.config.max_size_bytes,
                    "retention_days": self.config.retention_days,
                },
            )
            self._enqueue(AuditEvent.SYSTEM, AuditAction.INITIALIZE, "Audit trail started", AuditResult.SUCCESS)

    def shutdown(self) -> None:
        """Log shutdown, drain, stop the scheduler (bounded wait), close the file."""

        with self._state_lock:
            if self._state in (AuditState.SHUTTING_DOWN, AuditState.STOPPED):
                return
            if self._state is AuditState.UNINITIALIZED:
                self._state = AuditState.STOPPED
                return

            self._enqueue(AuditEvent.SYSTEM, AuditAction.SHUTDOWN, "Audit trail shutting down", AuditResult.SUCCESS)
            self._state = AuditState.SHUTTING_DOWN
            self.flush()

            scheduler, self._scheduler = self._scheduler, None
            if scheduler is not None and not scheduler.stop(self.config.shutdown_timeout):
                logger.warning("audit_scheduler_stop_timeout", extra={"timeout_s": self.config.shutdown_timeout})

            self.flush()
            # STOPPED is set under the write lock so no later drain can reopen a file.
            with self._write_lock:
                self._close_stream()
                self._state = AuditState.STOPPED
            logger.info("audit_shutdown_complete")

    def __enter__(self) -> AuditTrail:
        self.initialize()
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()

    # --- logging API ---

    def log(
        self,
        event: AuditEvent | str,
        action: AuditAction | str,
        details: str,
        result: AuditResult | str,
        user: str | None = None,
        resource: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Enqueue one entry and return. Never blocks on I/O.

        Enum arguments accept members or names in any case. An entry that
        cannot be built is logged and counted in `dropped`, never raised.

        Raises:
            AuditError: only from the implicit first-use `initialize()`.
        """

        if self._state in (AuditState.UNINITIALIZED, AuditState.INITIALIZING):
            self.initialize()
        if self._state is not AuditState.RUNNING:
            return
        try:
            self._enqueue(event, action, details, result, user=user, resource=resource, metadata=metadata)
        except (ValueError, TypeError, AttributeError):
            self._count_dropped()
            logger.warning("audit_entry_invalid", extra={"event": str(event), "action": str(action)})

    def log_authentication(self, user: str, success: bool, details: str = "") -> None:
        self.log(AuditEvent.AUTHENTICATION, AuditAction.LOGIN, details, _outcome(success), user=user)

    def log_authorization(self, user: str, resource: str, allowed: bool, details: str = "") -> None:
        result = AuditResult.SUCCESS if allowed else AuditResult.DENIED
        self.log(AuditEvent.AUTHORIZATION, AuditAction.ACCESS, details, result, user=user, resource=resource)

    def log_configuration_change(self, user: str | None, resource: str, details: str) -> None:
        self.log(AuditEvent.CONFIGURATION, AuditAction.MODIFY, details, AuditResult.SUCCESS, user=user, resource=resource)

    def log_privileged_operation(self, action: AuditAction, details: str, user: str | None, success: bool) -> None:
        self.log(AuditEvent.PRIVILEGED_OPERATION, action, details, _outcome(success), user=user)

    def log_encryption(self, action: AuditAction, resource: str, success: bool) -> None:
        self.log(
            AuditEvent.ENCRYPTION,
            action,
            f"Encryption operation on {resource}",
            _outcome(success),
            resource=resource,
        )

    def log_connection(self, action: AuditAction, remote: str, user: str | None, success: bool) -> None:
        self.log(AuditEvent.CONNECTION, action, f"Connection to {remote}", _outcome(success), user=user, resource=remote)

    def log_file_access(self, action: AuditAction, file_path: str, user: str | None, success: bool) -> None:
        self.log(
            AuditEvent.FILE_ACCESS,
            action,
            f"File access: {file_path}",
            _outcome(success),
            user=user,
            resource=file_path,
        )

    def log_command_execution(self, command: str, user: str | None, remote: str | None, success: bool) -> None:
        safe = redact_secrets(command)
        self.log(
            AuditEvent.COMMAND_EXECUTION,
            AuditAction.EXECUTE,
            f"Command: {safe}",
            _outcome(success),
            user=user,
            resource=remote,
            metadata={"command": safe},
        )

    # --- background work ---

    def flush(self) -> None:
        """Drain everything queued so far and flush the write buffer."""

        with self._write_lock:
            for _ in range(self._queue.qsize()):
                try:
                    entry = self._queue.get_nowait()
                except queue.Empty:
                    break
                self._write_entry(entry)

            if self._stream is not None:
                try:
                    self._stream.flush()
                except (OSError, ValueError):
                    logger.warning("audit_flush_failed", exc_info=True)

    def cleanup(self, now: datetime | None = None) -> list[Path]:
        """Delete sealed files older than the retention window.

        Args:
            now: Override clock for testing.

        Returns:
            Paths that were deleted.
        """

        ref = to_utc(now) if now is not None else utc_now()
        cutoff = (ref - timedelta(days=self.config.retention_days)).timestamp()
        deleted: list[Path] = []

        with self._write_lock:
            current = self.current_file
            for path in self.log_files():
                if current is not None and path == current:
                    continue
                try:
                    if path.stat().st_mtime >= cutoff:
                        continue
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError:
                    logger.warning("audit_log_delete_failed", extra={"file": path.name}, exc_info=True)
                    continue
                deleted.append(path)
                logger.info("audit_log_deleted", extra={"file": path.name})
        return deleted

    def log_files(self) -> list[Path]:
        """All rotation files in the log directory, oldest name first."""

        try:
            return sorted(
                p for p in self.config.dir.glob(f"{FILE_PREFIX}*{FILE_SUFFIX}") if p.is_file()
            )
        except OSError:
            logger.warning("audit_dir_unreadable", extra={"dir": str(self.config.dir)}, exc_info=True)
            return []

    # --- internals ---

    def _enqueue(
        self,
        event: AuditEvent | str,
        action: AuditAction | str,
        details: str,
        result: AuditResult | str,
        *,
        user: str | None = None,
        resource: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        entry = AuditEntry(
            timestamp=utc_now(),
            event=_coerce(AuditEvent, event),
            action=_coerce(AuditAction, action),
            details=details,
            result=_coerce(AuditResult, result),
            user=user,
            resource=resource,
            metadata=metadata or {},
        )
        self._queue.put(entry)

    def _prepare_directory(self) -> None:
        self.config.dir.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
        os.chmod(self.config.dir, _DIR_MODE)

    def _next_path(self, now: datetime) -> Path:
        base = f"{FILE_PREFIX}{now:%Y-%m-%d_%H%M%S_%f}"
        path = self.config.dir / f"{base}{FILE_SUFFIX}"
        n = 1
        while path.exists():
            path = self.config.dir / f"{base}_{n}{FILE_SUFFIX}"
            n += 1
        return path

    def _rotate(self) -> None:
        """Seal the current file and open a new one. Caller holds `_write_lock`."""

        self._close_stream()
        now = utc_now()
        path = self._next_path(now)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, _FILE_MODE)
        try:
            os.fchmod(fd, _FILE_MODE)
            stream = os.fdopen(fd, "a", encoding="utf-8")
        except OSError:
            os.close(fd)
            raise
        self._stream = stream
        self._current = AuditLogFile(path=path, created_at=now, size_bytes=path.stat().st_size)
        logger.info("audit_log_rotated", extra={"file": path.name})

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.flush()
            os.fsync(stream.fileno())
        except (OSError, ValueError):
            logger.warning("audit_close_flush_failed", exc_info=True)
        finally:
            try:
                stream.close()
            except OSError:
                logger.warning("audit_close_failed", exc_info=True)

    def _needs_rotation(self, incoming: int) -> bool:
        current = self._current
        if self._stream is None or current is None:
            return True
        limit = self.config.max_size_bytes
        if current.size_bytes >= limit:
            return True
        return current.size_bytes > 0 and current.size_bytes + incoming > limit

    def _count_dropped(self) -> None:
        with self._write_lock:
            self._dropped += 1

    def _write_entry(self, entry: AuditEntry) -> bool:
        """Write one entry. Failures are logged and the entry is dropped."""

        with self._write_lock:
            if self._state is AuditState.STOPPED:
                self._dropped += 1
                logger.warning(
                    "audit_entry_after_shutdown",
                    extra={"event": str(entry.event), "action": str(entry.action)},
                )
                return False
            try:
                line = entry.to_json() + "\n"
                size = len(line.encode("utf-8"))
                if self._needs_rotation(size):
                    self._rotate()
                stream, current = self._stream, self._current
                if stream is None or current is None:
                    raise OSError("audit log file is not open")
                stream.write(line)
                current.size_bytes += size
            except (OSError, ValueError, TypeError):
                self._dropped += 1
                logger.warning(
                    "audit_write_failed",
                    extra={"event": str(entry.event), "action": str(entry.action)},
                    exc_info=True,
                )
                return False
        return True
