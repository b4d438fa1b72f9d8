"""Structured operation logging.

Each CLI command runs inside :meth:`StructuredLogger.operation`. The yielded
:class:`OperationScope` collects the steps the command performed and its
final outcome; on exit one JSON line is appended to
``<logs_dir>/operations.jsonl``::

    {"ts": "...", "op_id": "...", "command": "new", "args": {...},
     "target": {...}, "lock_wait_ms": 3, "steps": [...],
     "result": {"status": "success", "message": "...", "changed": 4, ...},
     "duration_ms": 41}

Logging must never break a command, so when the log directory cannot be
created, or a write fails, the logger disables itself and carries on silently.
"""
from __future__ import annotations

import json
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from .errors import SsctlError

OPERATIONS_LOG_NAME = "operations.jsonl"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def sanitize(value: object) -> object:
    """Return *value* converted into JSON-safe primitives."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single command execution."""

    command: str
    args: dict[str, object]
    target: dict[str, object]
    op_id: str = field(default_factory=lambda: secrets.token_hex(6))
    started_at: str = field(default_factory=_now_iso)
    lock_wait_ms: int | None = None
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a step the command performed."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the command waited for its lock."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        backups: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, warnings=warnings,
                     backups=backups, context=context, rc=0)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish("warning", message, changed=changed, warnings=warnings, errors=errors,
                     backups=backups, context=context, rc=0)

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish("error", message, changed=changed, errors=errors or [message],
                     context=context, rc=rc)

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        rc: int,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        backups: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings),
            "errors": list(errors),
            "backups": list(backups),
            "context": sanitize(dict(context or {})),
            "rc": int(rc),
        }


class StructuredLogger:
    """Append one JSON line per operation to the operations log."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*, disabling the logger when it is unusable."""
        self._log_dir = log_dir.expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log location."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Run a command inside a logged operation scope."""
        scope = OperationScope(
            command=command,
            args=dict(args or {}),
            target=dict(target or {}),
        )
        started = time.monotonic()
        try:
            yield scope
        except SsctlError as exc:
            if scope.result is None:
                scope.error(str(exc), rc=int(exc.exit_code))
            raise
        except BaseException as exc:
            if scope.result is None:
                exit_code = getattr(exc, "exit_code", None)
                if exit_code == 0:
                    scope.success("Completed.")
                else:
                    scope.error(str(exc) or type(exc).__name__,
                                rc=exit_code if isinstance(exit_code, int) else 1)
            raise
        finally:
            duration_ms = int((time.monotonic() - started) * 1000)
            self._write(scope, duration_ms)

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope, duration_ms: int) -> None:
        if not self._enabled:
            return
        record = {
            "ts": scope.started_at,
            "op_id": scope.op_id,
            "pid": os.getpid(),
            "command": scope.command,
            "args": sanitize(scope.args),
            "target": sanitize(scope.target),
            "lock_wait_ms": scope.lock_wait_ms,
            "steps": sanitize(scope.steps),
            "result": scope.result or {"status": "unknown"},
            "duration_ms": duration_ms,
        }
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "sanitize"]
