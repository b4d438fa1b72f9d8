"""Advisory file locks serialising mutating commands.

The config store, the ports registry and the external controllers are only
kept consistent when one mutating command runs at a time. Commands therefore
take the global ``ssctl.lock`` (and one lock per config they touch) under the
runtime directory before changing anything. Locks are ``flock`` based, so a
killed process releases them automatically; the lock files themselves stay
behind with the last holder's metadata for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import NoPermissionError, SsctlError
from .exit_codes import ExitCode

GLOBAL_LOCK_NAME = "ssctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(SsctlError):
    """Raised when a lock could not be acquired within the timeout."""

    exit_code = ExitCode.LOCK_TIMEOUT


@dataclass(frozen=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int


@dataclass(frozen=True)
class LockBundle:
    """Several locks acquired together."""

    handles: tuple[LockHandle, ...]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire lock files under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Remember the lock directory and default timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        with self._acquire(self.runtime_dir / GLOBAL_LOCK_NAME, timeout) as handle:
            yield handle

    @contextmanager
    def config_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for config *name* for the duration of the block."""
        safe = name.replace("/", "-")
        with self._acquire(self.runtime_dir / "configs" / f"{safe}.lock", timeout) as handle:
            yield handle

    @contextmanager
    def mutate_configs(
        self,
        names: Iterable[str] = (),
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-config locks in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.config_lock(name, timeout=timeout)))
            yield LockBundle(tuple(handles))

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot create lock file {path}: {exc}") from exc

        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
