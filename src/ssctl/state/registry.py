"""Helpers for interacting with the ssctl state directory.

The state directory (``/var/lib/ssctl`` by default) stores small plain-text
artifacts such as the ``ports`` registry (one port per line) and the
``settings`` file (``key=value`` lines). This module provides lightweight
helpers to read and write those files using atomic operations so a crash
mid-write never leaves a half-written registry behind.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..errors import NoPermissionError, SsctlError
from ..exit_codes import ExitCode


class StateRegistryError(SsctlError):
    """Raised when state registry operations fail."""

    exit_code = ExitCode.NO_PERMISSION


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the plain-text state files."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the state directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot create state directory {self.root}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(
                f"Failed to prepare state directory {self.root}: {exc}"
            ) from exc

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str | os.PathLike[str]) -> Path:
        """Return the filesystem path for a named state file.

        Absolute names are returned unchanged so callers may keep individual
        files outside the state directory.
        """
        return self.root / name

    def read_text(self, name: str | os.PathLike[str]) -> str:
        """Return the contents of a state file (empty string when missing)."""
        path = self.path_for(name)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot read {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read state file {path}: {exc}") from exc

    def write_text(self, name: str | os.PathLike[str], payload: str) -> None:
        """Atomically replace the given state file with *payload*."""
        path = self.path_for(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot write {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to write state file {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot write {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to write state file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Line-oriented helpers ---------------------------------------------
    def read_lines(self, name: str | os.PathLike[str]) -> list[str]:
        """Return the non-blank, stripped lines of a state file."""
        return [line.strip() for line in self.read_text(name).splitlines() if line.strip()]

    def write_lines(self, name: str | os.PathLike[str], lines: Iterable[object]) -> None:
        """Persist *lines* (one item per line) to the given state file."""
        rendered = [str(line) for line in lines]
        self.write_text(name, "".join(f"{line}\n" for line in rendered))

    def append_line(self, name: str | os.PathLike[str], line: object) -> None:
        """Append a single line to the given state file."""
        existing = self.read_lines(name)
        existing.append(str(line))
        self.write_lines(name, existing)

    # key=value helpers --------------------------------------------------
    def read_pairs(self, name: str | os.PathLike[str]) -> dict[str, str]:
        """Parse ``key=value`` lines, skipping blanks and ``#`` comments."""
        pairs: dict[str, str] = {}
        for line in self.read_lines(name):
            if line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            pairs[key.strip()] = _unquote(value.strip())
        return pairs

    def write_pairs(self, name: str | os.PathLike[str], pairs: Mapping[str, object]) -> None:
        """Persist *pairs* as ``key=value`` lines."""
        self.write_lines(name, [f"{key}={value}" for key, value in pairs.items()])


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


__all__ = ["StateRegistry", "StateRegistryError"]
