"""Shared command execution helpers for external controllers."""
from __future__ import annotations

import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

from ..errors import ControllerError, MissingRequirementError


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single external command invocation."""

    args: tuple[str, ...]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    skipped: bool = False

    @property
    def ok(self) -> bool:
        """Return True when the command succeeded (or was skipped)."""
        return self.returncode == 0

    @property
    def diagnostic(self) -> str:
        """Return the most useful single-line explanation of the outcome."""
        if self.skipped:
            return "skipped"
        message = self.stderr.strip() or self.stdout.strip()
        if self.ok:
            return message or "ok"
        return message or f"exit {self.returncode}"

    @property
    def command(self) -> str:
        """Return the command line as a display string."""
        return " ".join(self.args)

    def raise_for_status(self, action: str) -> CommandResult:
        """Raise :class:`ControllerError` when the command failed."""
        if not self.ok:
            raise ControllerError(
                f"{action} failed ({self.command}, exit {self.returncode}): {self.diagnostic}"
            )
        return self

    @classmethod
    def skip(cls, *args: str) -> CommandResult:
        """Return a result describing a command that was intentionally not run."""
        return cls(args=tuple(args), skipped=True)


@dataclass(slots=True)
class CommandRunner:
    """Run external commands and capture their output as :class:`CommandResult`."""

    def require(self, binary: str) -> str:
        """Return the resolved path for *binary* or raise when it is missing."""
        resolved = shutil.which(binary)
        if resolved is None:
            raise MissingRequirementError(f"Required command '{binary}' was not found on PATH.")
        return resolved

    def run(self, args: Sequence[str]) -> CommandResult:
        """Execute *args* without raising on non-zero exit codes."""
        argv = tuple(str(arg) for arg in args)
        try:
            completed = subprocess.run(  # noqa: S603 - controlled command execution
                list(argv),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise MissingRequirementError(f"{argv[0]} not found: {exc}") from exc
        except PermissionError as exc:
            raise MissingRequirementError(f"{argv[0]} is not executable: {exc}") from exc
        return CommandResult(
            args=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )


__all__ = ["CommandResult", "CommandRunner"]
