"""Error taxonomy shared by every ssctl component.

Each error kind maps onto exactly one :class:`~ssctl.exit_codes.ExitCode`.
Commands never recover from these in-process: the CLI reports the message,
records it in the operations log and exits with the associated code.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class SsctlError(RuntimeError):
    """Base class for errors that terminate the current command."""

    exit_code: ExitCode = ExitCode.MISSING_REQUIREMENT

    def __init__(self, message: str, *, exit_code: ExitCode | None = None) -> None:
        """Store *message* and optionally override the class exit code."""
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ActionNotFoundError(SsctlError):
    """Raised when an unknown command name is requested."""

    exit_code = ExitCode.ACTION_NOT_FOUND


class MissingRequirementError(SsctlError):
    """Raised when a required external tool is not installed."""

    exit_code = ExitCode.MISSING_REQUIREMENT


class MissingArgumentError(SsctlError):
    """Raised when a required argument or setting was not supplied."""

    exit_code = ExitCode.MISSING_ARGUMENT


class FileNotFoundKindError(SsctlError):
    """Raised when a config document or archive does not exist."""

    exit_code = ExitCode.FILE_NOT_FOUND


class FileConflictError(SsctlError):
    """Raised when a target document or archive already exists."""

    exit_code = ExitCode.FILE_CONFLICT


class NoPermissionError(SsctlError):
    """Raised when persisted state cannot be written with current privileges."""

    exit_code = ExitCode.NO_PERMISSION


class UnsupportedPlatformError(SsctlError):
    """Raised when ssctl runs on a platform without systemd."""

    exit_code = ExitCode.UNSUPPORTED_PLATFORM


class InstallFailedError(SsctlError):
    """Raised when a resource could not be provisioned (e.g. no free port)."""

    exit_code = ExitCode.INSTALL_FAILED


class CannotEnterWorkDirectoryError(SsctlError):
    """Raised when the config directory cannot be created or entered."""

    exit_code = ExitCode.CANNOT_ENTER_WORK_DIRECTORY


class ControllerError(SsctlError):
    """Raised when an external controller (systemctl, firewall-cmd) fails."""

    exit_code = ExitCode.CONTROLLER_FAILED


__all__ = [
    "ActionNotFoundError",
    "CannotEnterWorkDirectoryError",
    "ControllerError",
    "FileConflictError",
    "FileNotFoundKindError",
    "InstallFailedError",
    "MissingArgumentError",
    "MissingRequirementError",
    "NoPermissionError",
    "SsctlError",
    "UnsupportedPlatformError",
]
