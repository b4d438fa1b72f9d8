"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    ACTION_NOT_FOUND = 1
    MISSING_REQUIREMENT = 2
    MISSING_ARGUMENT = 3
    FILE_NOT_FOUND = 4
    FILE_CONFLICT = 5
    NO_PERMISSION = 6
    UNSUPPORTED_PLATFORM = 7
    INSTALL_FAILED = 8
    CANNOT_ENTER_WORK_DIRECTORY = 9
    CONTROLLER_FAILED = 10
    LOCK_TIMEOUT = 11
