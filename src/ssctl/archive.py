"""Archive helpers for the config backup workflow."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Sequence
from pathlib import Path

from .errors import MissingRequirementError, SsctlError
from .exit_codes import ExitCode


class ArchiveError(SsctlError):
    """Raised when tar cannot create, list or extract an archive."""

    exit_code = ExitCode.MISSING_ARGUMENT


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise MissingRequirementError("The 'tar' command is required to manage backups.")
    return tar_bin


def _run_tar(args: Sequence[str], *, failure: str) -> str:
    result = subprocess.run(  # noqa: S603 - controlled command execution
        [_tar_bin(), *args],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise ArchiveError(f"{failure}: {message.strip()}")
    return result.stdout


def create_archive(source_dir: Path, archive_path: Path, members: Sequence[str]) -> None:
    """Write a gzip-compressed tar of *members* (relative to *source_dir*)."""
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    _run_tar(
        ["-czf", str(archive_path), "-C", str(source_dir), "--", *members],
        failure=f"Failed to create {archive_path}",
    )
    try:
        os.chmod(archive_path, 0o600)
    except OSError:
        pass


def list_members(archive_path: Path) -> list[str]:
    """Return the member names stored in *archive_path*."""
    output = _run_tar(["-tzf", str(archive_path)], failure=f"Failed to read {archive_path}")
    return [line for line in output.splitlines() if line.strip()]


def extract_archive(archive_path: Path, dest: Path, members: Sequence[str]) -> None:
    """Extract *members* of *archive_path* into *dest*."""
    dest.mkdir(parents=True, exist_ok=True)
    _run_tar(
        ["-xzf", str(archive_path), "-C", str(dest), "--no-same-owner", "--", *members],
        failure=f"Failed to extract {archive_path}",
    )
