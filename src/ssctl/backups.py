"""Back up and restore the whole config store."""
from __future__ import annotations

import json
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .archive import create_archive, extract_archive, list_members
from .errors import FileConflictError, FileNotFoundKindError, NoPermissionError, SsctlError
from .exit_codes import ExitCode
from .lifecycle import Reconciler, RefreshReport
from .logging import OperationScope
from .records import (
    DOCUMENT_SUFFIX,
    ConfigRecord,
    ConfigStore,
    ConfigStoreError,
    validate_name,
)


class BackupError(SsctlError):
    """Raised when an archive cannot be produced or does not hold config documents."""

    exit_code = ExitCode.MISSING_ARGUMENT


class ArchiveNotFoundError(FileNotFoundKindError):
    """Raised when the archive to restore does not exist."""


class ArchiveConflictError(FileConflictError):
    """Raised when a backup would overwrite an existing archive."""


@dataclass(slots=True)
class BackupManager:
    """Archive every config document and restore archives into the store."""

    store: ConfigStore
    reconciler: Reconciler
    archive_path: Path

    def __post_init__(self) -> None:
        """Normalise the archive path after initialisation."""
        self.archive_path = self.archive_path.expanduser()

    def backup(
        self,
        *,
        overwrite: bool = False,
        op: OperationScope | None = None,
    ) -> Path:
        """Write all config documents into the archive and return its path."""
        target = self.archive_path
        if target.exists() and not overwrite:
            raise ArchiveConflictError(f"Backup archive {target} already exists.")
        names = self.store.list()
        if not names:
            raise BackupError("There are no config documents to back up.")
        members = [self.store.path_for(name).name for name in names]
        try:
            create_archive(self.store.root, target, members)
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot write {target}: {exc}") from exc
        if op is not None:
            op.add_step("archive.create", detail=f"{len(members)} document(s) -> {target}")
        return target

    def restore(self, archive: Path, *, op: OperationScope | None = None) -> RefreshReport:
        """Merge *archive* into the config store, then reconcile external state.

        Same-named documents are overwritten and new ones added; documents
        absent from the archive are left alone.
        """
        archive = archive.expanduser()
        if not archive.is_file():
            raise ArchiveNotFoundError(f"Backup archive {archive} not found.")

        members = list_members(archive)
        documents = _document_members(members)
        if op is not None:
            op.add_step("archive.inspect", detail=f"{len(documents)} document(s)")

        self.store.ensure_root()
        with tempfile.TemporaryDirectory(prefix=".ssctl-restore-") as scratch:
            scratch_dir = Path(scratch)
            extract_archive(archive, scratch_dir, list(documents))
            staged: list[tuple[Path, Path]] = []
            for member, name in documents.items():
                source = scratch_dir / member
                if source.is_symlink() or not source.is_file():
                    raise BackupError(f"Archive member '{member}' is not a regular file.")
                _validate_document(source, name)
                staged.append((source, self.store.path_for(name)))
            for source, destination in staged:
                try:
                    shutil.copyfile(source, destination)
                except PermissionError as exc:
                    raise NoPermissionError(f"Cannot write {destination}: {exc}") from exc
        if op is not None:
            op.add_step("store.restore", detail=", ".join(documents.values()))

        return self.reconciler.refresh(op)


def _document_members(members: list[str]) -> dict[str, str]:
    """Map archive member names to config names, rejecting anything else."""
    documents: dict[str, str] = {}
    for member in members:
        path = PurePosixPath(member)
        if member.endswith("/") or path.as_posix() in {".", ""}:
            continue
        parts = [part for part in path.parts if part != "."]
        if len(parts) != 1 or not parts[0].endswith(DOCUMENT_SUFFIX):
            raise BackupError(f"Archive member '{member}' is not a config document.")
        name = validate_name(parts[0])
        documents[member] = name
    if not documents:
        raise BackupError("Archive does not contain any config documents.")
    return documents


def _validate_document(path: Path, name: str) -> ConfigRecord:
    try:
        document = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise BackupError(f"Archived config '{name}' is unreadable: {exc}") from exc
    if not isinstance(document, dict):
        raise BackupError(f"Archived config '{name}' must be a JSON object.")
    try:
        return ConfigRecord.from_document(name, document)
    except ConfigStoreError as exc:
        raise BackupError(f"Archived config '{name}' is invalid: {exc}") from exc


__all__ = ["ArchiveConflictError", "ArchiveNotFoundError", "BackupError", "BackupManager"]
