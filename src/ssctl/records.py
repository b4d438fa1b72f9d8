"""Config records and the on-disk config store.

Every proxy configuration is one JSON document ``<config_dir>/<name>.json``
in the format shadowsocks-libev's ``ss-server`` reads directly::

    {
        "server": ["::0", "0.0.0.0"],
        "server_port": 12345,
        "password": "...",
        "timeout": 60,
        "method": "chacha20-ietf-poly1305"
    }

The document name is the record identity; the systemd template unit
``shadowsocks-libev-server@<name>.service`` resolves the same file.
"""
from __future__ import annotations

import json
import os
import re
import secrets
import string
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import (
    CannotEnterWorkDirectoryError,
    FileConflictError,
    FileNotFoundKindError,
    MissingArgumentError,
    NoPermissionError,
    SsctlError,
)
from .exit_codes import ExitCode

DOCUMENT_SUFFIX = ".json"
PASSWORD_ALPHABET = string.ascii_letters + string.digits
NAME_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.:-]*")


class ConfigStoreError(SsctlError):
    """Raised when a stored document cannot be parsed or written."""

    exit_code = ExitCode.MISSING_ARGUMENT


class ConfigNotFoundError(FileNotFoundKindError):
    """Raised when a named config document does not exist."""


class ConfigConflictError(FileConflictError):
    """Raised when a config document with the target name already exists."""


@dataclass(frozen=True)
class ConfigRecord:
    """One named proxy configuration."""

    name: str
    server_port: int
    password: str
    method: str = "chacha20-ietf-poly1305"
    timeout: int = 60
    bind_addresses: tuple[str, ...] = field(default=("::0", "0.0.0.0"))

    def to_document(self) -> dict[str, object]:
        """Return the JSON document persisted for this record."""
        return {
            "server": list(self.bind_addresses),
            "server_port": self.server_port,
            "password": self.password,
            "timeout": self.timeout,
            "method": self.method,
        }

    @classmethod
    def from_document(cls, name: str, document: Mapping[str, object]) -> ConfigRecord:
        """Build a record from a parsed JSON *document*."""
        server = document.get("server", ["::0", "0.0.0.0"])
        if isinstance(server, str):
            bind_addresses: tuple[str, ...] = (server,)
        elif isinstance(server, Sequence):
            bind_addresses = tuple(str(item) for item in server)
        else:
            raise ConfigStoreError(f"Config '{name}' has an invalid 'server' value.")

        port = document.get("server_port")
        if isinstance(port, bool) or not isinstance(port, (int, str)):
            raise ConfigStoreError(f"Config '{name}' is missing 'server_port'.")
        try:
            server_port = int(port)
        except ValueError as exc:
            raise ConfigStoreError(f"Config '{name}' has a non-numeric port {port!r}.") from exc
        if not 1 <= server_port <= 65535:
            raise ConfigStoreError(f"Config '{name}' port {server_port} is outside 1-65535.")

        password = document.get("password")
        if not isinstance(password, str):
            raise ConfigStoreError(f"Config '{name}' is missing 'password'.")

        timeout_raw = document.get("timeout", 60)
        try:
            timeout = int(str(timeout_raw))
        except ValueError as exc:
            raise ConfigStoreError(f"Config '{name}' has an invalid timeout.") from exc

        return cls(
            name=name,
            server_port=server_port,
            password=password,
            method=str(document.get("method", "chacha20-ietf-poly1305")),
            timeout=timeout,
            bind_addresses=bind_addresses,
        )

    def renamed(self, name: str) -> ConfigRecord:
        """Return a copy of this record under a new identity."""
        return replace(self, name=name)


def generate_password(length: int = 16) -> str:
    """Return a random alphanumeric password."""
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def validate_name(name: str) -> str:
    """Return *name* stripped, rejecting values unusable as file or unit instance names."""
    normalized = name.strip()
    if not normalized:
        raise MissingArgumentError("Config name must be a non-empty string.")
    if "/" in normalized or "\\" in normalized or normalized.startswith("."):
        raise MissingArgumentError(f"Config name '{normalized}' is not a valid file name.")
    if normalized.endswith(DOCUMENT_SUFFIX):
        normalized = normalized[: -len(DOCUMENT_SUFFIX)]
        if not normalized:
            raise MissingArgumentError("Config name must be a non-empty string.")
    if not NAME_PATTERN.fullmatch(normalized):
        raise MissingArgumentError(
            f"Config name '{normalized}' must match [A-Za-z0-9][A-Za-z0-9_.:-]*."
        )
    return normalized


@dataclass(slots=True)
class ConfigStore:
    """Persist one JSON document per named configuration."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = self.root.expanduser()

    def ensure_root(self) -> None:
        """Create the config directory, failing when it cannot be entered."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CannotEnterWorkDirectoryError(
                f"Cannot create config directory {self.root}: {exc}"
            ) from exc
        if not self.root.is_dir() or not os.access(self.root, os.R_OK | os.X_OK):
            raise CannotEnterWorkDirectoryError(f"Cannot enter config directory {self.root}.")

    def path_for(self, name: str) -> Path:
        """Return the document path for *name*."""
        return self.root / f"{validate_name(name)}{DOCUMENT_SUFFIX}"

    # ------------------------------------------------------------------
    def exists(self, name: str) -> bool:
        """Return True when a document named *name* exists."""
        return self.path_for(name).is_file()

    def list(self) -> list[str]:
        """Return the names of every stored document."""
        if not self.root.is_dir():
            return []
        return sorted(
            path.name[: -len(DOCUMENT_SUFFIX)]
            for path in self.root.glob(f"*{DOCUMENT_SUFFIX}")
            if path.is_file() and not path.name.startswith(".")
        )

    def read(self, name: str) -> ConfigRecord:
        """Return the record named *name*."""
        normalized = validate_name(name)
        path = self.path_for(normalized)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise ConfigNotFoundError(f"Config '{normalized}' not found ({path}).") from exc
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot read {path}: {exc}") from exc
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigStoreError(f"Config '{normalized}' is not valid JSON: {exc}") from exc
        if not isinstance(document, Mapping):
            raise ConfigStoreError(f"Config '{normalized}' must be a JSON object.")
        return ConfigRecord.from_document(normalized, document)

    def read_all(self) -> list[ConfigRecord]:
        """Return every stored record."""
        return [self.read(name) for name in self.list()]

    def create(self, record: ConfigRecord) -> ConfigRecord:
        """Persist a new *record*, refusing to replace an existing document."""
        normalized = validate_name(record.name)
        if self.exists(normalized):
            raise ConfigConflictError(f"Config '{normalized}' already exists.")
        stored = record.renamed(normalized)
        self._write(stored)
        return stored

    def rename(self, old: str, new: str) -> ConfigRecord:
        """Move the document *old* to *new*, keeping its content."""
        source = self.path_for(old)
        target = self.path_for(new)
        if not source.is_file():
            raise ConfigNotFoundError(f"Config '{validate_name(old)}' not found ({source}).")
        if target.exists():
            raise ConfigConflictError(f"Config '{validate_name(new)}' already exists.")
        try:
            source.rename(target)
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot rename {source}: {exc}") from exc
        return self.read(new)

    def delete(self, name: str) -> None:
        """Remove the document named *name*."""
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise ConfigNotFoundError(f"Config '{validate_name(name)}' not found ({path}).") from exc
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot delete {path}: {exc}") from exc

    # ------------------------------------------------------------------
    def _write(self, record: ConfigRecord) -> None:
        self.ensure_root()
        path = self.path_for(record.name)
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot write {path}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_document(), handle, indent=4)
                handle.write("\n")
            os.replace(tmp_path, path)
            os.chmod(path, 0o644)
        except PermissionError as exc:
            raise NoPermissionError(f"Cannot write {path}: {exc}") from exc
        except OSError as exc:
            raise ConfigStoreError(f"Failed to write config '{record.name}': {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = [
    "ConfigConflictError",
    "ConfigNotFoundError",
    "ConfigRecord",
    "ConfigStore",
    "ConfigStoreError",
    "generate_password",
    "validate_name",
]
