"""High-level config operations shared by the CLI commands."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .backups import BackupManager
from .config import RecordDefaults
from .errors import MissingArgumentError
from .lifecycle import Direction, LifecycleSynchronizer, Reconciler, RefreshReport
from .logging import OperationScope
from .ports import PortAllocator
from .records import (
    ConfigConflictError,
    ConfigNotFoundError,
    ConfigRecord,
    ConfigStore,
    ConfigStoreError,
    generate_password,
    validate_name,
)
from .settings import FirewallType, Settings, SettingsStore
from .uri import format_uri


def _normalize_names(names: Sequence[str]) -> list[str]:
    normalized = [validate_name(name) for name in names]
    seen: set[str] = set()
    for name in normalized:
        if name in seen:
            raise ConfigConflictError(f"Config '{name}' was given more than once.")
        seen.add(name)
    return normalized


@dataclass(slots=True)
class ConfigManager:
    """Create, delete, rename, list and share config records."""

    store: ConfigStore
    allocator: PortAllocator
    synchronizer: LifecycleSynchronizer
    reconciler: Reconciler
    backups: BackupManager
    settings_store: SettingsStore
    settings: Settings
    defaults: RecordDefaults = RecordDefaults()

    # Mutating operations ----------------------------------------------
    def new(self, names: Sequence[str], op: OperationScope | None = None) -> list[ConfigRecord]:
        """Create and enable one config per name.

        Every name is checked before anything is written, so a conflict on
        any of them leaves the store and the host untouched.
        """
        normalized = _normalize_names(names)
        if not normalized:
            raise MissingArgumentError("At least one config name is required.")
        for name in normalized:
            if self.store.exists(name):
                raise ConfigConflictError(f"Config '{name}' already exists.")

        reserved = self._stored_ports(op)
        created: list[ConfigRecord] = []
        for name in normalized:
            port = self.allocator.allocate(reserved=reserved)
            reserved.add(port)
            record = self.store.create(
                ConfigRecord(
                    name=name,
                    server_port=port,
                    password=generate_password(self.defaults.password_length),
                    method=self.defaults.method,
                    timeout=self.defaults.timeout,
                    bind_addresses=self.defaults.bind_addresses,
                )
            )
            if op is not None:
                op.add_step("store.create", detail=f"{name} port={port}")
            self.synchronizer.enable_record(record, op)
            created.append(record)
        return created

    def delete(self, names: Sequence[str], op: OperationScope | None = None) -> list[ConfigRecord]:
        """Disable and remove each named config."""
        normalized = _normalize_names(names)
        if not normalized:
            raise MissingArgumentError("At least one config name is required.")
        records = [self.store.read(name) for name in normalized]
        for record in records:
            self.synchronizer.disable_record(record, op)
            self.store.delete(record.name)
            if op is not None:
                op.add_step("store.delete", detail=record.name)
        return records

    def rename(self, old: str, new: str, op: OperationScope | None = None) -> ConfigRecord:
        """Move config *old* to *new*, keeping port, password and cipher."""
        old_name = validate_name(old)
        new_name = validate_name(new)
        record = self.store.read(old_name)
        if self.store.exists(new_name):
            raise ConfigConflictError(f"Config '{new_name}' already exists.")
        self.synchronizer.disable_record(record, op)
        renamed = self.store.rename(old_name, new_name)
        if op is not None:
            op.add_step("store.rename", detail=f"{old_name} -> {new_name}")
        self.synchronizer.enable_record(renamed, op)
        return renamed

    def set_config(
        self,
        direction: Direction,
        name: str,
        op: OperationScope | None = None,
    ) -> ConfigRecord:
        """Enable or disable a single stored config."""
        return self.synchronizer.set_config(direction, name, op)

    def refresh(self, op: OperationScope | None = None) -> RefreshReport:
        """Rebuild every unit, registry entry and firewall rule from the store."""
        return self.reconciler.refresh(op)

    def backup(self, *, overwrite: bool = False, op: OperationScope | None = None) -> Path:
        """Archive every config document."""
        return self.backups.backup(overwrite=overwrite, op=op)

    def restore(self, archive: Path, op: OperationScope | None = None) -> RefreshReport:
        """Merge an archive into the store and reconcile."""
        return self.backups.restore(archive, op=op)

    def configure(
        self,
        *,
        address: str | None = None,
        firewall_type: FirewallType | None = None,
    ) -> Settings:
        """Persist new host settings and make them current for this process."""
        if address is not None:
            self.settings = self.settings_store.set_address(address)
        if firewall_type is not None:
            self.settings = self.settings_store.set_firewall_type(firewall_type)
        self.synchronizer.firewall.settings = self.settings
        return self.settings

    # Read-only operations ---------------------------------------------
    def names(self, names: Sequence[str] | None = None) -> list[str]:
        """Return stored config names, restricted to *names* when given."""
        if not names:
            return self.store.list()
        normalized = _normalize_names(names)
        for name in normalized:
            if not self.store.exists(name):
                raise ConfigNotFoundError(f"Config '{name}' not found.")
        return normalized

    def records(self, names: Sequence[str] | None = None) -> list[ConfigRecord]:
        """Return the records for :meth:`names`."""
        return [self.store.read(name) for name in self.names(names)]

    def uri(self, name: str) -> str:
        """Return the ``ss://`` URI for config *name*."""
        return format_uri(self.store.read(name), self.settings)

    # ------------------------------------------------------------------
    def _stored_ports(self, op: OperationScope | None) -> set[int]:
        ports: set[int] = set()
        for name in self.store.list():
            try:
                ports.add(self.store.read(name).server_port)
            except ConfigStoreError as exc:
                if op is not None:
                    op.add_step("store.read", status="warning", detail=str(exc))
        return ports


__all__ = ["ConfigManager"]
