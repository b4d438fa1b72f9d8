"""Keep config records, the ports registry and external state in agreement.

:class:`LifecycleSynchronizer` moves one config between enabled and disabled
by driving systemd, the ports registry and the firewall in a fixed order.
Nothing is rolled back when a later step fails; :class:`Reconciler` is the
recovery path and rebuilds all external state from the stored documents.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

from .logging import OperationScope
from .ports import PortsRegistry
from .providers import CommandResult, FirewallProvider, SystemdProvider
from .records import ConfigRecord, ConfigStore


class Direction(str, Enum):
    """Target state for :meth:`LifecycleSynchronizer.set_config`."""

    ENABLE = "enable"
    DISABLE = "disable"


def _step(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail)


@dataclass(slots=True)
class LifecycleSynchronizer:
    """Enable or disable a config across systemd, ports registry and firewall."""

    store: ConfigStore
    ports: PortsRegistry
    systemd: SystemdProvider
    firewall: FirewallProvider

    def set_config(
        self,
        direction: Direction,
        name: str,
        op: OperationScope | None = None,
    ) -> ConfigRecord:
        """Apply *direction* to the config named *name*.

        The record is read before any external call, so a missing name fails
        with :class:`~ssctl.records.ConfigNotFoundError` and touches nothing.
        """
        record = self.store.read(name)
        if direction is Direction.ENABLE:
            self.enable_record(record, op)
        else:
            self.disable_record(record, op)
        return record

    def enable_record(self, record: ConfigRecord, op: OperationScope | None = None) -> None:
        """Start the unit, register the port, then open the firewall."""
        result = self.systemd.enable(record.name).raise_for_status(
            f"Enabling {self.systemd.unit_name(record.name)}"
        )
        _step(op, "systemd.enable", detail=f"{record.name}: {result.diagnostic}")

        if self.ports.has(record.server_port):
            _step(op, "ports.add", status="skipped", detail=f"{record.server_port} registered")
        else:
            self.ports.add(record.server_port)
            _step(op, "ports.add", detail=str(record.server_port))

        self._firewall_step(op, "firewall.open", self.firewall.open_port(record.server_port),
                            record.server_port)

    def disable_record(self, record: ConfigRecord, op: OperationScope | None = None) -> None:
        """Stop the unit, release the port, then close the firewall."""
        result = self.systemd.disable(record.name).raise_for_status(
            f"Disabling {self.systemd.unit_name(record.name)}"
        )
        _step(op, "systemd.disable", detail=f"{record.name}: {result.diagnostic}")

        removed = self.ports.remove(record.server_port)
        _step(
            op,
            "ports.remove",
            status="success" if removed else "skipped",
            detail=str(record.server_port),
        )

        self._firewall_step(op, "firewall.close", self.firewall.close_port(record.server_port),
                            record.server_port)

    # ------------------------------------------------------------------
    def _firewall_step(
        self,
        op: OperationScope | None,
        name: str,
        results: list[CommandResult],
        port: int,
    ) -> None:
        for result in results:
            result.raise_for_status(f"Updating firewall for port {port}")
        if all(result.skipped for result in results):
            _step(op, name, status="skipped", detail="firewall_type=none")
        else:
            _step(op, name, detail=f"{port}/tcp+udp")


@dataclass(frozen=True)
class RefreshReport:
    """Summary of a reconciliation pass."""

    stopped_units: tuple[str, ...]
    closed_ports: tuple[int, ...]
    enabled: tuple[str, ...]
    port_conflicts: tuple[tuple[int, tuple[str, ...]], ...] = ()

    @property
    def changed(self) -> int:
        """Return the number of external changes applied."""
        return len(self.stopped_units) + len(self.closed_ports) + len(self.enabled)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "stopped_units": list(self.stopped_units),
            "closed_ports": list(self.closed_ports),
            "enabled": list(self.enabled),
            "port_conflicts": {str(port): list(names) for port, names in self.port_conflicts},
        }


@dataclass(slots=True)
class Reconciler:
    """Stop everything, forget every port, and re-enable each stored config."""

    synchronizer: LifecycleSynchronizer

    def refresh(self, op: OperationScope | None = None) -> RefreshReport:
        """Rebuild systemd, ports registry and firewall state from the config store.

        Every instance of the template unit is stopped, including orphans left
        behind by deleted configs. Running this twice from the same store
        yields the same registry and the same set of enabled units.
        """
        sync = self.synchronizer
        records = sync.store.read_all()
        conflicts = _port_conflicts(records)
        for port, names in conflicts:
            _step(op, "store.conflict", status="warning",
                  detail=f"port {port} shared by {', '.join(names)}")

        stopped: list[str] = []
        for unit in sync.systemd.list_units():
            name = sync.systemd.config_name(unit)
            if name is None:
                continue
            sync.systemd.disable(name).raise_for_status(f"Disabling {unit}")
            stopped.append(unit)
        _step(op, "systemd.disable_all", detail=f"{len(stopped)} unit(s)")

        closed: list[int] = []
        for port in dict.fromkeys(sync.ports.list_ports()):
            for result in sync.firewall.close_port(port):
                result.raise_for_status(f"Closing firewall port {port}")
            closed.append(port)
        _step(
            op,
            "firewall.close_all",
            status="success" if sync.firewall.enabled else "skipped",
            detail=f"{len(closed)} port(s)",
        )

        sync.ports.clear()
        _step(op, "ports.clear")

        enabled: list[str] = []
        for record in records:
            sync.enable_record(record, op)
            enabled.append(record.name)

        return RefreshReport(
            stopped_units=tuple(stopped),
            closed_ports=tuple(closed),
            enabled=tuple(enabled),
            port_conflicts=conflicts,
        )


def _port_conflicts(records: list[ConfigRecord]) -> tuple[tuple[int, tuple[str, ...]], ...]:
    owners: dict[int, list[str]] = defaultdict(list)
    for record in records:
        owners[record.server_port].append(record.name)
    return tuple(
        (port, tuple(names)) for port, names in sorted(owners.items()) if len(names) > 1
    )


__all__ = ["Direction", "LifecycleSynchronizer", "Reconciler", "RefreshReport"]
