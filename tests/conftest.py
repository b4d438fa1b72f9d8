"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from ssctl.backups import BackupManager
from ssctl.config import RecordDefaults
from ssctl.lifecycle import LifecycleSynchronizer, Reconciler
from ssctl.manager import ConfigManager
from ssctl.ports import PortAllocator, PortsRegistry
from ssctl.providers import CommandResult, FirewallProvider, SystemdProvider
from ssctl.records import ConfigStore
from ssctl.settings import FirewallType, Settings, SettingsStore
from ssctl.state import StateRegistry


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeRunner:
    """Stand-in for :class:`ssctl.providers.CommandRunner` recording every call.

    ``units`` is the set of template instances systemd pretends to know;
    ``enable --now``/``disable --now`` add and remove entries from it.
    ``failures`` maps a predicate over argv to a return code.
    """

    units: set[str] = field(default_factory=set)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    failures: list[tuple[Callable[[tuple[str, ...]], bool], int]] = field(default_factory=list)

    def require(self, binary: str) -> str:
        return f"/usr/bin/{binary}"

    def run(self, args: Sequence[str]) -> CommandResult:
        argv = tuple(str(arg) for arg in args)
        self.calls.append(argv)
        for predicate, code in self.failures:
            if predicate(argv):
                return CommandResult(args=argv, returncode=code, stderr="simulated failure")
        if len(argv) > 1 and argv[1] in {"list-units", "list-unit-files"}:
            lines = [f"{unit} loaded active running Shadowsocks" for unit in sorted(self.units)]
            return CommandResult(args=argv, stdout="\n".join(lines))
        if len(argv) > 3 and argv[1] == "enable":
            self.units.add(argv[3])
        if len(argv) > 3 and argv[1] == "disable":
            self.units.discard(argv[3])
        return CommandResult(args=argv)

    def commands(self, binary: str) -> list[tuple[str, ...]]:
        """Return the recorded calls made to *binary*."""
        return [call for call in self.calls if call[0] == binary]


@dataclass
class Harness:
    """Fully wired component graph rooted in a temporary directory."""

    root: Path
    runner: FakeRunner
    store: ConfigStore
    ports: PortsRegistry
    settings_store: SettingsStore
    systemd: SystemdProvider
    firewall: FirewallProvider
    synchronizer: LifecycleSynchronizer
    reconciler: Reconciler
    backups: BackupManager
    manager: ConfigManager


def build_harness(
    root: Path,
    *,
    firewall_type: FirewallType = FirewallType.FIREWALLD,
    server_address: str = "203.0.113.7",
) -> Harness:
    """Wire every component against *root* and a :class:`FakeRunner`."""
    runner = FakeRunner()
    registry = StateRegistry(root / "state")
    store = ConfigStore(root / "configs")
    ports = PortsRegistry(registry=registry)
    settings_store = SettingsStore(registry=registry, detect=lambda: FirewallType.NONE)
    settings = Settings(server_address=server_address, firewall_type=firewall_type)
    settings_store.save(settings)
    systemd = SystemdProvider(runner=runner)  # type: ignore[arg-type]
    firewall = FirewallProvider(settings=settings, runner=runner)  # type: ignore[arg-type]
    synchronizer = LifecycleSynchronizer(
        store=store, ports=ports, systemd=systemd, firewall=firewall
    )
    reconciler = Reconciler(synchronizer)
    backups = BackupManager(
        store=store, reconciler=reconciler, archive_path=root / "backup.tar.gz"
    )
    manager = ConfigManager(
        store=store,
        allocator=PortAllocator(ports=ports),
        synchronizer=synchronizer,
        reconciler=reconciler,
        backups=backups,
        settings_store=settings_store,
        settings=settings,
        defaults=RecordDefaults(),
    )
    return Harness(
        root=root,
        runner=runner,
        store=store,
        ports=ports,
        settings_store=settings_store,
        systemd=systemd,
        firewall=firewall,
        synchronizer=synchronizer,
        reconciler=reconciler,
        backups=backups,
        manager=manager,
    )


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    """Return a wired component graph using firewalld."""
    return build_harness(tmp_path)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a fresh recording runner."""
    return FakeRunner()
