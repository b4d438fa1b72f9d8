"""Systemd provider for managing per-config service units."""
from __future__ import annotations

from dataclasses import dataclass, field

from .base import CommandResult, CommandRunner


@dataclass(slots=True)
class SystemdProvider:
    """Drive the ``shadowsocks-libev-server@<name>.service`` template units."""

    runner: CommandRunner = field(default_factory=CommandRunner)
    unit_prefix: str = "shadowsocks-libev-server@"
    systemctl_bin: str = "systemctl"

    def unit_name(self, name: str) -> str:
        """Return the systemd unit name for config *name*."""
        safe = name.replace("/", "-")
        return f"{self.unit_prefix}{safe}.service"

    def config_name(self, unit: str) -> str | None:
        """Return the config name encoded in *unit*, or None for foreign units."""
        if not unit.startswith(self.unit_prefix) or not unit.endswith(".service"):
            return None
        name = unit[len(self.unit_prefix) : -len(".service")]
        return name or None

    def enable(self, name: str) -> CommandResult:
        """Enable and start the unit for *name*."""
        return self._systemctl("enable", "--now", self.unit_name(name))

    def disable(self, name: str) -> CommandResult:
        """Disable and stop the unit for *name*."""
        return self._systemctl("disable", "--now", self.unit_name(name))

    def is_active(self, name: str) -> bool:
        """Return True when the unit for *name* is running."""
        return self._systemctl("is-active", "--quiet", self.unit_name(name)).ok

    def list_units(self) -> list[str]:
        """Return every known instance of the template unit.

        Loaded units (running, failed or inactive) and enabled instance
        unit files are both included so orphans of deleted configs are found.
        """
        pattern = f"{self.unit_prefix}*"
        loaded = self._systemctl(
            "list-units", "--all", "--plain", "--no-legend", "--full", pattern
        ).raise_for_status("systemctl list-units")
        files = self._systemctl(
            "list-unit-files", "--plain", "--no-legend", "--full", pattern
        ).raise_for_status("systemctl list-unit-files")

        units: list[str] = []
        for output in (loaded.stdout, files.stdout):
            for line in output.splitlines():
                fields = line.lstrip(" ●*").split()
                if not fields:
                    continue
                unit = fields[0]
                if self.config_name(unit) is None or unit in units:
                    continue
                units.append(unit)
        return units

    # ------------------------------------------------------------------
    def _systemctl(self, command: str, *args: str) -> CommandResult:
        return self.runner.run([self.systemctl_bin, command, *args])


__all__ = ["SystemdProvider"]
