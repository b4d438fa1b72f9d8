"""Host-wide proxy settings (advertised address and firewall flavour).

The settings file is a handful of ``key=value`` lines::

    server_address=203.0.113.7
    firewall_type=firewalld

It is loaded once per command into an immutable :class:`Settings` value that
is handed explicitly to the components needing it.
"""
from __future__ import annotations

import shutil
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from .errors import MissingArgumentError, NoPermissionError
from .state import StateRegistry


class FirewallType(str, Enum):
    """Supported firewall flavours."""

    FIREWALLD = "firewalld"
    NONE = "none"

    @classmethod
    def parse(cls, value: str) -> FirewallType:
        """Return the member matching *value* (case-insensitive)."""
        normalized = value.strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise MissingArgumentError(f"Unsupported firewall type '{value}'. Allowed: {allowed}.")


@dataclass(frozen=True)
class Settings:
    """Resolved host settings."""

    server_address: str = ""
    firewall_type: FirewallType = FirewallType.NONE

    @property
    def has_address(self) -> bool:
        """Return True when an advertised address has been configured."""
        return bool(self.server_address.strip())

    def to_dict(self) -> dict[str, str]:
        """Return the ``key=value`` pairs persisted for these settings."""
        return {
            "server_address": self.server_address,
            "firewall_type": self.firewall_type.value,
        }


def detect_firewall_type(which: Callable[[str], str | None] = shutil.which) -> FirewallType:
    """Infer the default firewall flavour from installed tooling."""
    if which("firewall-cmd") is not None:
        return FirewallType.FIREWALLD
    return FirewallType.NONE


@dataclass(slots=True)
class SettingsStore:
    """Load and persist :class:`Settings` in the state directory."""

    registry: StateRegistry
    filename: str | Path = "settings"
    detect: Callable[[], FirewallType] = detect_firewall_type

    @property
    def path(self) -> Path:
        """Return the location of the settings file."""
        return self.registry.path_for(self.filename)

    def exists(self) -> bool:
        """Return True when the settings file has been written before."""
        return self.path.is_file()

    def load(self) -> Settings:
        """Return the stored settings, creating the file with defaults on first use."""
        if not self.exists():
            settings = Settings(firewall_type=self.detect())
            try:
                self.save(settings)
            except NoPermissionError:
                # Unprivileged read-only commands still get the inferred defaults.
                pass
            return settings
        pairs = self.registry.read_pairs(self.filename)
        firewall_raw = pairs.get("firewall_type", "").strip()
        try:
            firewall_type = FirewallType.parse(firewall_raw) if firewall_raw else self.detect()
        except MissingArgumentError:
            # A hand-edited value must not lock out ``ssctl settings --firewall``.
            firewall_type = self.detect()
        return Settings(
            server_address=pairs.get("server_address", "").strip(),
            firewall_type=firewall_type,
        )

    def save(self, settings: Settings) -> None:
        """Overwrite the settings file with *settings*."""
        self.registry.write_pairs(self.filename, settings.to_dict())

    def set_address(self, address: str) -> Settings:
        """Persist a new advertised *address* and return the updated settings."""
        normalized = address.strip()
        if not normalized:
            raise MissingArgumentError("Server address must be a non-empty string.")
        updated = replace(self.load(), server_address=normalized)
        self.save(updated)
        return updated

    def set_firewall_type(self, firewall_type: FirewallType) -> Settings:
        """Persist a new firewall flavour and return the updated settings."""
        updated = replace(self.load(), firewall_type=firewall_type)
        self.save(updated)
        return updated


__all__ = ["FirewallType", "Settings", "SettingsStore", "detect_firewall_type"]
