"""Provider interfaces for ssctl."""
from __future__ import annotations

from .base import CommandResult, CommandRunner
from .firewall import FirewallProvider
from .systemd import SystemdProvider

__all__ = [
    "CommandResult",
    "CommandRunner",
    "FirewallProvider",
    "SystemdProvider",
]
