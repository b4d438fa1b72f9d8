"""firewalld provider opening and closing TCP+UDP port pairs."""
from __future__ import annotations

from dataclasses import dataclass, field

from ..settings import FirewallType, Settings
from .base import CommandResult, CommandRunner

PROTOCOLS = ("tcp", "udp")


@dataclass(slots=True)
class FirewallProvider:
    """Open or close ports through ``firewall-cmd`` when firewalld is in use.

    Every call is a no-op returning skipped results when the configured
    firewall type is ``none``.
    """

    settings: Settings
    runner: CommandRunner = field(default_factory=CommandRunner)
    firewall_cmd_bin: str = "firewall-cmd"
    zone: str = "public"

    @property
    def enabled(self) -> bool:
        """Return True when firewall changes should be applied."""
        return self.settings.firewall_type is FirewallType.FIREWALLD

    def open_port(self, port: int) -> list[CommandResult]:
        """Permanently allow *port* over TCP and UDP, then reload firewalld."""
        return self._apply("--add-port", port)

    def close_port(self, port: int) -> list[CommandResult]:
        """Permanently remove *port* over TCP and UDP, then reload firewalld."""
        return self._apply("--remove-port", port)

    def reload(self) -> CommandResult:
        """Reload firewalld so permanent rules take effect."""
        if not self.enabled:
            return CommandResult.skip(self.firewall_cmd_bin, "--reload")
        return self.runner.run([self.firewall_cmd_bin, "--reload"])

    # ------------------------------------------------------------------
    def _apply(self, flag: str, port: int) -> list[CommandResult]:
        results: list[CommandResult] = []
        for protocol in PROTOCOLS:
            args = [
                self.firewall_cmd_bin,
                f"--zone={self.zone}",
                f"{flag}={port}/{protocol}",
                "--permanent",
            ]
            if not self.enabled:
                results.append(CommandResult.skip(*args))
                continue
            results.append(self.runner.run(args))
        results.append(self.reload())
        return results


__all__ = ["FirewallProvider", "PROTOCOLS"]
