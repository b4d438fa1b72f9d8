"""Port registry and allocation helpers for ssctl."""
from __future__ import annotations

import random
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .errors import InstallFailedError, MissingArgumentError
from .state import StateRegistry


class PortsExhaustedError(InstallFailedError):
    """Raised when no free port could be drawn from the allocation range."""


@dataclass(slots=True)
class PortsRegistry:
    """Manage the flat ``ports`` file listing every port currently in use.

    The file holds one integer per line. Order carries no meaning and, in a
    consistent state, no port appears twice. There is no locking here: callers
    serialise mutations through :class:`ssctl.locking.LockManager`.
    """

    registry: StateRegistry
    filename: str | Path = "ports"

    @property
    def path(self) -> Path:
        """Return the location of the registry file."""
        return self.registry.path_for(self.filename)

    # ------------------------------------------------------------------
    def list_ports(self) -> list[int]:
        """Return the registered ports in file order, skipping malformed lines."""
        ports: list[int] = []
        for line in self.registry.read_lines(self.filename):
            try:
                ports.append(int(line))
            except ValueError:
                continue
        return ports

    def has(self, port: int) -> bool:
        """Return True when *port* is registered."""
        return _validate_port(port) in self.list_ports()

    def add(self, port: int) -> None:
        """Append *port* to the registry."""
        self.registry.append_line(self.filename, _validate_port(port))

    def remove(self, port: int) -> int:
        """Remove every line equal to *port* and return how many were dropped."""
        target = str(_validate_port(port))
        lines = self.registry.read_lines(self.filename)
        kept = [line for line in lines if line != target]
        if len(kept) != len(lines):
            self.registry.write_lines(self.filename, kept)
        return len(lines) - len(kept)

    def clear(self) -> None:
        """Drop every registered port."""
        self.registry.write_lines(self.filename, [])


@dataclass(slots=True)
class PortAllocator:
    """Draw random free ports offset from a fixed base.

    Candidates are ``base + randrange(span)`` and are redrawn until one is
    absent from the registry (and from *reserved*). Draws are bounded by
    ``max_attempts``.
    """

    ports: PortsRegistry
    base: int = 2000
    span: int = 32768
    max_attempts: int = 10000
    rng: random.Random = field(default_factory=random.SystemRandom)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.base < 1 or self.span < 1 or self.base + self.span - 1 > 65535:
            raise MissingArgumentError(
                f"Port range {self.base}-{self.base + self.span - 1} is outside 1-65535."
            )
        if self.max_attempts < 1:
            raise MissingArgumentError("Port allocation needs at least one attempt.")

    def allocate(self, *, reserved: Iterable[int] = ()) -> int:
        """Return a port that is neither registered nor listed in *reserved*."""
        used = set(self.ports.list_ports())
        used.update(reserved)
        for _ in range(self.max_attempts):
            candidate = self.base + self.rng.randrange(self.span)
            if candidate not in used:
                return candidate
        raise PortsExhaustedError(
            f"No free port found in {self.base}-{self.base + self.span - 1} "
            f"after {self.max_attempts} attempts."
        )


def _validate_port(port: int) -> int:
    if isinstance(port, bool) or not isinstance(port, int):
        raise MissingArgumentError(f"Port must be an integer, got {port!r}.")
    if not 1 <= port <= 65535:
        raise MissingArgumentError(f"Port {port} is outside 1-65535.")
    return port


__all__ = ["PortAllocator", "PortsExhaustedError", "PortsRegistry"]
