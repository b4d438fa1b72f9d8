"""Configuration loader for ssctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/ssctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SSCTL_PORTS__BASE=3000
    export SSCTL_SYSTEMD__SYSTEMCTL_BIN=/usr/bin/systemctl

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

This is the tool's own configuration. The host-wide proxy settings (advertised
address, firewall flavour) live in :mod:`ssctl.settings`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load ssctl configuration. Install with "
        "`pip install ssctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import SsctlError
from .exit_codes import ExitCode

ENV_PREFIX = "SSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(SsctlError):
    """Raised when configuration parsing fails."""

    exit_code = ExitCode.MISSING_REQUIREMENT


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 2000
    span: int = 32768
    max_attempts: int = 10000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"base": self.base, "span": self.span, "max_attempts": self.max_attempts}


@dataclass(frozen=True)
class RecordDefaults:
    """Values stamped into newly created config documents."""

    method: str = "chacha20-ietf-poly1305"
    timeout: int = 60
    bind_addresses: tuple[str, ...] = ("::0", "0.0.0.0")
    password_length: int = 16

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "method": self.method,
            "timeout": self.timeout,
            "bind_addresses": list(self.bind_addresses),
            "password_length": self.password_length,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_prefix: str = "shadowsocks-libev-server@"
    systemctl_bin: str = "systemctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"unit_prefix": self.unit_prefix, "systemctl_bin": self.systemctl_bin}


@dataclass(frozen=True)
class FirewallConfig:
    """firewalld integration configuration values."""

    firewall_cmd_bin: str = "firewall-cmd"
    zone: str = "public"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"firewall_cmd_bin": self.firewall_cmd_bin, "zone": self.zone}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for ssctl."""

    config_file: Path
    config_dir: Path
    state_dir: Path
    ports_file: Path
    settings_file: Path
    logs_dir: Path
    runtime_dir: Path
    backup_file: Path
    lock_timeout: float
    require_root: bool
    ports: PortsConfig
    records: RecordDefaults
    systemd: SystemdConfig
    firewall: FirewallConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "config_dir": str(self.config_dir),
            "state_dir": str(self.state_dir),
            "ports_file": str(self.ports_file),
            "settings_file": str(self.settings_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "backup_file": str(self.backup_file),
            "lock_timeout": self.lock_timeout,
            "require_root": self.require_root,
            "ports": self.ports.to_dict(),
            "records": self.records.to_dict(),
            "systemd": self.systemd.to_dict(),
            "firewall": self.firewall.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/ssctl/config.yml",
    "config_dir": "/etc/shadowsocks-libev",
    "state_dir": "/var/lib/ssctl",
    "ports_file": None,  # derived from state_dir when absent
    "settings_file": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/ssctl",
    "runtime_dir": "/run/ssctl",
    "backup_file": "~/ss-config-backup.tar.gz",
    "lock_timeout": 30.0,
    "require_root": True,
    "ports": {
        "base": 2000,
        "span": 32768,
        "max_attempts": 10000,
    },
    "records": {
        "method": "chacha20-ietf-poly1305",
        "timeout": 60,
        "bind_addresses": ["::0", "0.0.0.0"],
        "password_length": 16,
    },
    "systemd": {
        "unit_prefix": "shadowsocks-libev-server@",
        "systemctl_bin": "systemctl",
    },
    "firewall": {
        "firewall_cmd_bin": "firewall-cmd",
        "zone": "public",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": {"base", "span", "max_attempts"},
    "records": {"method", "timeout", "bind_addresses", "password_length"},
    "systemd": {"unit_prefix", "systemctl_bin"},
    "firewall": {"firewall_cmd_bin", "zone"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    except PermissionError as exc:
        raise ConfigError(f"Cannot read config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    base = _expect_int(ports_map.get("base"), "ports.base", default=2000)
    span = _expect_int(ports_map.get("span"), "ports.span", default=32768)
    if base < 1 or span < 1 or base + span - 1 > 65535:
        raise ConfigError(
            f"ports.base/ports.span must describe a range within 1-65535 (got {base}+{span})."
        )
    attempts = _expect_int(ports_map.get("max_attempts"), "ports.max_attempts", default=10000)
    if attempts < 1:
        raise ConfigError("ports.max_attempts must be greater than zero.")

    records_map = _as_dict(raw.get("records"), "records")
    bind_raw = records_map.get("bind_addresses")
    if bind_raw is not None:
        addresses = _as_sequence(bind_raw, "records.bind_addresses")
        if not addresses:
            raise ConfigError("records.bind_addresses must list at least one address.")
    length = _expect_int(
        records_map.get("password_length"), "records.password_length", default=16
    )
    if length < 8:
        raise ConfigError("records.password_length must be at least 8.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    config_dir = _to_path(raw.get("config_dir"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    backup_file = _to_path(raw.get("backup_file"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)
    require_root = _expect_bool(raw.get("require_root"), "require_root", default=True)

    ports_file_value = raw.get("ports_file")
    ports_file = _to_path(ports_file_value) if ports_file_value else state_dir / "ports"
    settings_file_value = raw.get("settings_file")
    settings_file = (
        _to_path(settings_file_value) if settings_file_value else state_dir / "settings"
    )

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_expect_int(ports_mapping.get("base"), "ports.base", default=2000),
        span=_expect_int(ports_mapping.get("span"), "ports.span", default=32768),
        max_attempts=_expect_int(
            ports_mapping.get("max_attempts"), "ports.max_attempts", default=10000
        ),
    )

    records_mapping = _as_dict(raw.get("records"), "records")
    bind_raw = records_mapping.get("bind_addresses")
    bind_addresses = (
        tuple(str(item) for item in _as_sequence(bind_raw, "records.bind_addresses"))
        if bind_raw is not None
        else RecordDefaults.bind_addresses
    )
    records = RecordDefaults(
        method=str(records_mapping.get("method", "chacha20-ietf-poly1305")),
        timeout=_expect_int(records_mapping.get("timeout"), "records.timeout", default=60),
        bind_addresses=bind_addresses,
        password_length=_expect_int(
            records_mapping.get("password_length"), "records.password_length", default=16
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_prefix=str(systemd_mapping.get("unit_prefix", "shadowsocks-libev-server@")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
    )

    firewall_mapping = _as_dict(raw.get("firewall"), "firewall")
    firewall = FirewallConfig(
        firewall_cmd_bin=str(firewall_mapping.get("firewall_cmd_bin", "firewall-cmd")),
        zone=str(firewall_mapping.get("zone", "public")),
    )

    return AppConfig(
        config_file=config_file,
        config_dir=config_dir,
        state_dir=state_dir,
        ports_file=ports_file,
        settings_file=settings_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        backup_file=backup_file,
        lock_timeout=lock_timeout,
        require_root=require_root,
        ports=ports,
        records=records,
        systemd=systemd,
        firewall=firewall,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "FirewallConfig",
    "PortsConfig",
    "RecordDefaults",
    "SystemdConfig",
    "load_config",
]
