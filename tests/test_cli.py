"""Tests for the ssctl command line interface.

External controllers are replaced by stub ``systemctl``/``firewall-cmd``
scripts that append their argv to a calls log, and every ssctl directory is
redirected into ``tmp_path`` through ``SSCTL_*`` environment variables.
"""
from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

import pytest
from typer.testing import CliRunner, Result

from ssctl import __version__
from ssctl.cli import app
from ssctl.locking import LockManager

runner = CliRunner()

STUB = """#!/bin/sh
echo "$(basename "$0") $*" >> "{log}"
exit {code}
"""


@dataclass
class CliEnv:
    """Paths and environment for a sandboxed CLI run."""

    root: Path
    env: dict[str, str]

    @property
    def config_dir(self) -> Path:
        return self.root / "configs"

    @property
    def ports_file(self) -> Path:
        return self.root / "state" / "ports"

    @property
    def settings_file(self) -> Path:
        return self.root / "state" / "settings"

    @property
    def calls_log(self) -> Path:
        return self.root / "calls.log"

    def calls(self) -> list[str]:
        if not self.calls_log.exists():
            return []
        return self.calls_log.read_text().splitlines()

    def ports(self) -> list[int]:
        return [int(line) for line in self.ports_file.read_text().split()]

    def invoke(self, *args: str, input: str | None = None) -> Result:
        return runner.invoke(app, list(args), env=self.env, input=input)


def _write_stub(path: Path, log: Path, code: int = 0) -> None:
    path.write_text(STUB.format(log=log, code=code))
    path.chmod(0o755)


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


@pytest.fixture
def cli(tmp_path: Path) -> CliEnv:
    """Return a sandboxed environment with stub controllers and firewalld settings."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    log = tmp_path / "calls.log"
    _write_stub(bin_dir / "systemctl", log)
    _write_stub(bin_dir / "firewall-cmd", log)

    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / "settings").write_text("server_address=203.0.113.7\nfirewall_type=firewalld\n")

    env = {
        "SSCTL_CONFIG_FILE": str(tmp_path / "ssctl.yml"),
        "SSCTL_CONFIG_DIR": str(tmp_path / "configs"),
        "SSCTL_STATE_DIR": str(state_dir),
        "SSCTL_LOGS_DIR": str(tmp_path / "logs"),
        "SSCTL_RUNTIME_DIR": str(tmp_path / "run"),
        "SSCTL_BACKUP_FILE": str(tmp_path / "backup.tar.gz"),
        "SSCTL_REQUIRE_ROOT": "false",
        "SSCTL_SYSTEMD__SYSTEMCTL_BIN": str(bin_dir / "systemctl"),
        "SSCTL_FIREWALL__FIREWALL_CMD_BIN": str(bin_dir / "firewall-cmd"),
        "COLUMNS": "200",
    }
    return CliEnv(root=tmp_path, env=env)


def test_version_flag(cli: CliEnv) -> None:
    """``--version`` prints the package version."""
    result = cli.invoke("--version")

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_unknown_action_exits_before_side_effects(cli: CliEnv) -> None:
    """Unknown commands exit with ACTION_NOT_FOUND and touch nothing."""
    result = cli.invoke("frobnicate", "alpha")

    assert result.exit_code == 1
    assert "Unknown action" in result.stdout
    assert not (cli.root / "logs").exists()
    assert cli.calls() == []


def test_new_creates_and_enables(cli: CliEnv) -> None:
    """``new`` writes documents, registers ports and drives the controllers."""
    result = cli.invoke("new", "alpha", "beta")

    assert result.exit_code == 0, result.stdout
    assert sorted(path.name for path in cli.config_dir.iterdir()) == ["alpha.json", "beta.json"]
    documents = [json.loads((cli.config_dir / f"{n}.json").read_text()) for n in ("alpha", "beta")]
    assert sorted(cli.ports()) == sorted(doc["server_port"] for doc in documents)
    calls = cli.calls()
    assert "systemctl enable --now shadowsocks-libev-server@alpha.service" in calls
    port = documents[0]["server_port"]
    assert f"firewall-cmd --zone=public --add-port={port}/tcp --permanent" in calls
    assert f"firewall-cmd --zone=public --add-port={port}/udp --permanent" in calls
    assert "firewall-cmd --reload" in calls


def test_new_json_output(cli: CliEnv) -> None:
    """``new --json`` reports the created records."""
    result = cli.invoke("new", "alpha", "--json")

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    (created,) = payload["created"]
    assert created["name"] == "alpha"
    assert created["method"] == "chacha20-ietf-poly1305"


def test_new_requires_names(cli: CliEnv) -> None:
    """``new`` without names is a missing argument."""
    result = cli.invoke("new")

    assert result.exit_code == 3


def test_new_existing_name_conflicts(cli: CliEnv) -> None:
    """Re-creating an existing config fails with FILE_CONFLICT and no changes."""
    assert cli.invoke("new", "alpha").exit_code == 0
    before = (cli.config_dir / "alpha.json").read_text()
    calls_before = len(cli.calls())

    result = cli.invoke("new", "alpha")

    assert result.exit_code == 5
    assert (cli.config_dir / "alpha.json").read_text() == before
    assert len(cli.calls()) == calls_before


def test_del_removes_config(cli: CliEnv) -> None:
    """``del`` disables the unit and releases the port."""
    cli.invoke("new", "alpha", "beta")

    result = cli.invoke("del", "alpha")

    assert result.exit_code == 0, result.stdout
    assert not (cli.config_dir / "alpha.json").exists()
    beta = json.loads((cli.config_dir / "beta.json").read_text())
    assert cli.ports() == [beta["server_port"]]
    assert "systemctl disable --now shadowsocks-libev-server@alpha.service" in cli.calls()


def test_del_missing_is_not_found(cli: CliEnv) -> None:
    """Deleting an unknown config exits with FILE_NOT_FOUND."""
    result = cli.invoke("del", "ghost")

    assert result.exit_code == 4
    assert cli.calls() == []


def test_ls_and_ll(cli: CliEnv) -> None:
    """Listing commands show stored configs."""
    cli.invoke("new", "alpha", "beta")

    listed = cli.invoke("ls")
    assert listed.exit_code == 0
    assert listed.stdout.split() == ["alpha", "beta"]

    as_json = _extract_json(cli.invoke("ls", "--json").stdout)
    assert as_json == {"configs": ["alpha", "beta"]}

    detail = cli.invoke("ll", "alpha")
    assert detail.exit_code == 0
    assert "alpha" in detail.stdout
    assert "beta" not in detail.stdout

    rows = _extract_json(cli.invoke("ll", "--json").stdout)["configs"]
    assert [row["name"] for row in rows] == ["alpha", "beta"]
    assert all(row["registered"] for row in rows)
    assert all(row["state"] == "active" for row in rows)
    assert all(str(row["uri"]).startswith("ss://") for row in rows)


def test_ls_unknown_name(cli: CliEnv) -> None:
    """Filtering on an unknown name exits with FILE_NOT_FOUND."""
    assert cli.invoke("ls", "ghost").exit_code == 4


def test_uri_outputs_ss_links(cli: CliEnv) -> None:
    """``uri`` prints one ss:// link per config."""
    cli.invoke("new", "alpha")

    result = cli.invoke("uri", "alpha")

    assert result.exit_code == 0, result.stdout
    assert result.stdout.startswith("alpha: ss://")
    assert "=" not in result.stdout.split("ss://", 1)[1]


def test_uri_without_address_fails(cli: CliEnv) -> None:
    """Without an advertised address URIs cannot be built."""
    cli.invoke("new", "alpha")
    cli.settings_file.write_text("server_address=\nfirewall_type=firewalld\n")

    result = cli.invoke("uri")

    assert result.exit_code == 3


def test_address_show_and_set(cli: CliEnv) -> None:
    """``address`` shows and persists the advertised address."""
    shown = cli.invoke("address")
    assert shown.exit_code == 0
    assert "203.0.113.7" in shown.stdout

    result = cli.invoke("address", "vpn.example.org")

    assert result.exit_code == 0, result.stdout
    assert "server_address=vpn.example.org" in cli.settings_file.read_text()
    assert "firewall_type=firewalld" in cli.settings_file.read_text()


def test_settings_repairs_hand_edited_firewall(cli: CliEnv) -> None:
    """An unknown firewall type in the settings file does not block the repair command."""
    cli.settings_file.write_text("server_address=203.0.113.7\nfirewall_type=iptables\n")

    result = cli.invoke("settings", "--firewall", "none", "--json")

    assert result.exit_code == 0, result.stdout
    assert _extract_json(result.stdout)["firewall_type"] == "none"
    assert "firewall_type=none" in cli.settings_file.read_text()


def test_settings_firewall_none(cli: CliEnv) -> None:
    """Switching the firewall type to ``none`` stops firewall-cmd calls."""
    result = cli.invoke("settings", "--firewall", "none", "--json")

    assert result.exit_code == 0, result.stdout
    assert _extract_json(result.stdout)["firewall_type"] == "none"

    cli.invoke("new", "alpha")
    assert not any(call.startswith("firewall-cmd") for call in cli.calls())


def test_settings_rejects_unknown_firewall(cli: CliEnv) -> None:
    """Unsupported firewall types are a missing argument."""
    result = cli.invoke("settings", "--firewall", "iptables")

    assert result.exit_code == 3
    assert "firewall_type=firewalld" in cli.settings_file.read_text()


def test_rename(cli: CliEnv) -> None:
    """``rename`` moves the document and the unit, keeping the port."""
    cli.invoke("new", "alpha")
    port = json.loads((cli.config_dir / "alpha.json").read_text())["server_port"]

    result = cli.invoke("rename", "alpha", "omega")

    assert result.exit_code == 0, result.stdout
    assert json.loads((cli.config_dir / "omega.json").read_text())["server_port"] == port
    assert not (cli.config_dir / "alpha.json").exists()
    assert cli.ports() == [port]
    calls = cli.calls()
    assert "systemctl disable --now shadowsocks-libev-server@alpha.service" in calls
    assert "systemctl enable --now shadowsocks-libev-server@omega.service" in calls


def test_refresh_rebuilds_registry(cli: CliEnv) -> None:
    """``refresh`` restores the registry from the documents."""
    cli.invoke("new", "alpha", "beta")
    expected = sorted(cli.ports())
    cli.ports_file.write_text("1234\n")

    result = cli.invoke("refresh")

    assert result.exit_code == 0, result.stdout
    assert sorted(cli.ports()) == expected
    assert "firewall-cmd --zone=public --remove-port=1234/tcp --permanent" in cli.calls()


@pytest.mark.mutation_timeout
@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is not installed")
def test_backup_and_restore(cli: CliEnv) -> None:
    """A backup restores deleted configs with their original ports."""
    cli.invoke("new", "alpha")
    original = (cli.config_dir / "alpha.json").read_text()

    backup = cli.invoke("backup")
    assert backup.exit_code == 0, backup.stdout
    archive = cli.root / "backup.tar.gz"
    assert archive.exists()

    cli.invoke("del", "alpha")
    restored = cli.invoke("restore", str(archive))

    assert restored.exit_code == 0, restored.stdout
    assert (cli.config_dir / "alpha.json").read_text() == original
    assert cli.ports() == [json.loads(original)["server_port"]]


@pytest.mark.skipif(shutil.which("tar") is None, reason="tar is not installed")
def test_backup_overwrite_prompt(cli: CliEnv) -> None:
    """An existing archive is kept when the prompt is declined."""
    cli.invoke("new", "alpha")
    (cli.root / "backup.tar.gz").write_text("previous")

    declined = cli.invoke("backup", input="n\n")
    assert declined.exit_code == 5
    assert (cli.root / "backup.tar.gz").read_text() == "previous"

    accepted = cli.invoke("backup", "--yes")
    assert accepted.exit_code == 0, accepted.stdout


def test_restore_missing_archive(cli: CliEnv) -> None:
    """Restoring a missing archive exits with FILE_NOT_FOUND."""
    result = cli.invoke("restore", str(cli.root / "nope.tar.gz"))

    assert result.exit_code == 4


def test_missing_systemctl_is_missing_requirement(cli: CliEnv) -> None:
    """Mutating commands fail early when systemctl is unavailable."""
    cli.env["SSCTL_SYSTEMD__SYSTEMCTL_BIN"] = str(cli.root / "bin" / "nope")

    result = cli.invoke("new", "alpha")

    assert result.exit_code == 2
    assert not cli.config_dir.exists() or not any(cli.config_dir.iterdir())


def test_controller_failure_exit_code(cli: CliEnv) -> None:
    """A failing systemctl call exits with CONTROLLER_FAILED."""
    _write_stub(cli.root / "bin" / "systemctl", cli.calls_log, code=1)

    result = cli.invoke("new", "alpha")

    assert result.exit_code == 10


@pytest.mark.skipif(os.geteuid() == 0, reason="running as root")
def test_require_root(cli: CliEnv) -> None:
    """Mutating commands refuse to run unprivileged when root is required."""
    cli.env["SSCTL_REQUIRE_ROOT"] = "true"

    assert cli.invoke("new", "alpha").exit_code == 6
    assert cli.invoke("ls").exit_code == 0


def test_lock_timeout(cli: CliEnv) -> None:
    """A held global lock makes mutating commands time out."""
    locks = LockManager(cli.root / "run", default_timeout=1.0)

    with locks.global_lock():
        result = cli.invoke("--lock-timeout", "0.1", "new", "alpha")

    assert result.exit_code == 11
    assert not (cli.config_dir / "alpha.json").exists()


def test_config_lock_uses_normalised_name(cli: CliEnv) -> None:
    """``alpha.json`` and ``alpha`` contend for the same per-config lock."""
    assert cli.invoke("new", "alpha").exit_code == 0
    locks = LockManager(cli.root / "run", default_timeout=1.0)

    with locks.config_lock("alpha"):
        result = cli.invoke("--lock-timeout", "0.1", "del", "alpha.json")

    assert result.exit_code == 11
    assert (cli.config_dir / "alpha.json").exists()
    assert not (cli.root / "run" / "configs" / "alpha.json.lock").exists()


def test_new_rejects_unit_unsafe_name(cli: CliEnv) -> None:
    """Names systemd cannot use as instances are refused before any change."""
    result = cli.invoke("new", "my vpn")

    assert result.exit_code == 3
    assert not cli.config_dir.exists() or list(cli.config_dir.iterdir()) == []
    assert cli.calls() == []


def test_operations_log_records_commands(cli: CliEnv) -> None:
    """Each command appends a structured entry to the operations log."""
    cli.invoke("new", "alpha")
    cli.invoke("del", "ghost")

    lines = (cli.root / "logs" / "operations.jsonl").read_text().splitlines()
    entries = [json.loads(line) for line in lines]
    assert [entry["command"] for entry in entries] == ["new", "del"]
    assert entries[0]["result"]["status"] == "success"
    assert entries[0]["lock_wait_ms"] is not None
    assert entries[1]["result"]["rc"] == 4
