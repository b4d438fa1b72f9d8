"""Tests for the firewalld provider and the shared command runner."""
from __future__ import annotations

import sys

import pytest
from conftest import FakeRunner

from ssctl.errors import ControllerError, MissingRequirementError
from ssctl.exit_codes import ExitCode
from ssctl.providers import CommandResult, CommandRunner, FirewallProvider
from ssctl.settings import FirewallType, Settings


def test_open_port_adds_tcp_udp_then_reloads(fake_runner: FakeRunner) -> None:
    """Opening a port issues one permanent rule per protocol and a reload."""
    provider = FirewallProvider(
        settings=Settings(firewall_type=FirewallType.FIREWALLD),
        runner=fake_runner,  # type: ignore[arg-type]
    )

    results = provider.open_port(2345)

    assert [result.ok for result in results] == [True, True, True]
    assert fake_runner.calls == [
        ("firewall-cmd", "--zone=public", "--add-port=2345/tcp", "--permanent"),
        ("firewall-cmd", "--zone=public", "--add-port=2345/udp", "--permanent"),
        ("firewall-cmd", "--reload"),
    ]


def test_close_port_uses_zone(fake_runner: FakeRunner) -> None:
    """Closing a port removes both protocols in the configured zone."""
    provider = FirewallProvider(
        settings=Settings(firewall_type=FirewallType.FIREWALLD),
        runner=fake_runner,  # type: ignore[arg-type]
        zone="internal",
    )

    provider.close_port(2345)

    assert fake_runner.calls[0] == (
        "firewall-cmd",
        "--zone=internal",
        "--remove-port=2345/tcp",
        "--permanent",
    )


def test_firewall_none_skips_everything(fake_runner: FakeRunner) -> None:
    """With firewall type ``none`` nothing is executed."""
    provider = FirewallProvider(settings=Settings(), runner=fake_runner)  # type: ignore[arg-type]

    results = provider.open_port(2345)

    assert not provider.enabled
    assert all(result.skipped and result.ok for result in results)
    assert fake_runner.calls == []


def test_command_result_raise_for_status() -> None:
    """Failed results raise ControllerError with the diagnostic."""
    failed = CommandResult(args=("firewall-cmd", "--reload"), returncode=252, stderr="not running")

    with pytest.raises(ControllerError) as excinfo:
        failed.raise_for_status("Reloading firewalld")

    assert "not running" in str(excinfo.value)
    assert excinfo.value.exit_code is ExitCode.CONTROLLER_FAILED
    ok = CommandResult(args=("true",))
    assert ok.raise_for_status("noop") is ok
    assert ok.diagnostic == "ok"


def test_command_runner_captures_output() -> None:
    """The real runner captures stdout and return codes without raising."""
    runner = CommandRunner()

    result = runner.run([sys.executable, "-c", "import sys; print('hi'); sys.exit(3)"])

    assert result.returncode == 3
    assert result.stdout.strip() == "hi"


def test_command_runner_missing_binary() -> None:
    """Missing executables are reported as missing requirements."""
    runner = CommandRunner()

    with pytest.raises(MissingRequirementError):
        runner.run(["ssctl-definitely-not-installed"])
    with pytest.raises(MissingRequirementError):
        runner.require("ssctl-definitely-not-installed")
