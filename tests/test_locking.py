"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from ssctl.exit_codes import ExitCode
from ssctl.locking import LockManager, LockTimeoutError


def test_global_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "ssctl.lock"
    with manager.global_lock() as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.global_lock(timeout=0.2):
        pass


def test_global_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError) as excinfo:
            with manager.global_lock(timeout=0.1):
                pass

    assert excinfo.value.exit_code is ExitCode.LOCK_TIMEOUT


def test_mutate_configs_acquires_global_then_config(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-config locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_configs(["beta", "alpha", "beta"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "ssctl.lock",
            "alpha.lock",
            "beta.lock",
        ]
        assert (tmp_path / "run" / "configs" / "alpha.lock").exists()


def test_config_lock_blocks_same_name_only(tmp_path: Path) -> None:
    """Config locks are independent per name."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.config_lock("alpha"):
        with manager.config_lock("beta", timeout=0.1):
            pass
        with pytest.raises(LockTimeoutError):
            with manager.config_lock("alpha", timeout=0.1):
                pass
