"""Shared test fixtures for burnbox."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, not fixtures; importable by test files)
# ---------------------------------------------------------------------------


def make_settings(root: Path, **overrides):
    """Create a Settings object whose every path lives under ``root``.

    Accepts section overrides as config models::

        s = make_settings(tmp_path)
        s = make_settings(tmp_path, server=ServerConfig(autostart=False))
    """
    from burnbox.config import (
        CacheConfig,
        SessionConfig,
        Settings,
        SupervisorConfig,
        ToolchainConfig,
        WorkspaceConfig,
    )

    workspace = root / "workspace"
    defaults = {
        "workspace": WorkspaceConfig(root=str(workspace)),
        "cache": CacheConfig(dir=str(workspace / ".sccache")),
        "toolchain": ToolchainConfig(
            rustup_home=str(root / "rustup"),
            cargo_home=str(root / "cargo"),
        ),
        "supervisor": SupervisorConfig(
            conf_dir=str(root / "supervisor" / "conf.d"),
            log_dir=str(root / "log"),
        ),
        "session": SessionConfig(home=str(root / "home")),
    }
    defaults.update(overrides)
    return Settings(**defaults)


def completed(args=None, returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(args or [], returncode, stdout, stderr)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path, monkeypatch):
    """Keep host config files and cache variables out of every test."""
    from burnbox.config import reset_settings

    cwd = tmp_path / "cwd"
    cwd.mkdir()
    monkeypatch.chdir(cwd)
    for name in (
        "SCCACHE_DIR",
        "SCCACHE_CACHE_SIZE",
        "RUSTC_WRAPPER",
        "REMOTE_BACKEND_PORT",
        "ZELLIJ",
    ):
        monkeypatch.delenv(name, raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)
