"""Tests for workspace materialization and the cache warm-up build."""

from __future__ import annotations

import os
import shutil
import stat
import subprocess
import tomllib
from unittest.mock import patch

import nbformat
import pytest
from conftest import completed, make_settings

from burnbox.config import ServerConfig, WorkspaceConfig
from burnbox.errors import ProvisionError
from burnbox.manifest import render_cargo_manifest
from burnbox.toolchain import ProvisionContext
from burnbox.workspace import BuildResult, materialize, render_readme, warm_build, zellij_config

STATS_JSON = (
    '{"stats": {"compile_requests": 412, "cache_hits": {"counts": {"Rust": 3}}, '
    '"cache_misses": {"counts": {"Rust": 398}}}, "cache_size": 1024, "max_cache_size": 10737418240}'
)


# ---------------------------------------------------------------------------
# materialize
# ---------------------------------------------------------------------------


class TestMaterialize:
    def test_layout(self, settings):
        written = materialize(settings)
        root = settings.workspace_root
        expected = {
            root / "burn-server" / "Cargo.toml",
            root / "burn-server" / "src" / "main.rs",
            root / "burn-server" / "src" / "lib.rs",
            root / "notebooks" / "burn_example.ipynb",
            root / "start-burn-server.sh",
            root / "README.md",
            settings.zellij_config_path,
        }
        assert set(written) == expected
        assert all(p.is_file() for p in expected)
        assert settings.cache_dir.is_dir()

    def test_manifest_defaults_to_cuda(self, settings):
        materialize(settings)
        manifest = tomllib.loads((settings.project_dir / "Cargo.toml").read_text())
        assert manifest["features"]["default"] == ["cuda"]

    def test_notebook_is_valid(self, settings):
        materialize(settings)
        nb = nbformat.read(str(settings.notebooks_dir / "burn_example.ipynb"), as_version=4)
        nbformat.validate(nb)
        assert nb.metadata["kernelspec"]["name"] == "rust"

    def test_start_script_is_executable(self, settings):
        materialize(settings)
        mode = settings.start_script_path.stat().st_mode
        assert mode & stat.S_IXUSR

    def test_existing_files_are_kept(self, settings):
        materialize(settings)
        settings.readme_path.write_text("my notes")
        written = materialize(settings)
        assert written == []
        assert settings.readme_path.read_text() == "my notes"

    def test_force_overwrites(self, settings):
        materialize(settings)
        settings.readme_path.write_text("my notes")
        written = materialize(settings, force=True)
        assert settings.readme_path in written
        assert settings.readme_path.read_text().startswith("# Burn Remote Development Environment")

    def test_zellij_config_bundled(self):
        assert "keybinds" in zellij_config()


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
class TestStartScript:
    """Run the generated script against a fake cargo that reports its environment."""

    def _run(self, settings, tmp_path, *args):
        materialize(settings)
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        fake = bin_dir / "cargo"
        fake.write_text('#!/bin/sh\necho "port=$REMOTE_BACKEND_PORT args=$*"\n')
        fake.chmod(0o755)
        env = {**os.environ, "PATH": f"{bin_dir}:{os.environ.get('PATH', '/usr/bin:/bin')}"}
        env.pop("REMOTE_BACKEND_PORT", None)
        return subprocess.run(
            ["bash", str(settings.start_script_path), *args],
            env=env,
            capture_output=True,
            text=True,
            timeout=30,
        )

    def test_port_argument(self, settings, tmp_path):
        result = self._run(settings, tmp_path, "8080")
        assert result.returncode == 0
        assert "port=8080 args=run --release\n" in result.stdout

    def test_default_port(self, settings, tmp_path):
        result = self._run(settings, tmp_path)
        assert "port=3000" in result.stdout


# ---------------------------------------------------------------------------
# README
# ---------------------------------------------------------------------------


class TestReadme:
    def test_mentions_services_and_ports(self, settings):
        readme = render_readme(settings)
        assert "ws://your-server-ip:3000" in readme
        assert "http://localhost:8888" in readme
        assert "auto-starts" in readme
        assert "burnbox service enable" not in readme.split("## Quick Start")[0]

    def test_backend_switch_commands(self, settings):
        readme = render_readme(settings)
        assert "cargo build --release --features cuda\n" in readme
        assert "cargo build --release --features wgpu --no-default-features" in readme

    def test_disabled_server_gets_enable_steps(self, tmp_path):
        s = make_settings(tmp_path, server=ServerConfig(autostart=False))
        readme = render_readme(s)
        head = readme.split("## Quick Start")[0]
        assert "disabled by default" in head
        assert "burnbox service enable burn-server" in head

    def test_no_unfilled_placeholders(self, settings):
        readme = render_readme(settings)
        assert "{enable_steps}" not in readme
        assert "{switch}" not in readme


# ---------------------------------------------------------------------------
# warm_build
# ---------------------------------------------------------------------------


class TestWarmBuild:
    @staticmethod
    def _fake_run(build_returncode=0, build_stderr=""):
        """cargo and sccache share subprocess.run; answer by program name."""
        calls = []

        def run(argv, **kwargs):
            calls.append((argv, kwargs))
            if argv[0] == "sccache":
                return completed(argv, stdout=STATS_JSON)
            return completed(argv, returncode=build_returncode, stderr=build_stderr)

        return run, calls

    def test_builds_default_backend_through_cache(self, settings):
        materialize(settings)
        run, calls = self._fake_run()
        with patch("burnbox.workspace.subprocess.run", side_effect=run):
            result = warm_build(settings)

        assert isinstance(result, BuildResult)
        assert result.success
        assert result.command == ["cargo", "build", "--release", "--features", "cuda"]
        argv, kwargs = calls[0]
        assert argv == result.command
        assert kwargs["cwd"] == str(settings.project_dir)
        assert kwargs["env"]["RUSTC_WRAPPER"] == "sccache"
        assert kwargs["env"]["SCCACHE_DIR"] == str(settings.cache_dir)
        assert calls[1][0][0] == "sccache"
        assert result.stats.compile_requests == 412
        assert result.stats.misses == 398

    def test_failure_raises(self, settings):
        materialize(settings)
        run, calls = self._fake_run(101, "error[E0433]: failed to resolve")
        with patch("burnbox.workspace.subprocess.run", side_effect=run):
            with pytest.raises(ProvisionError) as exc_info:
                warm_build(settings)

        assert exc_info.value.step == "warm-build"
        assert "E0433" in str(exc_info.value)
        assert len(calls) == 1

    def test_edited_manifest_backend_is_built(self, settings, tmp_path):
        materialize(settings)
        edited = make_settings(tmp_path, workspace=WorkspaceConfig(default_backend="wgpu"))
        (settings.project_dir / "Cargo.toml").write_text(render_cargo_manifest(edited))
        run, calls = self._fake_run()
        with patch("burnbox.workspace.subprocess.run", side_effect=run):
            result = warm_build(settings)
        assert result.command == ["cargo", "build", "--release", "--features", "wgpu"]

    def test_missing_cargo_is_a_provision_error(self, settings, tmp_path):
        materialize(settings)
        empty = tmp_path / "empty-bin"
        empty.mkdir()
        with pytest.raises(ProvisionError, match=r"\[warm-build\] cargo not found"):
            warm_build(settings, env={"PATH": str(empty)})


def _script(path, body: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body)
    path.chmod(0o755)


@pytest.mark.skipif(not os.path.exists("/bin/sh"), reason="needs /bin/sh")
class TestWarmBuildToolchainEnvironment:
    """cargo and sccache exist only under the toolchain's cargo bin directory."""

    @pytest.fixture
    def toolchain(self, settings, tmp_path, monkeypatch):
        materialize(settings)
        log = tmp_path / "cargo.log"
        _script(
            settings.cargo_bin / "cargo",
            f'#!/bin/sh\necho "$RUSTC_WRAPPER $CARGO_HOME $*" > {log}\n',
        )
        _script(settings.cargo_bin / "sccache", f"#!/bin/sh\necho '{STATS_JSON}'\n")
        empty = tmp_path / "empty-bin"
        empty.mkdir()
        monkeypatch.setenv("PATH", str(empty))
        return log

    def test_builds_with_bootstrap_environment(self, settings, toolchain):
        ctx = ProvisionContext.create(settings)
        result = warm_build(settings, env=ctx.env)

        wrapper, cargo_home, *args = toolchain.read_text().split()
        assert wrapper == "sccache"
        assert cargo_home == settings.toolchain.cargo_home
        assert args == ["build", "--release", "--features", "cuda"]
        assert result.stats.compile_requests == 412

    def test_process_environment_alone_cannot_find_cargo(self, settings, toolchain):
        with pytest.raises(ProvisionError, match="cargo not found"):
            warm_build(settings)
        assert not toolchain.exists()
