"""Tests for the toolchain bootstrap step graph.

Critical properties:
- steps run strictly in dependency order, one at a time
- RUSTC_WRAPPER is absent while sccache is being installed, present afterwards
- any failing step aborts everything after it
"""

from __future__ import annotations

import json
import os
from unittest.mock import patch

import pytest
from conftest import completed

from burnbox.errors import ProvisionError
from burnbox.toolchain import (
    ProvisionContext,
    StepRegistry,
    bootstrap,
    check_kernel_registered,
    registry,
    run_steps,
)

KERNELSPECS = json.dumps(
    {"kernelspecs": {"rust": {"resource_dir": "/usr/share/jupyter/kernels/rust"}}}
)


class _Recorder:
    """Fake subprocess.run that records (command, RUSTC_WRAPPER) per call."""

    def __init__(self, fail_on: str | None = None, kernelspecs: str = KERNELSPECS):
        self.calls: list[tuple[str, str | None]] = []
        self.fail_on = fail_on
        self.kernelspecs = kernelspecs

    def __call__(self, argv, **kwargs):
        env = kwargs.get("env") or {}
        if argv[0] == "jupyter":
            self.calls.append(("jupyter kernelspec list", env.get("RUSTC_WRAPPER")))
            return completed(argv, stdout=self.kernelspecs)
        command = argv[-1]
        self.calls.append((command, env.get("RUSTC_WRAPPER")))
        if self.fail_on and self.fail_on in command:
            return completed(argv, returncode=1, stderr="download failed")
        return completed(argv)

    def wrapper_for(self, needle: str) -> str | None:
        return next(wrapper for command, wrapper in self.calls if needle in command)


@pytest.fixture
def clean_environ():
    with patch.dict(os.environ):
        yield


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TestStepRegistry:
    def test_builtin_order(self):
        assert [s.name for s in registry.order()] == [
            "apt-packages",
            "rustup",
            "cargo-binstall",
            "prebuilt-tools",
            "enable-compiler-cache",
            "notebook-kernel",
        ]

    def test_duplicate_name_rejected(self):
        reg = StepRegistry()
        reg.step(name="a")(lambda ctx: None)
        with pytest.raises(ValueError, match="already registered"):
            reg.step(name="a")(lambda ctx: None)

    def test_dependencies_reorder_registration(self):
        reg = StepRegistry()
        reg.step(name="second", deps=("first",))(lambda ctx: None)
        reg.step(name="first")(lambda ctx: None)
        assert [s.name for s in reg.order()] == ["first", "second"]

    def test_cycle_detected(self):
        reg = StepRegistry()
        reg.step(name="a", deps=("b",))(lambda ctx: None)
        reg.step(name="b", deps=("a",))(lambda ctx: None)
        with pytest.raises(ValueError, match="cycle"):
            reg.order()

    def test_unknown_dependency(self):
        reg = StepRegistry()
        reg.step(name="a", deps=("missing",))(lambda ctx: None)
        with pytest.raises(ValueError, match="unknown"):
            reg.order()

    def test_run_steps_records_timings(self, settings):
        reg = StepRegistry()
        seen: list[str] = []
        reg.step(name="only")(lambda ctx: seen.append("only"))
        ctx = ProvisionContext(settings=settings)
        run_steps(reg, ctx)
        assert seen == ["only"]
        assert "only" in ctx.timings


# ---------------------------------------------------------------------------
# ProvisionContext
# ---------------------------------------------------------------------------


class TestProvisionContext:
    def test_inherited_wrapper_is_dropped(self, settings):
        ctx = ProvisionContext.create(settings, {"RUSTC_WRAPPER": "sccache", "HOME": "/root"})
        assert "RUSTC_WRAPPER" not in ctx.env
        assert ctx.env["HOME"] == "/root"

    def test_toolchain_variables(self, settings):
        ctx = ProvisionContext.create(settings, {"PATH": "/usr/bin"})
        assert ctx.env["CARGO_HOME"] == settings.toolchain.cargo_home
        assert ctx.env["RUSTUP_HOME"] == settings.toolchain.rustup_home
        assert ctx.env["PATH"].startswith(f"{settings.cargo_bin}:")

    def test_run_raises_on_failure(self, settings):
        ctx = ProvisionContext.create(settings, {})
        with patch(
            "burnbox.toolchain.subprocess.run",
            return_value=completed(returncode=100, stderr="E: Unable to locate package"),
        ):
            with pytest.raises(ProvisionError) as exc_info:
                ctx.run("apt-packages", "apt-get install nope")
        assert exc_info.value.step == "apt-packages"
        assert exc_info.value.returncode == 100
        assert "Unable to locate package" in str(exc_info.value)

    def test_run_uses_strict_bash(self, settings):
        ctx = ProvisionContext.create(settings, {})
        with patch("burnbox.toolchain.subprocess.run", return_value=completed()) as mock_run:
            ctx.run("x", "true")
        assert mock_run.call_args.args[0] == ["bash", "-euo", "pipefail", "-c", "true"]


# ---------------------------------------------------------------------------
# bootstrap
# ---------------------------------------------------------------------------


class TestBootstrap:
    def test_wrapper_enabled_only_after_sccache_install(self, settings, clean_environ):
        recorder = _Recorder()
        with patch("burnbox.toolchain.subprocess.run", side_effect=recorder):
            ctx = bootstrap(settings, ProvisionContext.create(settings, {}))

        assert recorder.wrapper_for("cargo binstall -y --locked sccache") is None
        assert recorder.wrapper_for("evcxr_jupyter --install") == "sccache"
        assert ctx.env["RUSTC_WRAPPER"] == "sccache"
        assert os.environ["RUSTC_WRAPPER"] == "sccache"

    def test_commands_run_in_order(self, settings, clean_environ):
        recorder = _Recorder()
        with patch("burnbox.toolchain.subprocess.run", side_effect=recorder):
            bootstrap(settings, ProvisionContext.create(settings, {}))

        commands = [c for c, _ in recorder.calls]
        assert "apt-get install -y --no-install-recommends" in commands[0]
        assert "--default-toolchain stable" in commands[1]
        assert "rustup component add rust-src rustfmt clippy rust-analyzer" in commands[1]
        assert "install-from-binstall-release.sh" in commands[2]
        assert commands[3] == "cargo binstall -y --locked sccache just zellij"
        assert commands[-1] == "jupyter kernelspec list"

    def test_cache_dir_created_when_wrapper_enabled(self, settings, clean_environ):
        with patch("burnbox.toolchain.subprocess.run", side_effect=_Recorder()):
            bootstrap(settings, ProvisionContext.create(settings, {}))
        assert settings.cache_dir.is_dir()

    def test_failure_aborts_remaining_steps(self, settings, clean_environ):
        recorder = _Recorder(fail_on="rustup component add")
        with patch("burnbox.toolchain.subprocess.run", side_effect=recorder):
            with pytest.raises(ProvisionError, match=r"\[rustup\]"):
                bootstrap(settings, ProvisionContext.create(settings, {}))

        assert len(recorder.calls) == 2
        assert "RUSTC_WRAPPER" not in os.environ


class TestCheckKernelRegistered:
    def test_registered(self):
        with patch("burnbox.toolchain.subprocess.run", return_value=completed(stdout=KERNELSPECS)):
            check_kernel_registered()

    def test_missing_kernel_raises(self):
        other = json.dumps({"kernelspecs": {"python3": {}}})
        with patch("burnbox.toolchain.subprocess.run", return_value=completed(stdout=other)):
            with pytest.raises(ProvisionError, match="python3"):
                check_kernel_registered()

    def test_jupyter_missing_raises(self):
        with patch("burnbox.toolchain.subprocess.run", side_effect=FileNotFoundError("jupyter")):
            with pytest.raises(ProvisionError, match="jupyter not found"):
                check_kernel_registered()
