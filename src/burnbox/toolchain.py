"""Toolchain bootstrap: compiler, compiler cache, prebuilt CLI tools, notebook kernel.

Steps are registered with their dependencies and run one at a time in
dependency order. Every step is fatal on failure; a half-provisioned image
is never produced.

The compiler wrapper (``RUSTC_WRAPPER=sccache``) is only exported by the
``enable-compiler-cache`` step, after sccache itself is installed. Before
that, any cargo build (including the tool installs) would try to route
through a binary that does not exist yet.
"""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import textwrap
import time
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from burnbox.cache import COMPILER_WRAPPER, ensure_cache_dir
from burnbox.config import Settings
from burnbox.errors import ProvisionError
from burnbox.logger import logger

RUSTUP_URL = "https://sh.rustup.rs"
BINSTALL_URL = (
    "https://raw.githubusercontent.com/cargo-bins/cargo-binstall/main/"
    "install-from-binstall-release.sh"
)
KERNEL_NAME = "rust"

StepFunc = Callable[["ProvisionContext"], None]


# ---------------------------------------------------------------------------
# Execution context
# ---------------------------------------------------------------------------


def toolchain_env(settings: Settings) -> dict[str, str]:
    """Environment every toolchain command runs with (minus the compiler wrapper)."""
    tc = settings.toolchain
    return {
        "RUSTUP_HOME": tc.rustup_home,
        "CARGO_HOME": tc.cargo_home,
        "PATH": f"{settings.cargo_bin}:{os.environ.get('PATH', '/usr/bin:/bin')}",
        "RUST_BACKTRACE": "1",
        "DEBIAN_FRONTEND": "noninteractive",
    }


@dataclass
class ProvisionContext:
    settings: Settings
    env: dict[str, str] = field(default_factory=dict)
    timings: dict[str, float] = field(default_factory=dict)
    timeout: float | None = None

    @classmethod
    def create(cls, settings: Settings, base_env: Mapping[str, str] | None = None) -> ProvisionContext:
        env = dict(os.environ if base_env is None else base_env)
        # A wrapper inherited from the caller would break the sccache install itself
        env.pop("RUSTC_WRAPPER", None)
        env.update(toolchain_env(settings))
        return cls(settings=settings, env=env)

    def run(self, label: str, command: str) -> subprocess.CompletedProcess[str]:
        """Run a bash snippet; non-zero exit aborts provisioning."""
        logger.info("Running provisioning command", step=label)
        logger.debug("Command", step=label, command=command)
        result = subprocess.run(
            ["bash", "-euo", "pipefail", "-c", command],
            env=self.env,
            capture_output=True,
            text=True,
            timeout=self.timeout,
        )
        if result.returncode != 0:
            raise ProvisionError(
                label,
                "command failed",
                returncode=result.returncode,
                stderr=result.stderr[-2000:],
            )
        return result

    def export(self, name: str, value: str) -> None:
        """Set a variable for the remaining steps and for this process."""
        self.env[name] = value
        os.environ[name] = value


# ---------------------------------------------------------------------------
# Step registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StepDefinition:
    name: str
    func: StepFunc
    dependencies: tuple[str, ...]
    description: str | None = None


class StepRegistry:
    def __init__(self) -> None:
        self._steps: dict[str, StepDefinition] = {}

    def step(
        self,
        *,
        name: str,
        deps: Iterable[str] = (),
        description: str | None = None,
    ) -> Callable[[StepFunc], StepFunc]:
        def decorator(func: StepFunc) -> StepFunc:
            if name in self._steps:
                raise ValueError(f"Step '{name}' already registered")
            self._steps[name] = StepDefinition(
                name=name,
                func=func,
                dependencies=tuple(deps),
                description=description,
            )
            return func

        return decorator

    @property
    def steps(self) -> dict[str, StepDefinition]:
        return dict(self._steps)

    def order(self) -> list[StepDefinition]:
        """Registration order, adjusted so each step follows its dependencies."""
        remaining = self.steps
        for step in remaining.values():
            unknown = [d for d in step.dependencies if d not in remaining]
            if unknown:
                raise ValueError(f"Step '{step.name}' depends on unknown steps: {unknown}")
        ordered: list[StepDefinition] = []
        done: set[str] = set()
        while remaining:
            ready = next(
                (s for s in remaining.values() if all(d in done for d in s.dependencies)),
                None,
            )
            if ready is None:
                raise ValueError(f"Dependency cycle detected: {', '.join(remaining)}")
            ordered.append(ready)
            done.add(ready.name)
            del remaining[ready.name]
        return ordered


def run_steps(registry: StepRegistry, ctx: ProvisionContext) -> None:
    """Run every step sequentially; the first failure propagates."""
    for step in registry.order():
        logger.info("Starting step", step=step.name, description=step.description)
        start = time.perf_counter()
        step.func(ctx)
        duration = time.perf_counter() - start
        ctx.timings[step.name] = duration
        logger.info("Step completed", step=step.name, seconds=round(duration, 2))


registry = StepRegistry()


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


@registry.step(name="apt-packages", description="Install OS build dependencies")
def step_apt_packages(ctx: ProvisionContext) -> None:
    packages = " ".join(shlex.quote(p) for p in ctx.settings.image.apt_packages)
    ctx.run(
        "apt-packages",
        textwrap.dedent(
            f"""
            apt-get update
            apt-get install -y --no-install-recommends {packages}
            apt-get clean
            rm -rf /var/lib/apt/lists/*
            """
        ),
    )


@registry.step(
    name="rustup",
    deps=("apt-packages",),
    description="Install the Rust toolchain and components",
)
def step_rustup(ctx: ProvisionContext) -> None:
    tc = ctx.settings.toolchain
    components = " ".join(shlex.quote(c) for c in tc.components)
    ctx.run(
        "rustup",
        textwrap.dedent(
            f"""
            curl --proto '=https' --tlsv1.2 -sSf {RUSTUP_URL} | sh -s -- -y \\
                --default-toolchain {shlex.quote(tc.channel)} \\
                --profile {shlex.quote(tc.profile)}
            rustup component add {components}
            """
        ),
    )


@registry.step(
    name="cargo-binstall",
    deps=("rustup",),
    description="Install cargo-binstall for prebuilt binaries",
)
def step_cargo_binstall(ctx: ProvisionContext) -> None:
    ctx.run(
        "cargo-binstall",
        f"curl -L --proto '=https' --tlsv1.2 -sSf {BINSTALL_URL} | bash",
    )


@registry.step(
    name="prebuilt-tools",
    deps=("cargo-binstall",),
    description="Install sccache, just and zellij without compiling them",
)
def step_prebuilt_tools(ctx: ProvisionContext) -> None:
    tools = " ".join(shlex.quote(t) for t in ctx.settings.toolchain.tools)
    ctx.run("prebuilt-tools", f"cargo binstall -y --locked {tools}")


@registry.step(
    name="enable-compiler-cache",
    deps=("prebuilt-tools",),
    description="Route every later rustc call through sccache",
)
def step_enable_compiler_cache(ctx: ProvisionContext) -> None:
    s = ctx.settings
    ensure_cache_dir(s)
    ctx.export("SCCACHE_DIR", str(s.cache_dir))
    ctx.export("SCCACHE_CACHE_SIZE", s.cache_size)
    ctx.export("RUSTC_WRAPPER", COMPILER_WRAPPER)
    logger.info("Compiler cache enabled", wrapper=COMPILER_WRAPPER, cache_dir=str(s.cache_dir))


@registry.step(
    name="notebook-kernel",
    deps=("enable-compiler-cache",),
    description="Install the Rust notebook kernel and register it with Jupyter",
)
def step_notebook_kernel(ctx: ProvisionContext) -> None:
    package = shlex.quote(ctx.settings.toolchain.kernel_package)
    ctx.run(
        "notebook-kernel",
        f"cargo binstall -y --locked {package}\n{package} --install",
    )
    check_kernel_registered(ctx.env)


def check_kernel_registered(env: Mapping[str, str] | None = None) -> None:
    """Raise unless Jupyter lists the Rust kernel."""
    try:
        result = subprocess.run(
            ["jupyter", "kernelspec", "list", "--json"],
            capture_output=True,
            text=True,
            env=dict(env) if env is not None else None,
            timeout=60,
        )
    except FileNotFoundError as exc:
        raise ProvisionError("notebook-kernel", "jupyter not found on PATH") from exc
    if result.returncode != 0:
        raise ProvisionError(
            "notebook-kernel",
            "jupyter kernelspec list failed",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    specs = json.loads(result.stdout).get("kernelspecs", {})
    if KERNEL_NAME not in specs:
        raise ProvisionError(
            "notebook-kernel",
            f"kernel '{KERNEL_NAME}' not registered (found: {', '.join(sorted(specs)) or 'none'})",
        )
    logger.info("Notebook kernel registered", kernel=KERNEL_NAME)


def bootstrap(settings: Settings, ctx: ProvisionContext | None = None) -> ProvisionContext:
    ctx = ctx or ProvisionContext.create(settings)
    run_steps(registry, ctx)
    return ctx
