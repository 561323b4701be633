"""Workspace materialization: project sources, notebook, scripts and guides.

Layout under the workspace root::

    <root>/<project>/Cargo.toml
    <root>/<project>/src/{main,lib}.rs
    <root>/notebooks/burn_example.ipynb
    <root>/start-burn-server.sh
    <root>/README.md
    <cache dir>                       (default <root>/.sccache)

Generated files are user-editable afterwards, so an existing file is only
replaced when ``force`` is set.
"""

from __future__ import annotations

import os
import subprocess
import textwrap
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path

import nbformat

from burnbox.cache import CacheStats, cache_env, ensure_cache_dir, show_stats
from burnbox.config import Settings
from burnbox.errors import ProvisionError
from burnbox.logger import logger
from burnbox.manifest import project_backend, render_cargo_manifest
from burnbox.notebook import build_example_notebook, example_notebook_path
from burnbox.server import (
    BACKENDS,
    build_command,
    render_lib_rs,
    render_main_rs,
    render_start_script,
)
from burnbox.supervisor import NOTEBOOK_PROGRAM, server_program_name

_BUILD_TIMEOUT = 3600


def _write(path: Path, content: str, *, force: bool, mode: int | None = None) -> bool:
    if path.exists() and not force:
        logger.debug("Keeping existing file", path=str(path))
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    if mode is not None:
        os.chmod(path, mode)
    logger.info("Wrote file", path=str(path))
    return True


def zellij_config() -> str:
    return resources.files("burnbox").joinpath("assets/zellij.kdl").read_text()


def render_readme(settings: Settings) -> str:
    s = settings
    default = s.workspace.default_backend
    server = server_program_name(s)
    switch = "\n".join(
        f"# {backend}{' (default)' if backend == default else ''}\n"
        f"{' '.join(build_command(backend, default))}\n"
        for backend in BACKENDS
    )
    components = ", ".join(s.toolchain.components)
    autostart = "auto-starts" if s.server.autostart else "disabled by default"
    enable_steps = (
        ""
        if s.server.autostart
        else textwrap.dedent(
            f"""
            To start the compute server with the container:

            ```bash
            burnbox service enable {server}
            burnbox service reload
            ```
            """
        )
    )
    return textwrap.dedent(
        f"""\
        # Burn Remote Development Environment

        GPU-accelerated Burn development with a shared compiler cache.

        ## Services

        - **Burn Remote Server** ({autostart}) on port {s.server.port}
          - Connect via WebSocket: ws://your-server-ip:{s.server.port}
        - **Jupyter Notebook** on port {s.notebook.port} (no password)
          - Access at: http://localhost:{s.notebook.port}
          - Rust kernel available via evcxr
        {{enable_steps}}
        ## Quick Start

        ```bash
        ./start-burn-server.sh [port]
        # Default port: {s.server.port}
        ```

        ### Connect from a Remote Client

        ```rust
        use burn::backend::RemoteBackend;

        type Backend = RemoteBackend;
        let device = burn::backend::remote::RemoteDevice::new("ws://your-server-ip:{s.server.port}");
        ```

        ## Available Tools

        - **Rust**: {s.toolchain.channel} toolchain with {components}
        - **Burn**: v{s.workspace.burn_version}, pre-compiled with the {default} backend
        - **Jupyter**: Rust kernel via {s.toolchain.kernel_package}
        - **sccache**: shared compilation cache
        - **zellij**: attached automatically on interactive login
        - **btop**: system monitoring

        ## Service Management

        ```bash
        supervisorctl status
        supervisorctl restart {NOTEBOOK_PROGRAM}
        supervisorctl restart {server}
        tail -f {s.log_dir}/{NOTEBOOK_PROGRAM}.out.log
        tail -f {s.log_dir}/{server}.out.log
        ```

        Enable or disable autostart without editing files:

        ```bash
        burnbox service disable {server}   # renames to {server}.conf{s.supervisor.disabled_suffix}
        burnbox service enable {server}
        burnbox service reload
        ```

        ## sccache (Shared Build Cache)

        Compiled artifacts are shared between the {server} project, Jupyter
        notebook cells and any other Rust project in this container. The cache
        lives in `{s.cache_dir}`.

        ```bash
        sccache --show-stats
        ```

        ## Jupyter with Rust

        Open http://localhost:{s.notebook.port} and select the "Rust" kernel.
        See `{example_notebook_path(s)}` for an example.

        ## Environment Variables

        - `{s.server.port_env}`: port for the {server} (default: {s.server.port})
        - `SCCACHE_DIR`: cache directory (default: {s.cache.dir})
        - `SCCACHE_CACHE_SIZE`: max cache size (default: {s.cache.size})

        ## GPU Monitoring

        ```bash
        btop
        nvidia-smi
        ```

        ## Building with Different Backends

        ```bash
        cd {s.project_dir}

        {{switch}}```
        """
    ).replace("{enable_steps}", enable_steps).replace("{switch}", switch)


def materialize(settings: Settings, *, force: bool = False) -> list[Path]:
    """Create the workspace layout and write every generated file.

    Returns the files that were written.
    """
    s = settings
    for directory in (s.src_dir, s.notebooks_dir):
        directory.mkdir(parents=True, exist_ok=True)
    ensure_cache_dir(s)

    nb = build_example_notebook(s.workspace.burn_version, s.workspace.default_backend)
    files: list[tuple[Path, str, int | None]] = [
        (s.project_dir / "Cargo.toml", render_cargo_manifest(s), None),
        (s.src_dir / "main.rs", render_main_rs(s), None),
        (s.src_dir / "lib.rs", render_lib_rs(s), None),
        (example_notebook_path(s), nbformat.writes(nb), None),
        (s.start_script_path, render_start_script(s), 0o755),
        (s.readme_path, render_readme(s), None),
        (s.zellij_config_path, zellij_config(), None),
    ]
    return [path for path, content, mode in files if _write(path, content, force=force, mode=mode)]


# ---------------------------------------------------------------------------
# Cache warm-up
# ---------------------------------------------------------------------------


@dataclass
class BuildResult:
    """Outcome of the cache-warming build."""

    success: bool
    command: list[str] = field(default_factory=list)
    stats: CacheStats | None = None


def warm_build(settings: Settings, env: Mapping[str, str] | None = None) -> BuildResult:
    """Compile the default backend once so later builds hit the cache.

    ``env`` is the toolchain environment left behind by bootstrap; without it
    the current process environment is used. Purely an optimization, but a
    failure still aborts provisioning: a crate that does not build here will
    not build for the user either.
    """
    backend = project_backend(settings)
    command = build_command(backend, backend)
    run_env = {**(os.environ if env is None else env), **cache_env(settings)}
    logger.info("Warming compiler cache", command=" ".join(command))
    try:
        result = subprocess.run(
            command,
            cwd=str(settings.project_dir),
            env=run_env,
            capture_output=True,
            text=True,
            timeout=_BUILD_TIMEOUT,
        )
    except FileNotFoundError as exc:
        raise ProvisionError("warm-build", "cargo not found on PATH") from exc
    if result.returncode != 0:
        raise ProvisionError(
            "warm-build",
            "cargo build failed",
            returncode=result.returncode,
            stderr=result.stderr[-2000:],
        )
    stats = show_stats(settings, env=run_env)
    logger.info(
        "Compiler cache warmed",
        compile_requests=stats.compile_requests,
        hits=stats.hits,
        misses=stats.misses,
    )
    return BuildResult(success=True, command=command, stats=stats)
