"""Compute-server contract: listen port, backend selection, build/run commands.

The server itself is a generated Rust crate that hands everything to
``burn::server::start_websocket``. This module owns the parts of its
contract that live outside the crate: the sources we generate, the port
rules shared by the generated start-routine and ``burnbox serve``, and the
cargo invocations that pick exactly one backend.
"""

from __future__ import annotations

import os
import textwrap
from collections.abc import Iterable, Mapping
from typing import get_args

from burnbox.cache import cache_env
from burnbox.config import DEFAULT_PORT, Backend, Settings
from burnbox.errors import BackendSelectionError, BurnboxError, PortError
from burnbox.logger import logger

BACKENDS: tuple[str, ...] = get_args(Backend)

BACKEND_TYPES = {
    "cuda": "Cuda",
    "wgpu": "Wgpu",
}

# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------


def parse_port(value: str | None, default: int = DEFAULT_PORT) -> int:
    """Parse a listen port the way the generated start-routine does.

    Absent means ``default``. Present values must be a decimal integer in
    ``[0, 65535]`` with at most one leading ``+`` (as Rust's ``u16`` parser
    allows); anything else (including the empty string) is fatal.
    """
    if value is None:
        return default
    digits = value[1:] if value.startswith("+") else value
    if not (digits.isascii() and digits.isdigit()):
        raise PortError(f"Invalid port, got {value!r}: not an unsigned integer")
    port = int(digits)
    if port > 65535:
        raise PortError(f"Invalid port, got {value!r}: out of range for u16")
    return port


def resolve_port(environ: Mapping[str, str], settings: Settings) -> int:
    return parse_port(environ.get(settings.server.port_env), default=settings.server.port)


# ---------------------------------------------------------------------------
# Backend selection
# ---------------------------------------------------------------------------


def select_backend(features: Iterable[str]) -> str:
    """Return the single active backend among ``features``.

    Non-backend features are ignored. Zero or several backends is a
    configuration error, never a silent choice.
    """
    active = sorted({f for f in features if f in BACKENDS})
    if not active:
        raise BackendSelectionError(
            f"No backend selected; enable exactly one of: {', '.join(BACKENDS)}"
        )
    if len(active) > 1:
        raise BackendSelectionError(
            f"Backends are mutually exclusive, got: {', '.join(active)}"
        )
    return active[0]


def cargo_feature_args(backend: str, default_backend: str) -> list[str]:
    """Feature flags that compile exactly ``backend`` into the crate."""
    select_backend([backend])
    if backend == default_backend:
        return ["--features", backend]
    # The default feature would otherwise be compiled in as well
    return ["--features", backend, "--no-default-features"]


def build_command(backend: str, default_backend: str) -> list[str]:
    return ["cargo", "build", "--release", *cargo_feature_args(backend, default_backend)]


def run_command(backend: str, default_backend: str) -> list[str]:
    return ["cargo", "run", "--release", *cargo_feature_args(backend, default_backend)]


# ---------------------------------------------------------------------------
# Generated sources
# ---------------------------------------------------------------------------


def render_main_rs(settings: Settings) -> str:
    crate = settings.workspace.project.replace("-", "_")
    return textwrap.dedent(
        f"""\
        //! Burn Remote Backend Server
        //!
        //! Serves GPU-accelerated tensor operations over WebSocket.
        //! Point a remote Burn client at this server to use its GPU.

        fn main() {{
            {crate}::start();
        }}
        """
    )


def render_lib_rs(settings: Settings) -> str:
    port_env = settings.server.port_env
    port = settings.server.port
    branches = []
    for i, backend in enumerate(BACKENDS):
        keyword = "if" if i == 0 else "} else if"
        branches.append(
            f'        {keyword} #[cfg(feature = "{backend}")] {{\n'
            f'            println!("Backend: {BACKEND_TYPES[backend]}");\n'
            f"            burn::server::start_websocket::<burn::backend::{BACKEND_TYPES[backend]}>"
            f"(Default::default(), port);\n"
        )
    exclusive = ", ".join(f'feature = "{b}"' for b in BACKENDS)
    return (
        textwrap.dedent(
            f"""\
            #![recursion_limit = "141"]

            #[cfg(all({exclusive}))]
            compile_error!("backend features are mutually exclusive; use --no-default-features with a non-default backend");

            /// Start the Burn remote backend server.
            ///
            /// Listens on the port in `{port_env}`, defaulting to {port}.
            /// The backend is chosen at compile time by exactly one feature.
            pub fn start() {{
                let port = std::env::var("{port_env}")
                    .map(|port| match port.parse::<u16>() {{
                        Ok(val) => val,
                        Err(err) => panic!("Invalid port, got {{port}} with error {{err}}"),
                    }})
                    .unwrap_or({port});

                println!("Starting Burn Remote Backend Server on port {{}}...", port);

                cfg_if::cfg_if! {{
            """
        )
        + "".join(branches)
        + textwrap.dedent(
            """\
                    } else {
                        panic!("No backend selected, can't start server on port {port}");
                    }
                }
            }
            """
        )
    )


def render_start_script(settings: Settings) -> str:
    # No --features: cargo picks the default from Cargo.toml, edits included
    return textwrap.dedent(
        f"""\
        #!/bin/bash
        # Start the Burn Remote Backend Server
        # Usage: ./start-burn-server.sh [port]
        set -e

        export {settings.server.port_env}=${{1:-{settings.server.port}}}
        echo "Starting Burn Remote Backend Server on port ${settings.server.port_env}..."
        cd {settings.project_dir}
        exec cargo run --release
        """
    )


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


def serve(settings: Settings, port: str | None = None) -> None:
    """Build and run the default backend in the foreground.

    Same contract as the generated start script: optional port argument
    (else the port variable, else the configured port), exported as the port
    variable, then ``cargo run`` for the backend Cargo.toml defaults to.
    Replaces the current process, so it only returns by raising.
    """
    if port is None:
        resolved = resolve_port(os.environ, settings)
    else:
        resolved = parse_port(port, default=settings.server.port)
    if not (settings.project_dir / "Cargo.toml").exists():
        raise BurnboxError(
            f"No server project at {settings.project_dir}; run `burnbox render` first"
        )
    from burnbox.manifest import project_backend

    backend = project_backend(settings)
    argv = run_command(backend, backend)
    env = {**os.environ, **cache_env(settings), settings.server.port_env: str(resolved)}
    logger.info("Starting compute server", port=resolved, backend=backend)
    os.chdir(settings.project_dir)
    os.execvpe(argv[0], argv, env)
