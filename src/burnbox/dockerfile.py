"""Base layer selection: the Dockerfile that wraps ``burnbox provision``.

The image build is a single provisioning run on top of the GPU base image.
``RUSTC_WRAPPER`` is declared after that run so it never applies to the
build of sccache itself; the cache variables are declared before it so the
warm-up build and later containers agree on one cache directory.
"""

from __future__ import annotations

from pathlib import Path

from burnbox.cache import COMPILER_WRAPPER
from burnbox.config import Settings
from burnbox.logger import logger

SOURCE_DIR = "/opt/burnbox"


def _env_block(pairs: dict[str, str]) -> str:
    body = " \\\n    ".join(f'{k}="{v}"' for k, v in pairs.items())
    return f"ENV {body}"


def render_dockerfile(settings: Settings) -> str:
    s = settings
    tc = s.toolchain
    lines = [
        "# Burn remote development image, generated by burnbox",
        f"FROM {s.image.base}",
        "",
        'LABEL maintainer="Burn Remote Template"',
        'LABEL description="Burn GPU development environment with a Rust notebook kernel '
        'and a remote backend server"',
        "",
        _env_block(
            {
                "RUSTUP_HOME": tc.rustup_home,
                "CARGO_HOME": tc.cargo_home,
                "PATH": f"{s.cargo_bin}:${{PATH}}",
                "RUST_BACKTRACE": "1",
                s.server.port_env: str(s.server.port),
            }
        ),
        _env_block({"SCCACHE_DIR": s.cache.dir, "SCCACHE_CACHE_SIZE": s.cache.size}),
        "",
        f"COPY . {SOURCE_DIR}",
        f"RUN python3 -m pip install --no-cache-dir {SOURCE_DIR} \\",
        f"    && cd {SOURCE_DIR} && burnbox provision",
        "",
        _env_block({"RUSTC_WRAPPER": COMPILER_WRAPPER}),
        "",
        f"WORKDIR {s.workspace_root}",
        *(f"EXPOSE {port}" for port in s.image.expose),
        "",
        'CMD ["bash"]',
    ]
    return "\n".join(lines) + "\n"


def write_dockerfile(settings: Settings, path: Path) -> Path:
    path.write_text(render_dockerfile(settings))
    logger.info("Wrote Dockerfile", path=str(path), base=settings.image.base)
    return path
