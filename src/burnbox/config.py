"""Centralized configuration: Pydantic BaseSettings with TOML + dotenv sources.

Provisioning defaults live in burnbox.toml next to where ``burnbox`` runs
(normally the image build context). Environment variables override it using
``__`` as the nested delimiter (e.g. ``SERVER__AUTOSTART=false``).

Priority (highest wins): init args > env vars > .env > burnbox.toml

The compiler-cache tool reads ``SCCACHE_DIR`` and ``SCCACHE_CACHE_SIZE`` on its
own; when those are set they also win over the ``[cache]`` section so the
directory we create is the one the tool will use.

Usage::

    from burnbox.config import get_settings

    s = get_settings()
    print(s.project_dir)
    print(s.server.port)
"""

from __future__ import annotations

import os
import re
from functools import cached_property
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from burnbox.logger import LEVELS

Backend = Literal["cuda", "wgpu"]

DEFAULT_PORT = 3000
_SIZE_RE = re.compile(r"^\d+[KMGT]?$")

# ---------------------------------------------------------------------------
# Sub-models (each maps to a [section] in burnbox.toml)
# ---------------------------------------------------------------------------


class _StrictModel(BaseModel):
    """Base for all config sub-models; reject unknown keys so typos fail loudly."""

    model_config = {"extra": "forbid"}


def _check_port(v: int) -> int:
    if not 0 <= v <= 65535:
        raise ValueError(f"port must be within 0-65535, got {v}")
    return v


class ImageConfig(_StrictModel):
    base: str = "vastai/base-image:cuda-13.1.0-auto"
    apt_packages: list[str] = [
        "build-essential",
        "pkg-config",
        "cmake",
        "libssl-dev",
        "ca-certificates",
        "git",
        "curl",
        "wget",
        "libzmq3-dev",  # evcxr kernel transport
        "btop",
    ]
    expose: list[int] = [3000, 8888]


class ToolchainConfig(_StrictModel):
    rustup_home: str = "/opt/rustup"
    cargo_home: str = "/opt/cargo"
    channel: str = "stable"
    profile: str = "default"
    components: list[str] = ["rust-src", "rustfmt", "clippy", "rust-analyzer"]
    tools: list[str] = ["sccache", "just", "zellij"]  # prebuilt via cargo-binstall
    kernel_package: str = "evcxr_jupyter"


class CacheConfig(_StrictModel):
    dir: str = "/workspace/.sccache"
    size: str = "10G"

    @field_validator("size")
    @classmethod
    def validate_size(cls, v: str) -> str:
        v = v.strip().upper()
        if not _SIZE_RE.match(v):
            raise ValueError(f"cache size must look like 10G or 512M, got {v!r}")
        return v


class WorkspaceConfig(_StrictModel):
    root: str = "/workspace"
    project: str = "burn-server"
    burn_version: str = "0.20"
    default_backend: Backend = "cuda"
    warm_build: bool = True


class ServerConfig(_StrictModel):
    port: int = DEFAULT_PORT
    port_env: str = "REMOTE_BACKEND_PORT"
    autostart: bool = True

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)


class NotebookConfig(_StrictModel):
    port: int = 8888
    ip: str = "0.0.0.0"
    autostart: bool = True

    @field_validator("port")
    @classmethod
    def validate_port(cls, v: int) -> int:
        return _check_port(v)


class SupervisorConfig(_StrictModel):
    conf_dir: str = "/etc/supervisor/conf.d"
    log_dir: str = "/var/log"
    disabled_suffix: str = ".disabled"

    @field_validator("disabled_suffix")
    @classmethod
    def require_suffix(cls, v: str) -> str:
        # supervisor only includes *.conf, so the suffix must change the extension
        if not v or v.endswith(".conf"):
            raise ValueError("disabled_suffix must be non-empty and not end with .conf")
        return v


class SessionConfig(_StrictModel):
    home: str = "/root"
    session_name: str = "main"


class LoggingConfig(_StrictModel):
    level: str | None = None  # None keeps LOG_LEVEL (default INFO)
    format: Literal["auto", "console", "logfmt", "json"] = "auto"

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.upper()
        if v not in LEVELS:
            raise ValueError(f"log level must be one of {', '.join(LEVELS)}, got {v!r}")
        return v


# ---------------------------------------------------------------------------
# Root Settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        toml_file="burnbox.toml",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    image: ImageConfig = ImageConfig()
    toolchain: ToolchainConfig = ToolchainConfig()
    cache: CacheConfig = CacheConfig()
    workspace: WorkspaceConfig = WorkspaceConfig()
    server: ServerConfig = ServerConfig()
    notebook: NotebookConfig = NotebookConfig()
    supervisor: SupervisorConfig = SupervisorConfig()
    session: SessionConfig = SessionConfig()
    logging: LoggingConfig = LoggingConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Priority: init > env vars > .env > burnbox.toml > file secrets."""
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )

    # --- Computed properties ---

    @cached_property
    def workspace_root(self) -> Path:
        return Path(self.workspace.root)

    @cached_property
    def project_dir(self) -> Path:
        return self.workspace_root / self.workspace.project

    @cached_property
    def src_dir(self) -> Path:
        return self.project_dir / "src"

    @cached_property
    def notebooks_dir(self) -> Path:
        return self.workspace_root / "notebooks"

    @cached_property
    def start_script_path(self) -> Path:
        return self.workspace_root / "start-burn-server.sh"

    @cached_property
    def readme_path(self) -> Path:
        return self.workspace_root / "README.md"

    @cached_property
    def cache_dir(self) -> Path:
        return Path(os.environ.get("SCCACHE_DIR") or self.cache.dir)

    @cached_property
    def cache_size(self) -> str:
        size = os.environ.get("SCCACHE_CACHE_SIZE")
        return CacheConfig(size=size).size if size else self.cache.size

    @cached_property
    def cargo_bin(self) -> Path:
        return Path(self.toolchain.cargo_home) / "bin"

    @cached_property
    def supervisor_conf_dir(self) -> Path:
        return Path(self.supervisor.conf_dir)

    @cached_property
    def log_dir(self) -> Path:
        return Path(self.supervisor.log_dir)

    @cached_property
    def home_dir(self) -> Path:
        return Path(self.session.home)

    @cached_property
    def zellij_config_path(self) -> Path:
        return self.home_dir / ".config" / "zellij" / "config.kdl"

    @cached_property
    def bashrc_path(self) -> Path:
        return self.home_dir / ".bashrc"

    @cached_property
    def no_auto_tmux_path(self) -> Path:
        """Marker the base image's login script checks before starting tmux."""
        return self.home_dir / ".no_auto_tmux"


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_settings: Settings | None = None


def get_settings() -> Settings:
    """Lazy cached singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Clear the cached singleton (for tests)."""
    global _settings
    _settings = None
