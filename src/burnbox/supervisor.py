"""Supervisor program declarations for the compute and notebook servers.

A program file has two persistent states, both visible on disk:

- enabled:  ``<conf_dir>/<name>.conf``: supervisor loads it and, with
  ``autostart=true``, launches it when the container starts.
- disabled: ``<conf_dir>/<name>.conf<suffix>``: still present, but
  supervisor only includes ``*.conf`` so it is ignored.

Switching state renames the file and never touches its contents, so enabling
a disabled program is ``rename`` + ``reload``.
"""

from __future__ import annotations

import re
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from burnbox.cache import cache_env
from burnbox.config import Settings
from burnbox.errors import ServiceError
from burnbox.logger import logger

NOTEBOOK_PROGRAM = "jupyter"
_SUPERVISORCTL_TIMEOUT = 60

ProgramState = Literal["enabled", "disabled", "absent"]

# %(ENV_X)s is supervisor's reference to its own environment; any other %
# would be read as the start of an expansion
_LITERAL_PERCENT = re.compile(r"%(?!\(ENV_\w+\)s)")


def _escape(value: object) -> str:
    return _LITERAL_PERCENT.sub("%%", str(value))


def _quote(value: str) -> str:
    escaped = _escape(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class ProgramSpec:
    name: str
    command: list[str]
    directory: Path
    stdout_logfile: Path
    stderr_logfile: Path
    environment: dict[str, str] = field(default_factory=dict)
    autostart: bool = True
    autorestart: bool = True
    enabled: bool = True  # which file name write_programs() uses

    def render(self) -> str:
        lines = [
            f"[program:{self.name}]",
            f"command={_escape(shlex.join(self.command))}",
            f"directory={_escape(self.directory)}",
            f"autostart={str(self.autostart).lower()}",
            f"autorestart={str(self.autorestart).lower()}",
            f"stderr_logfile={_escape(self.stderr_logfile)}",
            f"stdout_logfile={_escape(self.stdout_logfile)}",
        ]
        if self.environment:
            pairs = ",".join(f"{k}={_quote(v)}" for k, v in self.environment.items())
            lines.append(f"environment={pairs}")
        return "\n".join(lines) + "\n"


def server_program_name(settings: Settings) -> str:
    return settings.workspace.project


def program_specs(settings: Settings) -> dict[str, ProgramSpec]:
    """The two declared services, keyed by program name."""
    name = server_program_name(settings)
    log_dir = settings.log_dir
    server = ProgramSpec(
        name=name,
        command=[str(settings.project_dir / "target" / "release" / name)],
        directory=settings.project_dir,
        stdout_logfile=log_dir / f"{name}.out.log",
        stderr_logfile=log_dir / f"{name}.err.log",
        environment={settings.server.port_env: str(settings.server.port)},
        enabled=settings.server.autostart,
    )
    nb = settings.notebook
    notebook = ProgramSpec(
        name=NOTEBOOK_PROGRAM,
        command=[
            "jupyter",
            "notebook",
            f"--ip={nb.ip}",
            f"--port={nb.port}",
            "--no-browser",
            "--allow-root",
            "--NotebookApp.token=",
            "--NotebookApp.password=",
        ],
        directory=settings.workspace_root,
        stdout_logfile=log_dir / f"{NOTEBOOK_PROGRAM}.out.log",
        stderr_logfile=log_dir / f"{NOTEBOOK_PROGRAM}.err.log",
        # Cells compiled by the kernel share the image-wide cache
        environment={
            **cache_env(settings),
            "PATH": f"{settings.cargo_bin}:%(ENV_PATH)s",
        },
        enabled=nb.autostart,
    )
    return {server.name: server, notebook.name: notebook}


# ---------------------------------------------------------------------------
# Enabled / disabled state
# ---------------------------------------------------------------------------


def program_path(settings: Settings, name: str, *, enabled: bool = True) -> Path:
    path = settings.supervisor_conf_dir / f"{name}.conf"
    if enabled:
        return path
    return path.with_name(path.name + settings.supervisor.disabled_suffix)


def program_state(settings: Settings, name: str) -> ProgramState:
    on = program_path(settings, name, enabled=True).exists()
    off = program_path(settings, name, enabled=False).exists()
    if on and off:
        raise ServiceError(
            f"Program '{name}' has both an enabled and a disabled file in "
            f"{settings.supervisor_conf_dir}; remove one of them"
        )
    if on:
        return "enabled"
    if off:
        return "disabled"
    return "absent"


def write_programs(settings: Settings) -> list[Path]:
    """Write every program file.

    New programs land in the state their config asks for. Programs already on
    disk keep their current state (the user may have toggled it) and only get
    their contents refreshed.
    """
    settings.supervisor_conf_dir.mkdir(parents=True, exist_ok=True)
    written: list[Path] = []
    for spec in program_specs(settings).values():
        state = program_state(settings, spec.name)
        enabled = spec.enabled if state == "absent" else state == "enabled"
        path = program_path(settings, spec.name, enabled=enabled)
        content = spec.render()
        if not path.exists() or path.read_text() != content:
            path.write_text(content)
            logger.info("Wrote supervisor program", program=spec.name, path=str(path), enabled=enabled)
        written.append(path)
    return written


def _known(settings: Settings, name: str) -> None:
    if name not in program_specs(settings):
        known = ", ".join(program_specs(settings))
        raise ServiceError(f"Unknown program '{name}' (known: {known})")


def enable(settings: Settings, name: str) -> Path:
    """Rename the disabled file back to its active name. Idempotent."""
    _known(settings, name)
    state = program_state(settings, name)
    target = program_path(settings, name, enabled=True)
    if state == "absent":
        raise ServiceError(f"No program file for '{name}'; run `burnbox provision` first")
    if state == "disabled":
        program_path(settings, name, enabled=False).rename(target)
        logger.info("Enabled program", program=name, path=str(target))
    return target


def disable(settings: Settings, name: str) -> Path:
    """Rename the active file so supervisor ignores it. Idempotent."""
    _known(settings, name)
    state = program_state(settings, name)
    target = program_path(settings, name, enabled=False)
    if state == "absent":
        raise ServiceError(f"No program file for '{name}'; run `burnbox provision` first")
    if state == "enabled":
        program_path(settings, name, enabled=True).rename(target)
        logger.info("Disabled program", program=name, path=str(target))
    return target


# ---------------------------------------------------------------------------
# supervisorctl
# ---------------------------------------------------------------------------


def _supervisorctl(*args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    try:
        result = subprocess.run(
            ["supervisorctl", *args],
            capture_output=True,
            text=True,
            timeout=_SUPERVISORCTL_TIMEOUT,
        )
    except FileNotFoundError as exc:
        raise ServiceError("supervisorctl not found on PATH") from exc
    if check and result.returncode != 0:
        raise ServiceError(
            f"supervisorctl {' '.join(args)} failed: {(result.stderr or result.stdout).strip()}"
        )
    return result


def status(name: str | None = None) -> str:
    # Non-zero exit just means some program is not RUNNING
    result = _supervisorctl("status", *([name] if name else []), check=False)
    return result.stdout


def restart(settings: Settings, name: str) -> None:
    _known(settings, name)
    _supervisorctl("restart", name)
    logger.info("Restarted program", program=name)


def reload() -> str:
    """Pick up added, removed or renamed program files."""
    _supervisorctl("reread")
    result = _supervisorctl("update")
    logger.info("Supervisor configuration reloaded", output=result.stdout.strip())
    return result.stdout


def log_paths(settings: Settings, name: str) -> tuple[Path, Path]:
    _known(settings, name)
    spec = program_specs(settings)[name]
    return spec.stdout_logfile, spec.stderr_logfile


def tail_command(settings: Settings, name: str, *, follow: bool = True) -> list[str]:
    out, err = log_paths(settings, name)
    return ["tail", *(["-f"] if follow else []), str(out), str(err)]
