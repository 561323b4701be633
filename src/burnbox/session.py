"""Interactive login integration: attach a zellij session on interactive shells.

The base image starts tmux on login unless ``~/.no_auto_tmux`` exists. We
opt out of that and append our own hook to ``~/.bashrc``. The hook must stay
silent for non-interactive shells (``ssh host cmd``, provisioning scripts),
otherwise every automated command would end up inside a multiplexer.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path

from burnbox.config import Settings
from burnbox.logger import logger

MULTIPLEXER = "zellij"
SESSION_ENV = "ZELLIJ"  # set by zellij inside its panes

HOOK_BEGIN = "# >>> burnbox zellij auto-attach >>>"
HOOK_END = "# <<< burnbox zellij auto-attach <<<"


def should_attach(environ: Mapping[str, str], *, interactive: bool, multiplexer_present: bool) -> bool:
    """Python mirror of the login hook's guard."""
    return not environ.get(SESSION_ENV) and multiplexer_present and interactive


def render_login_hook(session_name: str) -> str:
    return (
        f"{HOOK_BEGIN}\n"
        "# Auto-start zellij on interactive login\n"
        f'if [ -z "${SESSION_ENV}" ] && command -v {MULTIPLEXER} &> /dev/null && [[ $- == *i* ]]; then\n'
        f"    exec {MULTIPLEXER} attach -c {session_name}\n"
        "fi\n"
        f"{HOOK_END}\n"
    )


def install_login_hook(settings: Settings) -> bool:
    """Disable the base image's auto-tmux and append the hook once.

    Returns True when ``.bashrc`` was modified.
    """
    marker: Path = settings.no_auto_tmux_path
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.touch()

    bashrc = settings.bashrc_path
    existing = bashrc.read_text() if bashrc.exists() else ""
    if HOOK_BEGIN in existing:
        logger.debug("Login hook already installed", path=str(bashrc))
        return False
    separator = "" if not existing or existing.endswith("\n") else "\n"
    with bashrc.open("a") as f:
        f.write(f"{separator}\n{render_login_hook(settings.session.session_name)}")
    logger.info("Installed zellij login hook", path=str(bashrc))
    return True
