"""Host-side recipes for building and running the image with docker compose.

Recipes run from a checkout of this project, next to ``compose.yaml``. The
compose file builds from a generated ``Dockerfile``; recipes that may build
write it first when it is missing.
"""

from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from burnbox.config import Settings
from burnbox.dockerfile import write_dockerfile
from burnbox.logger import logger

COMPOSE_FILE = "compose.yaml"
SERVICE = "burn-remote"
SERVER_SERVICE = "burn-server"
SERVER_ONLY_PROFILE = "server-only"
CLIENT_MANIFEST = "examples/remote-client/Cargo.toml"


@dataclass(frozen=True)
class Recipe:
    argv: tuple[str, ...]
    takes_args: bool = False
    services: tuple[str, ...] = ()  # appended after extra args
    builds: bool = False


_COMPOSE = ("docker", "compose")

RECIPES: dict[str, Recipe] = {
    "build": Recipe((*_COMPOSE, "build"), builds=True),
    "up": Recipe((*_COMPOSE, "up"), takes_args=True, builds=True),
    "up-d": Recipe((*_COMPOSE, "up", "-d"), builds=True),
    "server": Recipe(
        (*_COMPOSE, "--profile", SERVER_ONLY_PROFILE, "up"),
        takes_args=True,
        services=(SERVER_SERVICE,),
        builds=True,
    ),
    "down": Recipe((*_COMPOSE, "down")),
    "logs": Recipe((*_COMPOSE, "logs"), takes_args=True),
    "shell": Recipe((*_COMPOSE, "exec", SERVICE, "bash")),
    "restart": Recipe((*_COMPOSE, "restart")),
    "rebuild": Recipe((*_COMPOSE, "up", "--build"), builds=True),
    "run-client": Recipe(("cargo", "run", "--manifest-path", CLIENT_MANIFEST)),
    "clean": Recipe((*_COMPOSE, "down", "-v", "--rmi", "local")),
}


def compose_argv(recipe: str, extra: Sequence[str] = ()) -> list[str]:
    if recipe not in RECIPES:
        raise ValueError(f"Unknown recipe '{recipe}' (known: {', '.join(RECIPES)})")
    spec = RECIPES[recipe]
    if extra and not spec.takes_args:
        raise ValueError(f"Recipe '{recipe}' takes no extra arguments")
    return [*spec.argv, *extra, *spec.services]


def ensure_dockerfile(settings: Settings, root: Path) -> bool:
    """Generate ``root/Dockerfile`` unless one exists. Returns True if written."""
    path = root / "Dockerfile"
    if path.exists():
        logger.debug("Keeping existing Dockerfile", path=str(path))
        return False
    write_dockerfile(settings, path)
    return True


def run_recipe(
    recipe: str,
    extra: Sequence[str] = (),
    *,
    settings: Settings | None = None,
    root: Path | None = None,
) -> int:
    argv = compose_argv(recipe, extra)
    if RECIPES[recipe].builds and settings is not None:
        ensure_dockerfile(settings, root or Path.cwd())
    logger.info("Running host recipe", recipe=recipe, command=" ".join(argv))
    return subprocess.run(argv, cwd=str(root) if root else None).returncode
