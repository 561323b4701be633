"""Entry point for `python -m burnbox` / `burnbox`.

Subcommands:
    burnbox provision           Run every provisioning stage (image build)
    burnbox dockerfile          Print or write the image Dockerfile
    burnbox render              Materialize the workspace files only
    burnbox serve [port]        Build and run the compute server in the foreground
    burnbox service ...         Inspect and toggle supervisor programs
    burnbox cache-stats         Show compiler cache counters
    burnbox host <recipe>       docker compose recipes for the host
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from burnbox.errors import BurnboxError

SERVICE_ACTIONS = ("status", "enable", "disable", "restart", "reload", "logs")


def _configure_logging() -> None:
    from burnbox.config import get_settings
    from burnbox.logger import configure_logging

    cfg = get_settings().logging
    configure_logging(cfg.level, cfg.format)


def _provision(skip_warm_build: bool) -> None:
    from burnbox.config import get_settings
    from burnbox.provision import provision

    provision(get_settings(), warm=False if skip_warm_build else None)


def _dockerfile(output: str | None) -> None:
    from burnbox.config import get_settings
    from burnbox.dockerfile import render_dockerfile, write_dockerfile

    if output:
        write_dockerfile(get_settings(), Path(output))
    else:
        sys.stdout.write(render_dockerfile(get_settings()))


def _render(force: bool) -> None:
    from burnbox.config import get_settings
    from burnbox.workspace import materialize

    for path in materialize(get_settings(), force=force):
        print(path)


def _serve(port: str | None) -> None:
    from burnbox.config import get_settings
    from burnbox.server import serve

    serve(get_settings(), port)


def _service(action: str, name: str | None) -> None:
    from burnbox import supervisor
    from burnbox.config import get_settings

    s = get_settings()
    if action in ("enable", "disable", "restart", "logs") and not name:
        raise BurnboxError(f"`service {action}` needs a program name")

    match action:
        case "status":
            sys.stdout.write(supervisor.status(name))
        case "enable":
            print(supervisor.enable(s, name))
            print("Run `burnbox service reload` to apply.")
        case "disable":
            print(supervisor.disable(s, name))
            print("Run `burnbox service reload` to apply.")
        case "restart":
            supervisor.restart(s, name)
        case "reload":
            sys.stdout.write(supervisor.reload())
        case "logs":
            argv = supervisor.tail_command(s, name)
            os.execvp(argv[0], argv)


def _cache_stats() -> None:
    from burnbox.cache import show_stats
    from burnbox.config import get_settings

    stats = show_stats(get_settings())
    print(f"Compile requests: {stats.compile_requests}")
    print(f"Cache hits:       {stats.hits}")
    print(f"Cache misses:     {stats.misses}")
    print(f"Cache size:       {stats.cache_size} / {stats.max_cache_size} bytes")


def _host(recipe: str, extra: list[str]) -> None:
    from burnbox.compose import run_recipe
    from burnbox.config import get_settings

    try:
        code = run_recipe(recipe, extra, settings=get_settings())
    except ValueError as exc:
        raise BurnboxError(str(exc)) from exc
    sys.exit(code)


def build_parser() -> argparse.ArgumentParser:
    from burnbox.compose import RECIPES

    parser = argparse.ArgumentParser(
        prog="burnbox",
        description="Provision and operate a Burn GPU development image",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("provision", help="Run every provisioning stage")
    p.add_argument(
        "--skip-warm-build",
        action="store_true",
        help="Do not compile the server to warm the compiler cache",
    )

    p = sub.add_parser("dockerfile", help="Print the image Dockerfile")
    p.add_argument("-o", "--output", help="Write to this path instead of stdout")

    p = sub.add_parser("render", help="Write the workspace files without building")
    p.add_argument("--force", action="store_true", help="Overwrite files that already exist")

    p = sub.add_parser("serve", help="Build and run the compute server")
    p.add_argument("port", nargs="?", help="Listen port (default: 3000)")

    p = sub.add_parser("service", help="Manage supervisor programs")
    p.add_argument("action", choices=SERVICE_ACTIONS)
    p.add_argument("name", nargs="?", help="Program name")

    sub.add_parser("cache-stats", help="Show compiler cache counters")

    p = sub.add_parser("host", help="Run a docker compose recipe on the host")
    p.add_argument("recipe", choices=sorted(RECIPES))
    p.add_argument("extra", nargs=argparse.REMAINDER, help="Extra arguments for the recipe")

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)

    try:
        _configure_logging()
        match args.command:
            case "provision":
                _provision(args.skip_warm_build)
            case "dockerfile":
                _dockerfile(args.output)
            case "render":
                _render(args.force)
            case "serve":
                _serve(args.port)
            case "service":
                _service(args.action, args.name)
            case "cache-stats":
                _cache_stats()
            case "host":
                _host(args.recipe, args.extra)
    except BurnboxError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
