"""End-to-end provisioning, strictly in stage order.

Stages: toolchain, workspace, cache warm-up, services, login hook. Each
stage reads what the previous one left on disk or in the environment, so nothing
runs concurrently and the first ProvisionError aborts the rest.
"""

from __future__ import annotations

from burnbox.config import Settings
from burnbox.logger import logger
from burnbox.session import install_login_hook
from burnbox.supervisor import write_programs
from burnbox.toolchain import ProvisionContext, bootstrap
from burnbox.workspace import materialize, warm_build


def provision(
    settings: Settings,
    *,
    warm: bool | None = None,
    ctx: ProvisionContext | None = None,
) -> ProvisionContext:
    """Run every stage. ``warm`` overrides ``workspace.warm_build``."""
    ctx = bootstrap(settings, ctx)
    materialize(settings)
    if settings.workspace.warm_build if warm is None else warm:
        warm_build(settings, env=ctx.env)
    else:
        logger.info("Skipping cache warm-up build")
    write_programs(settings)
    install_login_hook(settings)
    logger.info("Provisioning complete", workspace=str(settings.workspace_root))
    return ctx
