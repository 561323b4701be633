"""Exception hierarchy.

Build-time failures abort provisioning, start-time failures abort the
server process before it binds. Nothing here retries; restarts of running
services are the supervisor's business.
"""

from __future__ import annotations


class BurnboxError(Exception):
    """Base class for every error the CLI reports without a traceback."""


class ProvisionError(BurnboxError):
    """A provisioning step failed. The image build must abort."""

    def __init__(self, step: str, message: str, *, returncode: int | None = None, stderr: str = ""):
        self.step = step
        self.returncode = returncode
        self.stderr = stderr
        detail = f"[{step}] {message}"
        if returncode is not None:
            detail += f" (exit code {returncode})"
        if stderr.strip():
            detail += f"\nstderr:\n{stderr.rstrip()}"
        super().__init__(detail)


class PortError(BurnboxError):
    """Listen port value is present but is not an unsigned 16-bit integer."""


class BackendSelectionError(BurnboxError):
    """Zero or more than one compute backend was selected."""


class ServiceError(BurnboxError):
    """Supervisor operation on an unknown program or a missing unit file."""
