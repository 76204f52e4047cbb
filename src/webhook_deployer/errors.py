"""Exception taxonomy for the webhook deployer.

Every pipeline failure is a ``DeployError`` subclass so the orchestrator can
record it on the run result and keep serving. Only ``AuthenticationError``
is ever visible to a webhook caller, and only as an HTTP status.
"""

from __future__ import annotations


class DeployError(Exception):
    """Base class for all deployer errors."""


class AuthenticationError(DeployError):
    """Webhook caller presented a missing or wrong shared secret."""


class CommandError(DeployError):
    """An external command could not be spawned or did not finish in time."""


class SyncError(DeployError):
    """Pulling the repository failed."""


class BuildError(DeployError):
    """A dependency install or build step failed."""

    def __init__(self, step: str, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.step = step
        self.returncode = returncode


class SupervisionError(DeployError):
    """The application could not be launched."""


class PortLookupError(DeployError):
    """The socket table could not be queried for a port owner."""


class TerminationError(DeployError):
    """A process was found but could not be signalled."""
