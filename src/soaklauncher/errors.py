"""Error taxonomy for soak test orchestration."""
from __future__ import annotations

from typing import Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from soaklauncher.types import ExecutionResult


class SoakLauncherError(RuntimeError):
    """Base class for every error raised while orchestrating a soak run."""


class ConfigError(SoakLauncherError, ValueError):
    """Raised when a required run parameter is missing or malformed."""


class ProvisionError(SoakLauncherError):
    """Raised when the VM could not be created."""


class ProvisioningApiError(SoakLauncherError):
    """Raised when a provisioning API call fails."""


class UnsafeParameter(SoakLauncherError, ValueError):
    """Raised when a value cannot be safely embedded in a remote script."""


class ConfigRenderError(SoakLauncherError, ValueError):
    """Raised when the agent configuration cannot be rendered."""


class ExecutionError(SoakLauncherError):
    """Raised when a remote script could not be executed successfully."""

    retryable = False


class TransportError(ExecutionError):
    """Connection, authentication or channel-open failure. Eligible for retry."""

    retryable = True


class CommandInterrupted(ExecutionError):
    """The connection failed after the remote command had started."""


class CommandTimeout(CommandInterrupted):
    """The remote command did not finish within its timeout."""


class RemoteCommandError(ExecutionError):
    """The remote script ran and exited non-zero."""

    def __init__(self, message: str, result: Optional["ExecutionResult"] = None):
        super().__init__(message)
        self.result = result


class VerificationError(ExecutionError):
    """Raised when the workload did not show signs of starting."""


class DeadlineExceeded(SoakLauncherError, TimeoutError):
    """Raised when the overall run deadline elapses."""
