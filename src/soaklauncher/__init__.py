"""Remote VM orchestration for long-running agent soak tests."""

from soaklauncher.api import Instance, ProvisioningClient
from soaklauncher.config import Settings, load_run_config, load_settings, parse_duration
from soaklauncher.controller import RunController
from soaklauncher.deadline import Deadline
from soaklauncher.errors import (
    CommandInterrupted,
    CommandTimeout,
    ConfigError,
    ConfigRenderError,
    DeadlineExceeded,
    ExecutionError,
    ProvisionError,
    RemoteCommandError,
    SoakLauncherError,
    TransportError,
    UnsafeParameter,
    VerificationError,
)
from soaklauncher.keys import KeyManager, cleanup_keys, get_key_manager
from soaklauncher.launcher import WorkloadLauncher
from soaklauncher.lifecycle import VMLifecycleManager
from soaklauncher.orchestration import RemoteExecutor
from soaklauncher.platforms import Platform, classify_platform
from soaklauncher.ssh import SSHClient
from soaklauncher.types import ExecutionResult, RemoteScript, RunConfig, RunOutcome, RunState, Stage, VMHandle

__all__ = [
    "ProvisioningClient",
    "Instance",
    "Settings",
    "load_run_config",
    "load_settings",
    "parse_duration",
    "RunController",
    "Deadline",
    "SoakLauncherError",
    "CommandInterrupted",
    "CommandTimeout",
    "ConfigError",
    "ConfigRenderError",
    "DeadlineExceeded",
    "ExecutionError",
    "ProvisionError",
    "RemoteCommandError",
    "TransportError",
    "UnsafeParameter",
    "VerificationError",
    "KeyManager",
    "get_key_manager",
    "cleanup_keys",
    "WorkloadLauncher",
    "VMLifecycleManager",
    "RemoteExecutor",
    "Platform",
    "classify_platform",
    "SSHClient",
    "ExecutionResult",
    "RemoteScript",
    "RunConfig",
    "RunOutcome",
    "RunState",
    "Stage",
    "VMHandle",
]
