"""Type definitions for soak test orchestration."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from soaklauncher.platforms import Platform

DEFAULT_MACHINE_TYPE = "e2-standard-16"
DEFAULT_DISK_SIZE_GB = 4000
DEFAULT_LOG_PATH = "/tmp/tail_file"
DEFAULT_GENERATOR_PATH = "/log_generator.py"
DEFAULT_DEBUG_LOG_PATH = "/tmp/log_generator.log"


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Immutable parameters of one soak run."""

    platform: str
    log_rate: int
    log_size_in_bytes: int
    ttl: timedelta
    vm_name: Optional[str] = None
    machine_type: str = DEFAULT_MACHINE_TYPE
    disk_size_gb: int = DEFAULT_DISK_SIZE_GB
    log_path: str = DEFAULT_LOG_PATH
    generator_path: str = DEFAULT_GENERATOR_PATH
    debug_log_path: str = DEFAULT_DEBUG_LOG_PATH


@dataclass(frozen=True, slots=True)
class VMHandle:
    """A provisioned, running VM reachable over SSH."""

    instance_id: str
    name: str
    platform: Platform
    host: str
    port: int
    username: str
    expires_at: datetime


class Stage(str, Enum):
    INSTALL_AGENT_CONFIG = "install-agent-config"
    INSTALL_INTERPRETER = "install-interpreter"
    UPLOAD_CONTENT = "upload-content"
    START_WORKLOAD = "start-workload"
    VERIFY = "verify"
    READY_CHECK = "ready-check"


@dataclass(frozen=True, slots=True)
class RemoteScript:
    """Rendered script text for one stage on one platform."""

    stage: Stage
    platform: Platform
    text: str


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of a single remote execution."""

    stdout: str
    stderr: str
    exit_code: int
    detached: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RunState(str, Enum):
    CREATED = "Created"
    PROVISIONED = "Provisioned"
    AGENT_INSTALLED = "AgentInstalled"
    INTERPRETER_READY = "InterpreterReady"
    CONTENT_UPLOADED = "ContentUploaded"
    WORKLOAD_LAUNCHED = "WorkloadLaunched"
    VERIFIED = "Verified"
    FAILED = "Failed"


# Order in which a successful run walks through the states.
RUN_SEQUENCE = (
    RunState.CREATED,
    RunState.PROVISIONED,
    RunState.AGENT_INSTALLED,
    RunState.INTERPRETER_READY,
    RunState.CONTENT_UPLOADED,
    RunState.WORKLOAD_LAUNCHED,
    RunState.VERIFIED,
)


@dataclass(slots=True)
class RunOutcome:
    """Terminal result of a run, with the path taken through the state machine."""

    state: RunState = RunState.CREATED
    history: List[RunState] = field(default_factory=lambda: [RunState.CREATED])
    failed_stage: Optional[RunState] = None
    error: Optional[BaseException] = None
    timed_out: bool = False
    debug_log: Optional[str] = None
    vm: Optional[VMHandle] = None
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.VERIFIED

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def describe(self) -> str:
        if self.succeeded:
            return "Soak test started successfully"
        if self.timed_out:
            return f"Failed(timeout) while entering {self.failed_stage.value}: {self.error}"
        stage = self.failed_stage.value if self.failed_stage else "unknown"
        return f"Failed(stage={stage}): {self.error}"
