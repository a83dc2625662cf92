"""Detached launch of the log generator and its startup check."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from soaklauncher.deadline import Deadline
from soaklauncher.errors import VerificationError
from soaklauncher.orchestration import RemoteExecutor
from soaklauncher.platforms import Platform
from soaklauncher.scripts import render_read_debug_log, render_start_workload
from soaklauncher.types import ExecutionResult, RunConfig, VMHandle

logger = logging.getLogger(__name__)

DEFAULT_VERIFY_DELAY = 5


class WorkloadLauncher:
    """Starts the workload so that it outlives the SSH session."""

    def __init__(
        self,
        executor: RemoteExecutor,
        verify_delay: float = DEFAULT_VERIFY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.executor = executor
        self.verify_delay = verify_delay
        self.sleep = sleep

    def launch(self, vm: VMHandle, config: RunConfig, deadline: Optional[Deadline] = None) -> ExecutionResult:
        """Fire the start script and return without waiting for the workload."""
        script = render_start_workload(config, vm.platform)
        logger.info(
            "Starting log generator on %s (%s records/sec, %s bytes each)",
            vm.name, config.log_rate, config.log_size_in_bytes,
        )
        return self.executor.fire_and_forget(vm, script, deadline=deadline)

    def verify(self, vm: VMHandle, config: RunConfig, deadline: Optional[Deadline] = None) -> Optional[str]:
        """
        Check that the workload started.

        On POSIX, waits ``verify_delay`` seconds and reads the generator's
        debug log, which must not be empty. Windows launches cannot capture
        output, so an accepted launch is the only signal and ``None`` is
        returned without further remote calls.

        Raises:
            VerificationError: If the debug log is empty.
        """
        if vm.platform is Platform.WINDOWS:
            logger.info("No debug log on Windows; relying on the accepted launch call")
            return None

        delay = self.verify_delay
        if deadline is not None:
            delay = deadline.clip(delay, "verification")
        self.sleep(delay)

        result = self.executor.execute(vm, render_read_debug_log(config, vm.platform), deadline=deadline)
        if not result.stdout.strip():
            raise VerificationError(f"Debug log {config.debug_log_path} on {vm.name} is empty")
        return result.stdout
