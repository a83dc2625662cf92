"""End-to-end soak run: provision, install, upload, launch, verify."""
from __future__ import annotations

import logging
import time
from contextlib import ExitStack
from dataclasses import dataclass
from time import perf_counter
from typing import Callable, Optional

from soaklauncher.deadline import Deadline
from soaklauncher.errors import DeadlineExceeded, SoakLauncherError
from soaklauncher.keys import cleanup_keys
from soaklauncher.launcher import WorkloadLauncher
from soaklauncher.lifecycle import VMLifecycleManager
from soaklauncher.orchestration import RemoteExecutor, remote_command
from soaklauncher.platforms import Platform, classify_platform
from soaklauncher.scripts import (
    DEFAULT_PYTHON_INSTALLER_URL,
    render_install_agent,
    render_install_interpreter,
    render_start_workload,
    render_upload,
)
from soaklauncher.types import RUN_SEQUENCE, RemoteScript, RunConfig, RunOutcome, RunState
from soaklauncher.workload import load_log_generator

logger = logging.getLogger(__name__)

DEFAULT_RUN_TIMEOUT = 60 * 60


@dataclass(frozen=True, slots=True)
class RenderedScripts:
    install_agent: RemoteScript
    install_interpreter: RemoteScript


def prepare_scripts(config: RunConfig, workload: bytes, installer_url: str = DEFAULT_PYTHON_INSTALLER_URL) -> RenderedScripts:
    """
    Render every stage's script before anything remote happens.

    Raises:
        UnsafeParameter: If a value cannot be embedded safely.
        ConfigRenderError: If the agent configuration cannot be rendered.
    """
    platform = classify_platform(config.platform)
    scripts = RenderedScripts(
        install_agent=render_install_agent(config, platform),
        install_interpreter=render_install_interpreter(platform, installer_url),
    )
    # Validated here, rendered again when the stage runs.
    staged = [scripts.install_agent, scripts.install_interpreter, render_start_workload(config, platform)]
    staged.extend(render_upload(workload, config.generator_path, platform))
    for script in staged:
        remote_command(script)
    return scripts


class RunController:
    """
    Drives one soak run through its states.

    The run moves strictly forward through ``RUN_SEQUENCE``. The first error
    ends it in ``Failed`` tagged with the state it was trying to enter, and
    no later stage runs. SSH key material is released on every exit path.
    """

    def __init__(
        self,
        lifecycle: VMLifecycleManager,
        executor: RemoteExecutor,
        launcher: WorkloadLauncher,
        run_timeout: float = DEFAULT_RUN_TIMEOUT,
        installer_url: str = DEFAULT_PYTHON_INSTALLER_URL,
        workload: Optional[bytes] = None,
        cleanup: Callable[[], None] = cleanup_keys,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if run_timeout <= 0:
            raise ValueError("run_timeout must be positive")
        self.lifecycle = lifecycle
        self.executor = executor
        self.launcher = launcher
        self.run_timeout = run_timeout
        self.installer_url = installer_url
        self.workload = workload
        self.cleanup = cleanup
        self.clock = clock

    @staticmethod
    def _advance(outcome: RunOutcome, target: RunState) -> None:
        expected = RUN_SEQUENCE[RUN_SEQUENCE.index(outcome.state) + 1]
        if target is not expected:
            raise RuntimeError(f"Illegal transition {outcome.state.value} -> {target.value}")
        outcome.state = target
        outcome.history.append(target)
        logger.info("Run state: %s", target.value)

    @staticmethod
    def _fail(outcome: RunOutcome, target: RunState, error: BaseException, timed_out: bool = False) -> None:
        outcome.failed_stage = target
        outcome.error = error
        outcome.timed_out = timed_out
        outcome.state = RunState.FAILED
        outcome.history.append(RunState.FAILED)

    def run(self, config: RunConfig) -> RunOutcome:
        """Run the whole sequence once and return how it ended."""
        outcome = RunOutcome()
        start = perf_counter()

        with ExitStack() as stack:
            stack.callback(self.cleanup)
            deadline = Deadline(self.run_timeout, clock=self.clock)
            target = RunState.CREATED
            try:
                workload = self.workload if self.workload is not None else load_log_generator()
                scripts = prepare_scripts(config, workload, self.installer_url)

                target = RunState.PROVISIONED
                deadline.check(target.value)
                vm = self.lifecycle.provision(config, ready_timeout=deadline.clip(self.lifecycle.ready_timeout))
                outcome.vm = vm
                self.executor.wait_until_reachable(vm, deadline=deadline)
                self._advance(outcome, target)

                target = RunState.AGENT_INSTALLED
                logger.info("Installing agent on %s...", vm.name)
                self.executor.execute(vm, scripts.install_agent, deadline=deadline)
                self._advance(outcome, target)

                target = RunState.INTERPRETER_READY
                logger.info("Installing Python on %s...", vm.name)
                self.executor.execute(vm, scripts.install_interpreter, deadline=deadline)
                self._advance(outcome, target)

                target = RunState.CONTENT_UPLOADED
                self.executor.upload(vm, workload, config.generator_path, deadline=deadline)
                self._advance(outcome, target)

                target = RunState.WORKLOAD_LAUNCHED
                self.launcher.launch(vm, config, deadline=deadline)
                self._advance(outcome, target)

                target = RunState.VERIFIED
                outcome.debug_log = self.launcher.verify(vm, config, deadline=deadline)
                self._advance(outcome, target)
            except DeadlineExceeded as e:
                logger.error("Run timed out while entering %s: %s", target.value, e)
                self._fail(outcome, target, e, timed_out=True)
            except SoakLauncherError as e:
                logger.error("Run failed while entering %s: %s", target.value, e)
                self._fail(outcome, target, e)

        outcome.duration_seconds = perf_counter() - start
        if outcome.succeeded:
            if outcome.vm is not None and outcome.vm.platform is Platform.WINDOWS:
                logger.info("Log generator launched on %s; no debug log is available on Windows", outcome.vm.name)
            else:
                logger.info("Log generator debug log:\n%s", outcome.debug_log)
            logger.info("VM %s left running until %s", outcome.vm.name, outcome.vm.expires_at.isoformat())
        return outcome
