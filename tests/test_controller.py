from dataclasses import replace
from unittest.mock import MagicMock

import pytest

from conftest import FakeSSH, make_vm
from soaklauncher.controller import RunController, prepare_scripts
from soaklauncher.errors import CommandTimeout, ProvisionError, RemoteCommandError, TransportError, UnsafeParameter
from soaklauncher.launcher import WorkloadLauncher
from soaklauncher.orchestration import RemoteExecutor
from soaklauncher.platforms import Platform
from soaklauncher.ssh import WINDOWS_COMMAND_LINE_LIMIT
from soaklauncher.types import RUN_SEQUENCE, RunState
from soaklauncher.workload import load_log_generator

WORKLOAD = b"print('generating logs')\n"
DEBUG_LOG = "2030-01-01 00:00:00 [INFO] log_generator starting\n"


def posix_handler(command):
    if command.startswith("cat "):
        return 0, DEBUG_LOG, ""
    return 0, "", ""


def build(fake, vm=None, run_timeout=3600, clock=None, provision_error=None, workload=WORKLOAD):
    lifecycle = MagicMock()
    lifecycle.ready_timeout = 600
    if provision_error is not None:
        lifecycle.provision.side_effect = provision_error
    else:
        lifecycle.provision.return_value = vm or make_vm()

    executor = RemoteExecutor(password="x", client_factory=fake.factory, sleep=lambda s: None)
    launcher = WorkloadLauncher(executor, verify_delay=5, sleep=lambda s: None)
    cleanup = MagicMock()
    kwargs = {"clock": clock} if clock else {}
    controller = RunController(
        lifecycle=lifecycle,
        executor=executor,
        launcher=launcher,
        run_timeout=run_timeout,
        workload=workload,
        cleanup=cleanup,
        **kwargs,
    )
    return controller, lifecycle, cleanup


def test_posix_run_succeeds(run_config):
    fake = FakeSSH(posix_handler)
    controller, lifecycle, cleanup = build(fake)

    outcome = controller.run(run_config)

    assert outcome.state is RunState.VERIFIED
    assert outcome.exit_code == 0
    assert outcome.history == list(RUN_SEQUENCE)
    assert outcome.debug_log == DEBUG_LOG
    lifecycle.provision.assert_called_once()
    cleanup.assert_called_once_with()


def test_posix_run_executes_stages_in_order(run_config):
    fake = FakeSSH(posix_handler)
    controller, _, _ = build(fake)

    controller.run(run_config)

    assert fake.commands[0] == "echo ready\n"
    assert "google-cloud-ops-agent" in fake.commands[1]
    assert "python3 --version" in fake.commands[2]
    assert 'sudo tee "/log_generator.py"' in fake.commands[3]
    assert fake.commands[4] == 'cat "/tmp/log_generator.log"\n'
    assert len(fake.detached) == 1
    assert '--log-rate="500"' in fake.detached[0]
    assert '--log-size-in-bytes="2000"' in fake.detached[0]


def test_windows_run_succeeds_without_debug_log(windows_config):
    fake = FakeSSH()
    controller, _, cleanup = build(fake, vm=make_vm(Platform.WINDOWS))

    outcome = controller.run(windows_config)

    assert outcome.succeeded
    assert outcome.debug_log is None
    assert len(fake.detached) == 1
    assert all(command.startswith("powershell ") for command in fake.commands + fake.detached)
    cleanup.assert_called_once_with()


def test_windows_run_with_bundled_generator_fits_command_line(windows_config):
    fake = FakeSSH()
    controller, _, _ = build(fake, vm=make_vm(Platform.WINDOWS), workload=load_log_generator())

    outcome = controller.run(windows_config)

    assert outcome.succeeded
    assert all(len(command) <= WINDOWS_COMMAND_LINE_LIMIT for command in fake.commands + fake.detached)


def test_interpreter_install_timeout_is_not_retried(run_config):
    def handler(command):
        if "python3 --version" in command:
            raise CommandTimeout("did not finish within 600s")
        return posix_handler(command)

    fake = FakeSSH(handler)
    controller, _, _ = build(fake)
    outcome = controller.run(run_config)

    assert outcome.failed_stage is RunState.INTERPRETER_READY
    assert not outcome.timed_out
    assert isinstance(outcome.error, CommandTimeout)
    assert sum("python3 --version" in c for c in fake.commands) == 1


def test_provision_failure_skips_remote_calls(run_config):
    fake = FakeSSH()
    error = ProvisionError("quota exceeded")
    controller, _, cleanup = build(fake, provision_error=error)

    outcome = controller.run(run_config)

    assert outcome.state is RunState.FAILED
    assert outcome.history == [RunState.CREATED, RunState.FAILED]
    assert outcome.failed_stage is RunState.PROVISIONED
    assert outcome.error is error
    assert outcome.exit_code != 0
    assert fake.clients == 0
    cleanup.assert_called_once_with()
    assert "Provisioned" in outcome.describe()


def test_timeout_during_interpreter_install(run_config):
    now = [0.0]

    def handler(command):
        if "python3 --version" in command:
            now[0] = 4000.0
            raise TransportError("timed out")
        return posix_handler(command)

    fake = FakeSSH(handler)
    controller, _, cleanup = build(fake, run_timeout=3600, clock=lambda: now[0])

    outcome = controller.run(run_config)

    assert outcome.state is RunState.FAILED
    assert outcome.timed_out
    assert outcome.failed_stage is RunState.INTERPRETER_READY
    assert RunState.CONTENT_UPLOADED not in outcome.history
    assert fake.detached == []
    assert not any("sudo tee \"/log_generator.py\"" in c for c in fake.commands)
    assert "timeout" in outcome.describe()
    cleanup.assert_called_once_with()


def test_remote_failure_stops_the_run(run_config):
    def handler(command):
        if "google-cloud-ops-agent" in command:
            return 1, "", "repository unavailable"
        return posix_handler(command)

    fake = FakeSSH(handler)
    controller, _, _ = build(fake)
    outcome = controller.run(run_config)

    assert outcome.failed_stage is RunState.AGENT_INSTALLED
    assert isinstance(outcome.error, RemoteCommandError)
    assert outcome.history == [RunState.CREATED, RunState.PROVISIONED, RunState.FAILED]
    assert len(fake.commands) == 2


def test_empty_debug_log_fails_verification(run_config):
    def handler(command):
        return 0, "", ""

    fake = FakeSSH(handler)
    controller, _, _ = build(fake)
    outcome = controller.run(run_config)

    assert outcome.failed_stage is RunState.VERIFIED
    assert RunState.WORKLOAD_LAUNCHED in outcome.history


def test_unsafe_parameter_fails_before_provisioning(run_config):
    fake = FakeSSH()
    controller, lifecycle, cleanup = build(fake)

    outcome = controller.run(replace(run_config, log_path='/tmp/"tail'))

    assert outcome.failed_stage is RunState.CREATED
    assert isinstance(outcome.error, UnsafeParameter)
    lifecycle.provision.assert_not_called()
    cleanup.assert_called_once_with()


@pytest.mark.parametrize("failing", ["ops-agent", "python3 --version", "log_generator.py", "cat "])
def test_stage_order_is_monotonic(run_config, failing):
    def handler(command):
        if failing in command:
            return 1, "", "boom"
        return posix_handler(command)

    outcome = build(FakeSSH(handler))[0].run(run_config)

    reached = [state for state in outcome.history if state is not RunState.FAILED]
    assert reached == list(RUN_SEQUENCE[: len(reached)])
    assert outcome.history[-1] is RunState.FAILED


def test_prepare_scripts_renders_for_classified_platform(windows_config):
    scripts = prepare_scripts(windows_config, WORKLOAD)
    assert scripts.install_agent.platform is Platform.WINDOWS
    assert scripts.install_interpreter.platform is Platform.WINDOWS


def test_run_timeout_must_be_positive():
    with pytest.raises(ValueError):
        RunController(lifecycle=MagicMock(), executor=MagicMock(), launcher=MagicMock(), run_timeout=0)
