"""Remote script execution on soak test VMs."""
from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from soaklauncher.deadline import Deadline
from soaklauncher.errors import (
    CommandInterrupted,
    DeadlineExceeded,
    RemoteCommandError,
    TransportError,
    UnsafeParameter,
)
from soaklauncher.keys import KeyManager
from soaklauncher.platforms import Platform
from soaklauncher.scripts import render_ready_check, render_upload
from soaklauncher.ssh import WINDOWS_COMMAND_LINE_LIMIT, SSHClient, powershell_command
from soaklauncher.types import ExecutionResult, RemoteScript, VMHandle

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_COMMAND_TIMEOUT = 600
DEFAULT_LAUNCH_TIMEOUT = 60


def remote_command(script: RemoteScript) -> str:
    """
    Return the command line that runs ``script`` on its platform.

    Raises:
        UnsafeParameter: If a Windows command would exceed the command line limit.
    """
    if script.platform is Platform.WINDOWS:
        command = powershell_command(script.text)
        if len(command) > WINDOWS_COMMAND_LINE_LIMIT:
            raise UnsafeParameter(
                f"Stage {script.stage.value} command is {len(command)} characters, "
                f"over the Windows limit of {WINDOWS_COMMAND_LINE_LIMIT}"
            )
        return command
    return script.text


class RemoteExecutor:
    """
    Runs rendered scripts on a VM over SSH.

    Every remote side effect of a run goes through ``execute`` (or its
    detached variant ``fire_and_forget``). A fresh connection is opened for
    each call. Failures to connect or open a channel are retried up to
    ``max_attempts`` times. Once a command has started it is never re-run:
    a timeout or a dropped channel raises ``CommandInterrupted``, and
    scripts that exit non-zero raise ``RemoteCommandError``.
    """

    def __init__(
        self,
        private_key_path: Optional[str] = None,
        password: Optional[str] = None,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        max_attempts: int = 3,
        retry_delay: float = 5,
        client_factory: Callable[..., SSHClient] = SSHClient,
        sleep: Callable[[float], None] = time.sleep,
        keys: Optional[KeyManager] = None,
    ):
        """
        Initialize remote executor.

        Args:
            private_key_path: Path to SSH private key. Optional if using password or keys.
            password: SSH password. Optional if using private key.
            command_timeout: Upper bound in seconds for a single call.
            max_attempts: Attempts per call when the connection cannot be made.
            retry_delay: Seconds between attempts.
            client_factory: Callable building an SSHClient for a VM.
            sleep: Function used to wait between attempts.
            keys: KeyManager whose private key is used. The key path is
                looked up when the first connection is made.

        Raises:
            ValueError: If a limit is not positive.
        """
        if command_timeout <= 0:
            raise ValueError("command_timeout must be positive")
        if not isinstance(max_attempts, int) or max_attempts <= 0:
            raise ValueError("max_attempts must be a positive integer")

        self.private_key_path = private_key_path
        self.password = password
        self.command_timeout = command_timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.client_factory = client_factory
        self.sleep = sleep
        self.keys = keys

    def _client(self, vm: VMHandle) -> SSHClient:
        key_path = self.keys.private_key_path if self.keys is not None else self.private_key_path
        return self.client_factory(
            host=vm.host,
            port=vm.port,
            username=vm.username,
            private_key_path=key_path,
            password=self.password,
        )

    def _attempt(
        self,
        vm: VMHandle,
        description: str,
        operation: Callable[[SSHClient, float], T],
        timeout: Optional[float],
        deadline: Optional[Deadline],
    ) -> T:
        last_error: Optional[TransportError] = None
        for attempt in range(1, self.max_attempts + 1):
            call_timeout = timeout or self.command_timeout
            if deadline is not None:
                call_timeout = deadline.clip(call_timeout, description)

            client = self._client(vm)
            try:
                client.connect()
                return operation(client, call_timeout)
            except CommandInterrupted as e:
                if deadline is not None and deadline.expired:
                    raise DeadlineExceeded(f"Deadline exceeded during {description}: {e}") from e
                logger.error("%s on %s was interrupted after it started: %s", description, vm.name, e)
                raise
            except TransportError as e:
                last_error = e
                if deadline is not None and deadline.expired:
                    raise DeadlineExceeded(f"Deadline exceeded during {description}: {e}") from e
                if attempt < self.max_attempts:
                    logger.warning(
                        "%s on %s failed (attempt %s/%s): %s, retrying...",
                        description, vm.name, attempt, self.max_attempts, e,
                    )
                    delay = self.retry_delay
                    if deadline is not None:
                        delay = min(delay, deadline.remaining())
                    self.sleep(delay)
            finally:
                client.disconnect()

        logger.error("%s on %s failed after %s attempts", description, vm.name, self.max_attempts)
        raise last_error

    def execute(
        self,
        vm: VMHandle,
        script: RemoteScript,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> ExecutionResult:
        """
        Run ``script`` on ``vm`` and wait for it to finish.

        Returns:
            ExecutionResult with the captured output.

        Raises:
            TransportError: If every attempt failed at the transport level.
            RemoteCommandError: If the script exited non-zero.
            DeadlineExceeded: If the run deadline elapsed.
        """
        description = f"Stage {script.stage.value}"
        command = remote_command(script)
        logger.debug("%s on %s:\n%s", description, vm.name, script.text)

        exit_code, stdout, stderr = self._attempt(
            vm,
            description,
            lambda client, call_timeout: client.execute(command, timeout=call_timeout),
            timeout,
            deadline,
        )
        result = ExecutionResult(stdout=stdout, stderr=stderr, exit_code=exit_code)
        if not result.ok:
            logger.error("%s failed with exit code %s", description, exit_code)
            logger.error("Stdout:\n%s", stdout)
            logger.error("Stderr:\n%s", stderr)
            raise RemoteCommandError(
                f"{description} exited with code {exit_code}: {stderr.strip() or stdout.strip()}",
                result,
            )
        return result

    def fire_and_forget(
        self,
        vm: VMHandle,
        script: RemoteScript,
        timeout: float = DEFAULT_LAUNCH_TIMEOUT,
        deadline: Optional[Deadline] = None,
    ) -> ExecutionResult:
        """
        Hand ``script`` to the remote host and return once it was accepted.

        The script is expected to detach its own work. No output is
        captured; the result only carries the remote shell's exit code.
        """
        description = f"Stage {script.stage.value}"
        command = remote_command(script)
        logger.debug("%s (detached) on %s:\n%s", description, vm.name, script.text)

        exit_code = self._attempt(
            vm,
            description,
            lambda client, call_timeout: client.execute_detached(command, timeout=call_timeout),
            timeout,
            deadline,
        )
        result = ExecutionResult(stdout="", stderr="", exit_code=exit_code, detached=True)
        if not result.ok:
            raise RemoteCommandError(f"{description} was rejected with exit code {exit_code}", result)
        return result

    def upload(
        self,
        vm: VMHandle,
        content: bytes,
        destination: str,
        deadline: Optional[Deadline] = None,
    ) -> ExecutionResult:
        """
        Place ``content`` at ``destination`` on ``vm``.

        Windows content arrives in several pieces, each run as its own
        ``execute`` call. Returns the result of the last piece.
        """
        scripts = render_upload(content, destination, vm.platform)
        logger.info("Uploading %s bytes to %s:%s in %s step(s)", len(content), vm.name, destination, len(scripts))
        result = None
        for script in scripts:
            result = self.execute(vm, script, deadline=deadline)
        return result

    def wait_until_reachable(
        self,
        vm: VMHandle,
        attempts: int = 30,
        delay: float = 10,
        deadline: Optional[Deadline] = None,
    ) -> None:
        """
        Poll ``vm`` until its remote shell answers.

        Raises:
            TransportError: If the VM never answered.
        """
        script = render_ready_check(vm.platform)
        logger.info("Waiting for SSH on %s (%s attempts)...", vm.name, attempts)
        for attempt in range(1, attempts + 1):
            client = self._client(vm)
            try:
                call_timeout = self.command_timeout
                if deadline is not None:
                    call_timeout = deadline.clip(call_timeout, "SSH readiness check")
                client.connect()
                client.execute(remote_command(script), timeout=call_timeout)
                logger.info("SSH ready on %s after %s attempts", vm.name, attempt)
                return
            except (TransportError, CommandInterrupted) as e:
                if deadline is not None and deadline.expired:
                    raise DeadlineExceeded(f"Deadline exceeded waiting for SSH: {e}") from e
                if attempt == attempts:
                    raise TransportError(f"{vm.name} did not answer over SSH after {attempts} attempts: {e}") from e
                logger.debug("Attempt %s failed: %s, retrying...", attempt, e)
                wait = delay if deadline is None else min(delay, deadline.remaining())
                self.sleep(wait)
            finally:
                client.disconnect()
