"""SSH transport for executing scripts on soak test VMs."""
import base64
import logging
import time
from pathlib import Path
from typing import Optional, Tuple

import paramiko

from soaklauncher.errors import CommandInterrupted, CommandTimeout, TransportError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1
CHUNK_SIZE = 32768
# cmd.exe, the default Windows OpenSSH shell, rejects longer command lines.
WINDOWS_COMMAND_LINE_LIMIT = 8191


def powershell_command(script: str) -> str:
    """Wrap a PowerShell script so it can be passed to a Windows OpenSSH server."""
    encoded = base64.b64encode(script.encode("utf-16-le")).decode("ascii")
    return f"powershell -NoProfile -NonInteractive -ExecutionPolicy Bypass -EncodedCommand {encoded}"


class SSHClient:
    """SSH client for remote script execution on a single VM."""

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "soak",
        private_key_path: Optional[str] = None,
        password: Optional[str] = None,
        connect_timeout: float = 10,
    ):
        """
        Initialize SSH client connection parameters.

        Args:
            host: SSH host/IP address. Required.
            port: SSH port number. Default: 22.
            username: SSH username. Default: soak.
            private_key_path: Path to private SSH key file. Optional if using password.
            password: SSH password. Optional if using private key.
            connect_timeout: Seconds to wait for the TCP connection and handshake.

        Raises:
            ValueError: If host is empty, port is invalid, or both auth methods are missing.
        """
        if not host or not isinstance(host, str):
            raise ValueError("host must be a non-empty string")
        if not isinstance(port, int) or port <= 0 or port > 65535:
            raise ValueError("port must be an integer between 1 and 65535")
        if not username or not isinstance(username, str):
            raise ValueError("username must be a non-empty string")

        if not private_key_path and not password:
            raise ValueError("Either private_key_path or password must be provided")

        self.host = host
        self.port = port
        self.username = username
        self.private_key_path = private_key_path
        self.password = password
        self.connect_timeout = connect_timeout
        self.client: Optional[paramiko.SSHClient] = None

    @property
    def connected(self) -> bool:
        if self.client is None:
            return False
        transport = self.client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        """
        Establish SSH connection to remote host.

        Raises:
            FileNotFoundError: If private key file does not exist.
            TransportError: If the connection or authentication fails.
        """
        if self.connected:
            logger.debug("Already connected to %s", self.host)
            return

        pkey = None
        if self.private_key_path:
            key_path = Path(self.private_key_path)
            if not key_path.exists():
                raise FileNotFoundError(f"Private key file not found: {self.private_key_path}")
            try:
                pkey = paramiko.RSAKey.from_private_key_file(self.private_key_path)
            except (paramiko.PasswordRequiredException, paramiko.SSHException) as e:
                raise TransportError(f"Could not load private key {self.private_key_path}: {e}") from e

        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            self.client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=pkey,
                password=self.password,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
            logger.info("SSH connection established to %s@%s:%s", self.username, self.host, self.port)
        except (paramiko.SSHException, OSError) as e:
            self.client = None
            raise TransportError(f"SSH connection to {self.host}:{self.port} failed: {e}") from e

    def disconnect(self) -> None:
        """Close SSH connection."""
        if self.client:
            self.client.close()
            self.client = None
            logger.debug("SSH connection closed to %s", self.host)

    def _open(self, command: str, timeout: float) -> paramiko.Channel:
        if not command or not isinstance(command, str):
            raise ValueError("command must be a non-empty string")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if not self.connected:
            raise TransportError("Not connected to remote host. Call connect() first.")
        try:
            _, stdout, _ = self.client.exec_command(command, timeout=timeout)
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"Could not start command on {self.host}: {e}") from e
        return stdout.channel

    def execute(self, command: str, timeout: float = 600) -> Tuple[int, str, str]:
        """
        Execute a command on the remote host and wait for it to finish.

        Args:
            command: Command line to execute. Required.
            timeout: Seconds to wait for the command to complete.

        Returns:
            Tuple of (exit_code, stdout, stderr).

        Raises:
            ValueError: If command is empty.
            TransportError: If not connected or the channel cannot be opened.
            CommandTimeout: If the command does not finish within ``timeout``.
            CommandInterrupted: If the channel fails while the command runs.
        """
        channel = self._open(command, timeout)
        deadline = time.monotonic() + timeout
        stdout_chunks = []
        stderr_chunks = []

        try:
            while True:
                while channel.recv_ready():
                    stdout_chunks.append(channel.recv(CHUNK_SIZE))
                while channel.recv_stderr_ready():
                    stderr_chunks.append(channel.recv_stderr(CHUNK_SIZE))
                if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                    break
                if time.monotonic() > deadline:
                    channel.close()
                    raise CommandTimeout(f"Command on {self.host} did not finish within {timeout:.0f}s")
                time.sleep(POLL_INTERVAL)
            exit_code = channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            channel.close()
            raise CommandInterrupted(f"Command execution on {self.host} failed: {e}") from e

        stdout_text = b"".join(stdout_chunks).decode("utf-8", errors="replace")
        stderr_text = b"".join(stderr_chunks).decode("utf-8", errors="replace")
        logger.debug("Command finished on %s with exit code %s", self.host, exit_code)
        return exit_code, stdout_text, stderr_text

    def execute_detached(self, command: str, timeout: float = 60) -> int:
        """
        Run a command that backgrounds its own work and return its exit code.

        Output is not read. Only the remote shell's exit is awaited, so the
        call returns as soon as the command has handed its work off.

        Raises:
            TransportError: If not connected or the channel cannot be opened.
            CommandTimeout: If the remote shell does not return within ``timeout``.
            CommandInterrupted: If the channel fails after the command started.
        """
        channel = self._open(command, timeout)
        try:
            if not channel.status_event.wait(timeout):
                raise CommandTimeout(f"Remote shell on {self.host} did not return within {timeout:.0f}s")
            return channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise CommandInterrupted(f"Detached launch on {self.host} failed: {e}") from e
        finally:
            channel.close()
