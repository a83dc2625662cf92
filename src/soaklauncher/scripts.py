"""
Rendering of remote script text for each stage of a soak run.

Every function here is pure: it takes the run configuration plus resolved
values and returns a ``RemoteScript``. Dynamic values are quoted for the
target shell, and values that cannot be quoted safely raise
``UnsafeParameter`` instead of being rendered.
"""
from __future__ import annotations

import base64
import re
import textwrap
from typing import Any, Dict, List

import yaml

from soaklauncher.errors import ConfigRenderError, UnsafeParameter
from soaklauncher.platforms import Platform
from soaklauncher.types import RemoteScript, RunConfig, Stage

AGENT_REPO_SCRIPT_URL = "https://dl.google.com/cloudagents/add-google-cloud-ops-agent-repo.sh"
AGENT_CONFIG_PATH_POSIX = "/etc/google-cloud-ops-agent/config.yaml"
AGENT_SERVICE = "google-cloud-ops-agent"
DEFAULT_PYTHON_INSTALLER_URL = "https://www.python.org/ftp/python/3.11.2/python-3.11.2.exe"
HEREDOC_MARKER = "SOAKLAUNCHER_EOF"
# Raw bytes per Windows upload piece. With a MAX_PATH destination the
# encoded PowerShell command stays well under cmd.exe's 8191 characters.
WINDOWS_UPLOAD_CHUNK = 1500
WINDOWS_MAX_PATH = 260

# Characters with special meaning inside a POSIX double-quoted string.
_POSIX_UNSAFE = ('"', "$", "`", "\\", "\n", "\r", "\x00")
_LINE_BREAKS = ("\n", "\r", "\x00")
# PowerShell treats typographic single quotes as quote characters too.
_POWERSHELL_QUOTES = ("'", "‘", "’", "‚", "‛")
_ABSOLUTE_PATH = re.compile(r"^(/|[A-Za-z]:[\\/])")
_YAML_INDICATORS = tuple("-?:,[]{}#&*!|>'\"%@`")


def quote_posix(value: str) -> str:
    """Return ``value`` as a double-quoted POSIX shell word."""
    text = str(value)
    for char in _POSIX_UNSAFE:
        if char in text:
            raise UnsafeParameter(f"Value {text!r} contains {char!r} and cannot be embedded in a shell script")
    return f'"{text}"'


def quote_powershell(value: str) -> str:
    """Return ``value`` as a single-quoted PowerShell string literal."""
    text = str(value)
    for char in _LINE_BREAKS:
        if char in text:
            raise UnsafeParameter(f"Value {text!r} contains a line break and cannot be embedded in a PowerShell script")
    for quote in _POWERSHELL_QUOTES:
        text = text.replace(quote, quote * 2)
    return f"'{text}'"


def quote_windows_argument(value: str) -> str:
    """Return ``value`` double-quoted for a Windows process command line."""
    text = str(value)
    for char in ('"',) + _LINE_BREAKS:
        if char in text:
            raise UnsafeParameter(f"Value {text!r} contains {char!r} and cannot be passed on a Windows command line")
    return f'"{text}"'


def _require_path(value: str, name: str) -> str:
    if not value or not isinstance(value, str):
        raise UnsafeParameter(f"{name} must be a non-empty string")
    if '"' in value:
        raise UnsafeParameter(f"{name} must not contain a double quote, got {value!r}")
    if not _ABSOLUTE_PATH.match(value):
        raise UnsafeParameter(f"{name} must be an absolute path, got {value!r}")
    return value


def _require_positive_int(value: int, name: str) -> str:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise UnsafeParameter(f"{name} must be a positive integer, got {value!r}")
    return str(value)


def _encode(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def _check_config_path(path: str, name: str) -> str:
    if not isinstance(path, str) or not path:
        raise ConfigRenderError(f"{name} must be a non-empty string")
    if any(char in path for char in _LINE_BREAKS):
        raise ConfigRenderError(f"{name} {path!r} contains a line break")
    if ": " in path or "#" in path or path.endswith(":"):
        raise ConfigRenderError(f"{name} {path!r} would break the agent configuration structure")
    if path.startswith(_YAML_INDICATORS) or not _ABSOLUTE_PATH.match(path):
        raise ConfigRenderError(f"{name} {path!r} must be an absolute path")
    return path


def build_agent_config(config: RunConfig) -> Dict[str, Any]:
    """Return the agent's logging pipeline as a plain mapping."""
    log_path = _check_config_path(config.log_path, "log_path")
    debug_log_path = _check_config_path(config.debug_log_path, "debug_log_path")
    return {
        "logging": {
            "receivers": {
                "mylog_source": {"type": "files", "include_paths": [log_path]},
                "generator_debug_logs": {"type": "files", "include_paths": [debug_log_path]},
            },
            "exporters": {
                "google": {"type": "google_cloud_logging"},
            },
            "service": {
                "pipelines": {
                    "my_pipeline": {
                        "receivers": ["mylog_source", "generator_debug_logs"],
                        "exporters": ["google"],
                    },
                },
            },
        },
    }


def render_agent_config(config: RunConfig) -> str:
    """Render the agent configuration YAML watching the workload and debug logs."""
    return yaml.safe_dump(build_agent_config(config), sort_keys=False, default_flow_style=False)


def render_install_agent(config: RunConfig, platform: Platform) -> RemoteScript:
    """Write the agent configuration and install the agent."""
    encoded = _encode(render_agent_config(config).encode("utf-8"))

    if platform is Platform.WINDOWS:
        text = "\n".join(
            [
                "$ErrorActionPreference = 'Stop'",
                "$configDir = Join-Path $env:ProgramFiles 'Google\\Cloud Operations\\Ops Agent\\config'",
                "New-Item -ItemType Directory -Force -Path $configDir | Out-Null",
                f"[IO.File]::WriteAllBytes((Join-Path $configDir 'config.yaml'), [Convert]::FromBase64String({quote_powershell(encoded)}))",
                f"googet -noconfirm install {AGENT_SERVICE}",
                f"Restart-Service {AGENT_SERVICE} -Force",
            ]
        )
    elif platform is Platform.POSIX:
        text = "\n".join(
            [
                "set -e",
                "sudo mkdir -p /etc/google-cloud-ops-agent",
                f"echo {quote_posix(encoded)} | base64 -d | sudo tee {quote_posix(AGENT_CONFIG_PATH_POSIX)} > /dev/null",
                f"curl -sSfO {quote_posix(AGENT_REPO_SCRIPT_URL)}",
                "sudo bash add-google-cloud-ops-agent-repo.sh --also-install",
                f"sudo systemctl restart {AGENT_SERVICE}",
            ]
        )
    else:  # pragma: no cover - exhaustive over Platform
        raise ValueError(f"Unsupported platform: {platform}")
    return RemoteScript(Stage.INSTALL_AGENT_CONFIG, platform, text + "\n")


def render_install_interpreter(platform: Platform, installer_url: str = DEFAULT_PYTHON_INSTALLER_URL) -> RemoteScript:
    """Install Python 3 so the workload generator can run."""
    if platform is Platform.WINDOWS:
        if not installer_url.startswith("https://"):
            raise UnsafeParameter(f"installer_url must be an https URL, got {installer_url!r}")
        text = textwrap.dedent(
            f"""\
            $ErrorActionPreference = 'Stop'
            $tempDir = '/tmp'
            New-Item -ItemType Directory -Force -Path $tempDir | Out-Null

            $pythonUrl = {quote_powershell(installer_url)}
            $pythonInstallerName = $pythonUrl -replace '.*/'
            [Net.ServicePointManager]::SecurityProtocol = [Net.SecurityProtocolType]::Tls12
            $webClient = New-Object System.Net.WebClient
            $webClient.DownloadFile($pythonUrl, "$tempDir\\$pythonInstallerName")

            $pythonInstallDir = "$env:SystemDrive\\Python"
            Start-Process "$tempDir\\$pythonInstallerName" -Wait -ArgumentList "/quiet TargetDir=$pythonInstallDir InstallAllUsers=1"
            """
        )
    elif platform is Platform.POSIX:
        text = textwrap.dedent(
            """\
            set -e
            if command -v apt-get > /dev/null 2>&1; then
              sudo apt-get update -y
              sudo DEBIAN_FRONTEND=noninteractive apt-get install -y python3
            elif command -v dnf > /dev/null 2>&1; then
              sudo dnf install -y python3
            elif command -v yum > /dev/null 2>&1; then
              sudo yum install -y python3
            elif command -v zypper > /dev/null 2>&1; then
              sudo zypper --non-interactive install python3
            else
              echo "No supported package manager found" >&2
              exit 1
            fi
            python3 --version
            """
        )
    else:  # pragma: no cover - exhaustive over Platform
        raise ValueError(f"Unsupported platform: {platform}")
    return RemoteScript(Stage.INSTALL_INTERPRETER, platform, text)


def render_upload(content: bytes, destination: str, platform: Platform) -> List[RemoteScript]:
    """
    Place ``content`` at ``destination`` on the remote host.

    POSIX hosts get a single heredoc script. Windows commands pass through
    ``cmd.exe`` and its command line limit, so the content is split into
    pieces that each write at a fixed offset. Running a piece twice leaves
    the file unchanged.
    """
    if not isinstance(content, (bytes, bytearray)):
        raise ValueError("content must be bytes")
    destination = _require_path(destination, "destination")
    content = bytes(content)

    if platform is Platform.WINDOWS:
        if len(destination) > WINDOWS_MAX_PATH:
            raise UnsafeParameter(f"destination longer than {WINDOWS_MAX_PATH} characters: {destination!r}")
        target = quote_powershell(destination)
        scripts = []
        for offset in range(0, max(len(content), 1), WINDOWS_UPLOAD_CHUNK):
            chunk = content[offset:offset + WINDOWS_UPLOAD_CHUNK]
            mode = "Create" if offset == 0 else "OpenOrCreate"
            text = "\n".join(
                [
                    "$ErrorActionPreference = 'Stop'",
                    f"$bytes = [Convert]::FromBase64String({quote_powershell(_encode(chunk))})",
                    f"$stream = [IO.File]::Open({target}, [IO.FileMode]::{mode})",
                    "try {",
                    f"  [void]$stream.Seek({offset}, [IO.SeekOrigin]::Begin)",
                    "  $stream.Write($bytes, 0, $bytes.Length)",
                    "} finally {",
                    "  $stream.Close()",
                    "}",
                ]
            )
            scripts.append(RemoteScript(Stage.UPLOAD_CONTENT, platform, text + "\n"))
        return scripts
    elif platform is Platform.POSIX:
        encoded = _encode(content)
        body = "\n".join(textwrap.wrap(encoded, 76)) if encoded else ""
        text = "\n".join(
            [
                "set -e",
                f"base64 -d <<'{HEREDOC_MARKER}' | sudo tee {quote_posix(destination)} > /dev/null",
                body,
                HEREDOC_MARKER,
            ]
        )
        return [RemoteScript(Stage.UPLOAD_CONTENT, platform, text + "\n")]
    else:  # pragma: no cover - exhaustive over Platform
        raise ValueError(f"Unsupported platform: {platform}")


def render_start_workload(config: RunConfig, platform: Platform) -> RemoteScript:
    """
    Start the log generator detached from the remote session.

    On POSIX the generator runs under ``nohup`` in the background with its
    output redirected to the debug log. On Windows it is created through
    ``Win32_Process.Create``, which cannot capture output.
    """
    generator_path = _require_path(config.generator_path, "generator_path")
    log_path = _require_path(config.log_path, "log_path")
    size = _require_positive_int(config.log_size_in_bytes, "log_size_in_bytes")
    rate = _require_positive_int(config.log_rate, "log_rate")

    if platform is Platform.WINDOWS:
        arguments = " ".join(
            [
                quote_windows_argument(generator_path),
                f"--log-size-in-bytes={size}",
                f"--log-rate={rate}",
                "--log-write-type=file",
                f"--file-path={quote_windows_argument(log_path)}",
            ]
        )
        text = "\n".join(
            [
                "$ErrorActionPreference = 'Stop'",
                "$python = Join-Path $env:SystemDrive 'Python\\python.exe'",
                f"$arguments = {quote_powershell(arguments)}",
                "$commandLine = '\"' + $python + '\" ' + $arguments",
                "$result = Invoke-WmiMethod -ComputerName . -Class Win32_Process -Name Create -ArgumentList $commandLine",
                'if ($result.ReturnValue -ne 0) { throw "Win32_Process.Create returned $($result.ReturnValue)" }',
            ]
        )
    elif platform is Platform.POSIX:
        debug_log_path = _require_path(config.debug_log_path, "debug_log_path")
        text = "\n".join(
            [
                f"nohup python3 {quote_posix(generator_path)} \\",
                f"  --log-size-in-bytes={quote_posix(size)} \\",
                f"  --log-rate={quote_posix(rate)} \\",
                "  --log-write-type=file \\",
                f"  --file-path={quote_posix(log_path)} \\",
                f"  < /dev/null > {quote_posix(debug_log_path)} 2>&1 &",
            ]
        )
    else:  # pragma: no cover - exhaustive over Platform
        raise ValueError(f"Unsupported platform: {platform}")
    return RemoteScript(Stage.START_WORKLOAD, platform, text + "\n")


def render_read_debug_log(config: RunConfig, platform: Platform) -> RemoteScript:
    """Read back the generator's debug log. Only POSIX hosts have one."""
    if platform is Platform.WINDOWS:
        raise ValueError("The generator debug log is not available on Windows")
    debug_log_path = _require_path(config.debug_log_path, "debug_log_path")
    return RemoteScript(Stage.VERIFY, platform, f"cat {quote_posix(debug_log_path)}\n")


def render_ready_check(platform: Platform) -> RemoteScript:
    """Trivial command used to check that the remote shell answers."""
    text = "Write-Output ready" if platform is Platform.WINDOWS else "echo ready"
    return RemoteScript(Stage.READY_CHECK, platform, text + "\n")
