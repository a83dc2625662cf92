"""
Configuration for soak runs.
Reads run parameters and provisioning settings from the environment,
optionally seeded from a .env file.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from soaklauncher.errors import ConfigError
from soaklauncher.scripts import DEFAULT_PYTHON_INSTALLER_URL
from soaklauncher.types import DEFAULT_DISK_SIZE_GB, DEFAULT_MACHINE_TYPE, RunConfig

_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as ``24h30m``, ``90m30s`` or ``1.5h``.

    Raises:
        ConfigError: If the string is not a sequence of number+unit pairs.
    """
    text = (value or "").strip()
    if not text:
        raise ConfigError("Duration must be a non-empty string")
    if text == "0":
        return timedelta(0)

    sign = 1
    if text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]

    seconds = 0.0
    position = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != position:
            break
        seconds += float(match.group(1)) * _UNITS[match.group(2)]
        position = match.end()
    if position != len(text) or position == 0:
        raise ConfigError(f"Could not parse duration {value!r}")
    return timedelta(seconds=sign * seconds)


@dataclass(frozen=True, slots=True)
class Settings:
    """Provisioning and execution settings that are not part of a RunConfig."""

    api_key: str
    project: str
    zone: str
    base_url: str
    ssh_user: str = "soak"
    run_timeout: timedelta = timedelta(minutes=60)
    command_timeout: timedelta = timedelta(minutes=10)
    verify_delay: timedelta = timedelta(seconds=5)
    transport_retries: int = 3
    python_installer_url: str = DEFAULT_PYTHON_INSTALLER_URL


def load_env_file(env_file: Optional[Path] = None) -> None:
    """Load a .env file into os.environ without overriding existing values."""
    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f".env file not found at: {env_file}")
        load_dotenv(env_file, override=False)
        return

    candidate = Path.cwd() / ".env"
    if candidate.exists():
        load_dotenv(candidate, override=False)


def _required(env: Mapping[str, str], key: str) -> str:
    value = env.get(key)
    if not value or not value.strip():
        raise ConfigError(f"Required environment variable '{key}' is not set")
    return value.strip()


def _optional(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None or not value.strip():
        return None
    return value.strip()


def _positive_int(key: str, value: str) -> int:
    try:
        number = int(value)
    except ValueError as e:
        raise ConfigError(f"{key} must be an integer, got {value!r}") from e
    if number <= 0:
        raise ConfigError(f"{key} must be positive, got {number}")
    return number


def _positive_duration(key: str, value: str) -> timedelta:
    try:
        duration = parse_duration(value)
    except ConfigError as e:
        raise ConfigError(f"Could not parse {key} duration {value!r}: {e}") from e
    if duration.total_seconds() <= 0:
        raise ConfigError(f"{key} must be a positive duration, got {value!r}")
    return duration


def load_run_config(env: Optional[Mapping[str, str]] = None) -> RunConfig:
    """
    Build a RunConfig from environment variables.

    Required: LOG_SIZE_IN_BYTES, LOG_RATE, TTL, DISTRO.
    Optional: VM_NAME, MACHINE_TYPE, DISK_SIZE_GB.

    Raises:
        ConfigError: If a required value is missing or malformed.
    """
    env = os.environ if env is None else env
    disk_size = _optional(env, "DISK_SIZE_GB")
    return RunConfig(
        platform=_required(env, "DISTRO"),
        log_rate=_positive_int("LOG_RATE", _required(env, "LOG_RATE")),
        log_size_in_bytes=_positive_int("LOG_SIZE_IN_BYTES", _required(env, "LOG_SIZE_IN_BYTES")),
        ttl=_positive_duration("TTL", _required(env, "TTL")),
        vm_name=_optional(env, "VM_NAME"),
        machine_type=_optional(env, "MACHINE_TYPE") or DEFAULT_MACHINE_TYPE,
        disk_size_gb=_positive_int("DISK_SIZE_GB", disk_size) if disk_size else DEFAULT_DISK_SIZE_GB,
    )


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Build Settings from environment variables.

    Raises:
        ConfigError: If PROVISIONING_API_KEY, PROVISIONING_BASE_URL, PROJECT or ZONE
            is missing, or a value is malformed.
    """
    env = os.environ if env is None else env
    defaults = Settings(api_key="", project="", zone="", base_url="")

    def duration(key: str, default: timedelta) -> timedelta:
        value = _optional(env, key)
        return _positive_duration(key, value) if value else default

    retries = _optional(env, "TRANSPORT_RETRIES")
    return Settings(
        api_key=_required(env, "PROVISIONING_API_KEY"),
        project=_required(env, "PROJECT"),
        zone=_required(env, "ZONE"),
        base_url=_required(env, "PROVISIONING_BASE_URL"),
        ssh_user=_optional(env, "SSH_USER") or defaults.ssh_user,
        run_timeout=duration("RUN_TIMEOUT", defaults.run_timeout),
        command_timeout=duration("COMMAND_TIMEOUT", defaults.command_timeout),
        verify_delay=duration("VERIFY_DELAY", defaults.verify_delay),
        transport_retries=_positive_int("TRANSPORT_RETRIES", retries) if retries else defaults.transport_retries,
        python_installer_url=_optional(env, "PYTHON_INSTALLER_URL") or defaults.python_installer_url,
    )
