"""
Command line entry point: launch a VM and start a soak test on it.

Run parameters come from the environment (see ``soaklauncher.config``), e.g.::

    PROVISIONING_API_KEY=... PROVISIONING_BASE_URL=https://provisioning.example/v1/ \\
      PROJECT=my_project ZONE=us-central1-b \\
      DISTRO=debian-11 TTL=100m LOG_SIZE_IN_BYTES=1000 LOG_RATE=1000 \\
      soaklauncher
"""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Optional

from soaklauncher.api import ProvisioningClient
from soaklauncher.config import Settings, load_env_file, load_run_config, load_settings
from soaklauncher.controller import RunController, prepare_scripts
from soaklauncher.errors import SoakLauncherError
from soaklauncher.keys import cleanup_keys, get_key_manager
from soaklauncher.launcher import WorkloadLauncher
from soaklauncher.lifecycle import VMLifecycleManager
from soaklauncher.orchestration import RemoteExecutor
from soaklauncher.platforms import Platform, classify_platform
from soaklauncher.scripts import render_agent_config, render_start_workload
from soaklauncher.types import RunConfig
from soaklauncher.workload import load_log_generator

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s [%(levelname)s] %(message)s")
    else:
        root.setLevel(level)
    # paramiko is chatty at DEBUG.
    logging.getLogger("paramiko").setLevel(logging.WARNING)


def build_controller(settings: Settings) -> RunController:
    keys = get_key_manager(settings.ssh_user)
    client = ProvisioningClient(
        api_key=settings.api_key,
        project=settings.project,
        zone=settings.zone,
        base_url=settings.base_url,
    )
    executor = RemoteExecutor(
        keys=keys,
        command_timeout=settings.command_timeout.total_seconds(),
        max_attempts=settings.transport_retries,
    )
    return RunController(
        lifecycle=VMLifecycleManager(client, keys),
        executor=executor,
        launcher=WorkloadLauncher(executor, verify_delay=settings.verify_delay.total_seconds()),
        run_timeout=settings.run_timeout.total_seconds(),
        installer_url=settings.python_installer_url,
        cleanup=cleanup_keys,
    )


def print_scripts(config: RunConfig, installer_url: Optional[str] = None) -> None:
    """Print every rendered stage script without touching any VM."""
    platform = classify_platform(config.platform)
    kwargs = {"installer_url": installer_url} if installer_url else {}
    scripts = prepare_scripts(config, load_log_generator(), **kwargs)

    print(f"# platform: {config.platform} ({platform.value})")
    print("# agent configuration")
    print(render_agent_config(config))
    for script in (scripts.install_agent, scripts.install_interpreter, render_start_workload(config, platform)):
        print(f"# stage: {script.stage.value}")
        print(script.text)
    if platform is Platform.WINDOWS:
        print("# stage: verify (not available on Windows)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Launch a VM, install the agent and start a soak test on it")
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file with run parameters")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    parser.add_argument("--dry-run", action="store_true", help="Print the remote scripts instead of running them")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        load_env_file(args.env_file)
        config = load_run_config()
        if args.dry_run:
            print_scripts(config)
            return 0
        settings = load_settings()
    except SoakLauncherError as exc:
        logger.error("Configuration error: %s", exc)
        return 1

    try:
        controller = build_controller(settings)
    except (SoakLauncherError, ValueError) as exc:
        cleanup_keys()
        logger.error("Could not set up the run: %s", exc)
        return 1

    outcome = controller.run(config)
    if outcome.succeeded:
        logger.info("%s in %.1fs", outcome.describe(), outcome.duration_seconds)
    else:
        logger.error(outcome.describe())
    return outcome.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
