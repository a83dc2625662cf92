"""Provisioning of soak test VMs."""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from soaklauncher.api import ProvisioningClient
from soaklauncher.errors import ConfigError, ProvisionError, ProvisioningApiError
from soaklauncher.keys import KeyManager
from soaklauncher.platforms import Platform, classify_platform
from soaklauncher.types import RunConfig, VMHandle

logger = logging.getLogger(__name__)

SSH_PORT = 22


def ttl_label(ttl: timedelta) -> str:
    """Whole minutes of ``ttl``, rounded down, for the ``ttl`` label."""
    return str(int(ttl.total_seconds()) // 60)


def generate_vm_name(platform_id: str) -> str:
    slug = "".join(c if c.isalnum() else "-" for c in platform_id.lower()).strip("-")
    return f"soak-{slug[:40]}-{secrets.token_hex(4)}"


class VMLifecycleManager:
    """Creates the VM for a run and turns it into a VMHandle."""

    def __init__(self, client: ProvisioningClient, keys: KeyManager, ready_timeout: float = 600) -> None:
        self.client = client
        self.keys = keys
        self.ready_timeout = ready_timeout

    def build_metadata(self, platform: Platform) -> Dict[str, str]:
        metadata = {
            # Keeps OS Config tasks (including Windows updates and reboots)
            # from disturbing the steady-state load.
            "osconfig-disabled-features": "tasks",
            "ssh-keys": self.keys.ssh_keys_metadata(),
        }
        if platform is Platform.WINDOWS:
            metadata["enable-windows-ssh"] = "TRUE"
            metadata["sysprep-specialize-script-cmd"] = "googet -noconfirm=true install google-compute-engine-ssh"
        return metadata

    def provision(self, config: RunConfig, ready_timeout: Optional[float] = None) -> VMHandle:
        """
        Create a VM for ``config`` and wait until it is running.

        Raises:
            ConfigError: If the platform or TTL is invalid. No API call is made.
            ProvisionError: If the provisioning API fails.
        """
        if not config.platform or not config.platform.strip():
            raise ConfigError("platform must be a non-empty string")
        if config.ttl.total_seconds() <= 0:
            raise ConfigError(f"TTL must be positive, got {config.ttl}")

        platform = classify_platform(config.platform)
        name = config.vm_name or generate_vm_name(config.platform)
        labels = {"ttl": ttl_label(config.ttl)}
        metadata = self.build_metadata(platform)

        logger.info(
            "Creating %s VM %s (%s, %sGB disk, ttl=%s minutes)",
            config.platform, name, config.machine_type, config.disk_size_gb, labels["ttl"],
        )
        try:
            instance = self.client.create_instance(
                name=name,
                image_family=config.platform,
                machine_type=config.machine_type,
                disk_size_gb=config.disk_size_gb,
                labels=labels,
                metadata=metadata,
            )
            created_at = datetime.now(timezone.utc)
            if instance.status != "RUNNING":
                instance = self.client.wait_until_running(
                    instance.name, timeout=ready_timeout or self.ready_timeout
                )
        except ProvisioningApiError as e:
            logger.error("Failed to create VM %s: %s", name, e)
            raise ProvisionError(f"Could not create VM {name}: {e}") from e

        if not instance.address:
            raise ProvisionError(f"VM {instance.name} has no network address")

        vm = VMHandle(
            instance_id=instance.id,
            name=instance.name,
            platform=platform,
            host=instance.address,
            port=SSH_PORT,
            username=self.keys.username,
            expires_at=created_at + config.ttl,
        )
        logger.info("VM %s is running at %s (expires %s)", vm.name, vm.host, vm.expires_at.isoformat())
        return vm
