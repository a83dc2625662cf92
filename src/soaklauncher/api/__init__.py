"""
Provisioning API client for creating soak test VMs.

The client speaks a small JSON contract rooted at ``base_url``:

- ``POST projects/{project}/zones/{zone}/instances/`` with ``name``,
  ``imageFamily``, ``machineType``, ``diskSizeGb``, ``labels`` and
  ``metadata.items`` creates a VM and returns its instance document.
- ``GET projects/{project}/zones/{zone}/instances/{name}`` returns the
  instance document.

An instance document carries ``name``, ``id``, ``status`` (``RUNNING`` once
booted) and ``networkInterfaces[0].networkIP`` with an optional
``accessConfigs[0].natIP``.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urljoin

import requests

from soaklauncher.errors import ProvisioningApiError

logger = logging.getLogger(__name__)


@dataclass
class Instance:
    """Represents a VM as reported by the provisioning API."""
    id: str
    name: str
    status: str
    network_ip: str
    external_ip: Optional[str]

    @property
    def address(self) -> str:
        return self.external_ip or self.network_ip


class ProvisioningClient:
    """Client for the VM provisioning REST API."""

    def __init__(
        self,
        api_key: str,
        project: str,
        zone: str,
        base_url: str,
        timeout: int = 30,
    ) -> None:
        """
        Initialize the client.

        Args:
            api_key: Bearer token for the provisioning API. Required.
            project: Project that owns the VMs. Required.
            zone: Zone the VMs are created in. Required.
            base_url: Root URL of the provisioning API. Required.
            timeout: Per-request timeout in seconds.

        Raises:
            ValueError: If a required argument is missing or invalid.
        """
        if not api_key or not isinstance(api_key, str):
            raise ValueError("api_key must be a non-empty string")
        if not project or not isinstance(project, str):
            raise ValueError("project must be a non-empty string")
        if not zone or not isinstance(zone, str):
            raise ValueError("zone must be a non-empty string")
        if not base_url or not isinstance(base_url, str):
            raise ValueError("base_url must be a non-empty string")
        if timeout <= 0:
            raise ValueError("timeout must be a positive integer")

        self.project = project
        self.zone = zone
        self.base_url = self._ensure_trailing_slash(base_url)
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {api_key.strip()}",
                "Content-Type": "application/json",
            }
        )

    @staticmethod
    def _ensure_trailing_slash(url: str) -> str:
        cleaned = url.strip()
        if not cleaned:
            raise ValueError("URL cannot be empty")
        return cleaned if cleaned.endswith("/") else f"{cleaned}/"

    @property
    def _instances_url(self) -> str:
        return urljoin(self.base_url, f"projects/{self.project}/zones/{self.zone}/instances/")

    def create_instance(
        self,
        name: str,
        image_family: str,
        machine_type: str,
        disk_size_gb: int,
        labels: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Instance:
        """
        Request a new VM.

        Args:
            name: Instance name. Required.
            image_family: Image family to boot, e.g. ``debian-11``. Required.
            machine_type: Machine class, e.g. ``e2-standard-16``. Required.
            disk_size_gb: Boot disk size in GB. Required.
            labels: Labels attached to the instance. Optional.
            metadata: Instance metadata entries. Optional.

        Returns:
            The created Instance.

        Raises:
            ValueError: If parameters are invalid.
            ProvisioningApiError: If the API rejects the request.
        """
        if not name or not isinstance(name, str):
            raise ValueError("name must be a non-empty string")
        if not image_family or not isinstance(image_family, str):
            raise ValueError("image_family must be a non-empty string")
        if not isinstance(disk_size_gb, int) or disk_size_gb <= 0:
            raise ValueError("disk_size_gb must be a positive integer")

        payload: Dict[str, Any] = {
            "name": name,
            "imageFamily": image_family,
            "machineType": machine_type,
            "diskSizeGb": disk_size_gb,
            "labels": dict(labels or {}),
            "metadata": {"items": [{"key": k, "value": v} for k, v in (metadata or {}).items()]},
        }

        logger.debug("Creating instance %s (%s, %s)", name, image_family, machine_type)
        data = self._request("POST", self._instances_url, json=payload)
        if not isinstance(data, dict) or not data.get("name"):
            raise ProvisioningApiError("Instance created but no instance name returned")
        return self._parse_instance(data)

    def get_instance(self, name: str) -> Instance:
        """Fetch the current state of an instance."""
        if not name or not isinstance(name, str):
            raise ValueError("name must be a non-empty string")
        data = self._request("GET", urljoin(self._instances_url, name))
        return self._parse_instance(data)

    def wait_until_running(self, name: str, timeout: float = 300, poll_interval: float = 5) -> Instance:
        """
        Poll until the instance reports RUNNING.

        Raises:
            ProvisioningApiError: If the instance terminates or the timeout elapses.
        """
        start_time = time.monotonic()
        while True:
            instance = self.get_instance(name)
            if instance.status == "RUNNING":
                return instance
            if instance.status in {"TERMINATED", "STOPPED", "SUSPENDED"}:
                raise ProvisioningApiError(f"Instance {name} entered state {instance.status}")
            if time.monotonic() - start_time > timeout:
                raise ProvisioningApiError(f"Instance {name} not running after {timeout:.0f}s (status: {instance.status})")
            logger.debug("Instance %s is %s, waiting...", name, instance.status)
            time.sleep(poll_interval)

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise ProvisioningApiError(self._format_http_error(exc.response)) from exc
        except requests.RequestException as exc:
            raise ProvisioningApiError(f"Request to {url} failed: {exc}") from exc

        if response.content:
            try:
                return response.json()
            except ValueError as exc:
                raise ProvisioningApiError("Received malformed JSON from the provisioning API") from exc
        return {}

    @staticmethod
    def _format_http_error(response: Optional[requests.Response]) -> str:
        if response is None:
            return "Provisioning request failed and no response object was returned"

        try:
            payload = response.json()
            detail = payload.get("error") or payload.get("detail") or payload
            if isinstance(detail, dict):
                detail = detail.get("message", detail)
        except ValueError:
            detail = response.text or "Unknown error"
        return f"Provisioning request failed with status {response.status_code}: {detail}"

    @staticmethod
    def _parse_instance(data: Dict[str, Any]) -> Instance:
        """
        Parse instance data from an API response.

        Raises:
            KeyError: If the instance name is missing.
        """
        interfaces = data.get("networkInterfaces") or [{}]
        interface = interfaces[0]
        access_configs = interface.get("accessConfigs") or [{}]
        return Instance(
            id=str(data.get("id", data["name"])),
            name=data["name"],
            status=data.get("status", "PROVISIONING"),
            network_ip=interface.get("networkIP", ""),
            external_ip=access_configs[0].get("natIP"),
        )
