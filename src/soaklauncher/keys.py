"""
SSH key material used to reach soak test VMs.

A key pair is generated lazily the first time it is needed and kept for the
rest of the process. ``cleanup_keys`` removes it again; the run controller
registers it so it runs however the run ends.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import paramiko

logger = logging.getLogger(__name__)

KEY_BITS = 3072


class KeyManager:
    """Owns one temporary SSH key pair."""

    def __init__(self, username: str = "soak") -> None:
        if not username or not isinstance(username, str):
            raise ValueError("username must be a non-empty string")
        self.username = username
        self._key: Optional[paramiko.RSAKey] = None
        self._directory: Optional[Path] = None

    @property
    def created(self) -> bool:
        return self._key is not None

    def _ensure_key(self) -> paramiko.RSAKey:
        if self._key is None:
            self._directory = Path(tempfile.mkdtemp(prefix="soaklauncher-keys-"))
            key = paramiko.RSAKey.generate(KEY_BITS)
            key.write_private_key_file(str(self._directory / "id_rsa"))
            self._key = key
            logger.info("Generated SSH key for %s in %s", self.username, self._directory)
        return self._key

    @property
    def private_key_path(self) -> str:
        self._ensure_key()
        return str(self._directory / "id_rsa")

    @property
    def public_key(self) -> str:
        key = self._ensure_key()
        return f"{key.get_name()} {key.get_base64()} {self.username}"

    def ssh_keys_metadata(self) -> str:
        """Value for the ``ssh-keys`` instance metadata entry."""
        return f"{self.username}:{self.public_key}"

    def cleanup(self) -> None:
        """Delete the key pair. Safe to call more than once."""
        if self._directory is not None:
            shutil.rmtree(self._directory, ignore_errors=True)
            logger.info("Removed SSH key material from %s", self._directory)
        self._key = None
        self._directory = None


_key_manager: Optional[KeyManager] = None


def get_key_manager(username: str = "soak") -> KeyManager:
    """Return the process-wide KeyManager, creating it on first use."""
    global _key_manager
    if _key_manager is None or _key_manager.username != username:
        if _key_manager is not None:
            _key_manager.cleanup()
        _key_manager = KeyManager(username)
    return _key_manager


def cleanup_keys() -> None:
    """Release the process-wide key material if any was created."""
    global _key_manager
    if _key_manager is not None:
        _key_manager.cleanup()
        _key_manager = None
