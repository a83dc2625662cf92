from datetime import datetime, timedelta, timezone

import pytest

from soaklauncher.platforms import Platform
from soaklauncher.types import RunConfig, VMHandle


@pytest.fixture
def run_config():
    return RunConfig(platform="debian-11", log_rate=500, log_size_in_bytes=2000, ttl=timedelta(minutes=30))


@pytest.fixture
def windows_config():
    return RunConfig(platform="windows-2022", log_rate=500, log_size_in_bytes=2000, ttl=timedelta(minutes=30))


def make_vm(platform=Platform.POSIX, name="soak-vm"):
    return VMHandle(
        instance_id="1234",
        name=name,
        platform=platform,
        host="203.0.113.10",
        port=22,
        username="soak",
        expires_at=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture
def vm():
    return make_vm()


@pytest.fixture
def windows_vm():
    return make_vm(Platform.WINDOWS, name="soak-win")


class FakeSSH:
    """Records every command sent to a VM and answers from a handler."""

    def __init__(self, handler=None):
        self.handler = handler or (lambda command: (0, "", ""))
        self.commands = []
        self.detached = []
        self.clients = 0
        self.client_kwargs = []

    def factory(self, **kwargs):
        self.clients += 1
        self.client_kwargs.append(kwargs)
        return _FakeClient(self, kwargs)


class _FakeClient:
    def __init__(self, fake, kwargs):
        self.fake = fake
        self.kwargs = kwargs
        self.connected = False

    def connect(self):
        self.connected = True

    def disconnect(self):
        self.connected = False

    def execute(self, command, timeout=600):
        self.fake.commands.append(command)
        return self.fake.handler(command)

    def execute_detached(self, command, timeout=60):
        self.fake.detached.append(command)
        exit_code, _, _ = self.fake.handler(command)
        return exit_code
