"""Shared fixtures for port_selector tests."""

import pytest

from port_selector.config import Config
from port_selector.ports import ProcessInfo


class FakeProber:
    """PortProber with a fixed set of busy ports and their owners."""

    def __init__(self, busy=None, owners=None):
        self.busy = set(busy or ())
        self.owners = dict(owners or {})
        self.probed: list[int] = []

    def is_free(self, port: int) -> bool:
        self.probed.append(port)
        return port not in self.busy

    def owner_of(self, port: int) -> ProcessInfo | None:
        return self.owners.get(port)


@pytest.fixture
def prober():
    return FakeProber()


@pytest.fixture
def config():
    """Small range with freeze and TTL disabled."""
    return Config(port_start=3000, port_end=3010, freeze_period_minutes=0, allocation_ttl="")
