"""Shared test fixtures for Pushcast."""

import pytest

from pushcast.core.config import PushcastConfig
from pushcast.notifications.base import NotificationContent
from pushcast.notifications.dispatcher import MulticastDispatcher
from pushcast.registry.memory import InMemoryTokenRegistry
from pushcast.scheduler.store import InMemoryNotificationStore

from tests.fakes import FakeTransport


@pytest.fixture
def config():
    """Create a default config without loading from disk."""
    return PushcastConfig()


@pytest.fixture
def content():
    return NotificationContent(title="Hello", body="World")


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def registry():
    return InMemoryTokenRegistry()


@pytest.fixture
def store():
    return InMemoryNotificationStore()


@pytest.fixture
def dispatcher(transport, registry):
    return MulticastDispatcher(transport, registry)
