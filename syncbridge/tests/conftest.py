from __future__ import annotations

import pytest

from syncbridge.core.config import get_settings
from syncbridge.integrations.store import InMemoryRowStore
from syncbridge.services.jobs import RecordingJobPublisher
from syncbridge.services.telemetry import reset_telemetry
from syncbridge.tests.utils.factories import RecordingSleep


@pytest.fixture(autouse=True)
def isolate_settings_and_telemetry(monkeypatch) -> None:
    # Settings are cached per process; tests that set env vars must see a fresh copy.
    monkeypatch.setenv("CREDENTIALS_ENCRYPTION_KEY", "test-credentials-key")
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
def store() -> InMemoryRowStore:
    return InMemoryRowStore()


@pytest.fixture
def publisher() -> RecordingJobPublisher:
    return RecordingJobPublisher()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
