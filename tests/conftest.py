"""Shared fixtures for the dispatch test suite."""

from __future__ import annotations

import pytest

from src.services.config import DispatchConfig
from src.services.events import InMemoryEventBus
from src.services.registry import ResponderRegistry
from src.services.store import RecordStore


@pytest.fixture
def fast_config() -> DispatchConfig:
    """Dispatch tunables shrunk so matching rounds finish in milliseconds."""
    return DispatchConfig(
        ack_timeout_seconds=1.0,
        retry_backoff_seconds=(0.02, 0.05),
        max_pending_wait_seconds=60.0,
    )


@pytest.fixture
def store() -> RecordStore:
    return RecordStore()


@pytest.fixture
def bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture
def registry(store: RecordStore, bus: InMemoryEventBus, fast_config: DispatchConfig) -> ResponderRegistry:
    return ResponderRegistry(store, bus, fast_config)
