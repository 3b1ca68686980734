"""Gram-Amb dispatch service layer -- store, events, registry, matching and lifecycle."""

from __future__ import annotations

from src.services.acknowledgements import AcknowledgementBroker, OfferOutcome
from src.services.config import DispatchConfig
from src.services.dispatch import DispatchService
from src.services.errors import (
    Conflict,
    DispatchError,
    InvalidLocation,
    InvalidTransition,
    MalformedPayload,
    MatchExhausted,
    PayloadTooLarge,
    StoreUnavailable,
    UnknownRecord,
)
from src.services.events import InMemoryEventBus, RedisEventBus, Subscription
from src.services.intake import DistressIntake
from src.services.lifecycle import CaseLifecycleManager
from src.services.matcher import Matcher
from src.services.profiles import InMemoryProfileDirectory, ProfileDirectory
from src.services.registry import ResponderRegistry
from src.services.store import InMemoryStoreBackend, RecordStore, RedisStoreBackend

__all__ = [
    "AcknowledgementBroker",
    "CaseLifecycleManager",
    "Conflict",
    "DispatchConfig",
    "DispatchError",
    "DispatchService",
    "DistressIntake",
    "InMemoryEventBus",
    "InMemoryProfileDirectory",
    "InMemoryStoreBackend",
    "InvalidLocation",
    "InvalidTransition",
    "MalformedPayload",
    "MatchExhausted",
    "Matcher",
    "OfferOutcome",
    "PayloadTooLarge",
    "ProfileDirectory",
    "RecordStore",
    "RedisEventBus",
    "RedisStoreBackend",
    "ResponderRegistry",
    "StoreUnavailable",
    "Subscription",
    "UnknownRecord",
]
