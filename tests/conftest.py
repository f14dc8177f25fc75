"""Shared fixtures for the sync engine tests.

Wires the in-memory doubles from tests/fakes.py into an orchestrator,
tracker, mapping store, and reconciler.
"""

from __future__ import annotations

import pytest

from src.syncbridge.sync.inventory import InventoryReconciler
from src.syncbridge.sync.mapping import InMemoryMappingRepository
from src.syncbridge.sync.orchestrator import SyncOrchestrator
from src.syncbridge.sync.progress import InMemoryTaskStore, ProgressTracker
from src.syncbridge.sync.schemas import Platform
from tests.fakes import FakePlatformAdapter, ManualClock


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def adapter_a() -> FakePlatformAdapter:
    return FakePlatformAdapter(Platform.A)


@pytest.fixture
def adapter_b() -> FakePlatformAdapter:
    return FakePlatformAdapter(Platform.B)


@pytest.fixture
def adapters(adapter_a, adapter_b) -> dict[Platform, FakePlatformAdapter]:
    return {Platform.A: adapter_a, Platform.B: adapter_b}


@pytest.fixture
def mappings() -> InMemoryMappingRepository:
    return InMemoryMappingRepository()


@pytest.fixture
def task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def tracker(task_store) -> ProgressTracker:
    return ProgressTracker(task_store)


@pytest.fixture
def orchestrator(adapters, mappings, tracker) -> SyncOrchestrator:
    return SyncOrchestrator(adapters, mappings, tracker, batch_size=2, max_workers=2)


@pytest.fixture
def reconciler(adapters, mappings, tracker) -> InventoryReconciler:
    return InventoryReconciler(adapters, mappings, tracker, batch_size=50)
