"""Pytest fixtures for LotSync tests.

This module provides fixtures for test configuration, stores, the sync queue
and deterministic stand-ins for time and retry scheduling.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

from lotsync.core.config import Config
from lotsync.core.models import ExecuteResult, QueuedMutation
from lotsync.core.store import MemoryStore, SqliteStore
from lotsync.core.sync_queue import SyncQueue


class FakeClock:
    """Monotonic clock advancing one second per call."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        self.now += 1.0
        return self.now


class RecordingScheduler:
    """Scheduler that records retry attempts instead of sleeping."""

    def __init__(self) -> None:
        self.attempts: List[int] = []

    def schedule_retry(self, attempt: int) -> None:
        self.attempts.append(attempt)


class FakeServer:
    """In-memory stand-in for the backend, usable as a mutation executor.

    Rows live in `tables[table][record_id]`. `fail_with` makes every call
    raise, `reject` makes every call return an unsuccessful result.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[QueuedMutation] = []
        self.fail_with: Optional[Exception] = None
        self.reject = False

    def row(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return self.tables.get(table, {}).get(record_id)

    def set_row(self, table: str, record_id: str, row: Dict[str, Any]) -> None:
        self.tables.setdefault(table, {})[record_id] = dict(row)

    def execute(self, mutation: QueuedMutation) -> ExecuteResult:
        self.calls.append(mutation)
        if self.fail_with is not None:
            raise self.fail_with
        current = self.row(mutation.table, mutation.record_id)
        if self.reject:
            return ExecuteResult(success=False, server_data=current)
        if mutation.type.value == "UPDATE" and current is not None:
            # Reject writes based on a stale snapshot, like a row-version check
            original = mutation.original_data or {}
            if any(current.get(k) != v for k, v in original.items()):
                return ExecuteResult(success=False, server_data=current)
            current.update(mutation.data)
        elif mutation.type.value == "CREATE":
            self.set_row(mutation.table, mutation.record_id, mutation.data)
        elif mutation.type.value == "DELETE":
            self.tables.get(mutation.table, {}).pop(mutation.record_id, None)
        return ExecuteResult(success=True)


@pytest.fixture
def test_config_dir(tmp_path: Path) -> Path:
    """Create temporary config directory for tests.

    Args:
        tmp_path: pytest temporary directory fixture

    Returns:
        Path to temporary config directory.
    """
    config_dir = tmp_path / "lotsync_test"
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


@pytest.fixture
def test_config(test_config_dir: Path) -> Config:
    """Create test configuration.

    Args:
        test_config_dir: Temporary config directory

    Returns:
        Config instance for testing.
    """
    return Config(config_dir=test_config_dir)


@pytest.fixture
def memory_store() -> MemoryStore:
    """Fresh in-memory store."""
    return MemoryStore()


@pytest.fixture
def sqlite_store(test_config_dir: Path) -> Generator[SqliteStore, None, None]:
    """SQLite store in the temporary config directory."""
    store = SqliteStore(test_config_dir / "lotsync.db")
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()


@pytest.fixture
def queue(memory_store: MemoryStore, clock: FakeClock) -> SyncQueue:
    """Online sync queue over an in-memory store."""
    return SyncQueue(memory_store, is_online=lambda: True, clock=clock)


@pytest.fixture
def conflicted_queue(queue: SyncQueue, server: FakeServer) -> SyncQueue:
    """Queue holding three conflicting updates of fabric rolls.

    Each roll was edited locally from status 'received' while the server
    moved it to a different status.
    """
    for index, (local_status, server_status) in enumerate([
        ("inspected", "allocated"),
        ("cut", "shipped"),
        ("quarantined", "returned"),
    ], start=1):
        record_id = f"roll-{index}"
        original = {"id": record_id, "status": "received", "qty": 5}
        server.set_row("fabric_rolls", record_id, {**original, "status": server_status})
        queue.queue_mutation(
            "UPDATE", "fabric_rolls", record_id,
            {**original, "status": local_status}, original,
        )
    queue.process_sync_queue(server.execute)
    return queue
