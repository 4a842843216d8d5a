"""Pytest fixtures for web API tests.

Provides a Flask test client over an in-memory store and a stand-in
backend that replays mutations against FakeServer. The stand-in starts
offline so writes are queued until a test switches it online.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest
from flask import Flask
from flask.testing import FlaskClient

from lotsync.core.backend import BackendError
from lotsync.core.models import ExecuteResult, PendingUpload, QueuedMutation
from lotsync.core.store import MemoryStore
from lotsync.core.sync_queue import SyncQueue
from lotsync.web import create_app


class StubBackend:
    """Backend client double with a connectivity switch."""

    def __init__(self, server) -> None:
        self.server = server
        self.online = False
        self.accept_uploads = True
        self.uploaded: List[PendingUpload] = []

    def is_reachable(self) -> bool:
        return self.online

    def execute_mutation(self, mutation: QueuedMutation) -> ExecuteResult:
        return self.server.execute(mutation)

    def write(self, mutation: QueuedMutation) -> Optional[Dict[str, Any]]:
        if not self.server.execute(mutation).success:
            raise BackendError("row rejected", 409)
        return self.server.row(mutation.table, mutation.record_id)

    def upload_capture(self, upload: PendingUpload) -> bool:
        if self.accept_uploads:
            self.uploaded.append(upload)
        return self.accept_uploads


@pytest.fixture
def backend(server) -> StubBackend:
    return StubBackend(server)


@pytest.fixture
def web_app(test_config_dir: Path, backend: StubBackend) -> Generator[Flask, None, None]:
    """Create Flask app for testing.

    Args:
        test_config_dir: Temporary config directory
        backend: Stand-in backend

    Yields:
        Flask application instance
    """
    app = create_app(config_dir=test_config_dir, store=MemoryStore(), backend=backend)
    app.config["TESTING"] = True
    yield app


@pytest.fixture
def client(web_app: Flask) -> FlaskClient:
    """Create Flask test client.

    Args:
        web_app: Flask application

    Returns:
        Flask test client for making requests
    """
    return web_app.test_client()


@pytest.fixture
def app_queue(web_app: Flask) -> SyncQueue:
    """The queue behind the app."""
    return web_app.extensions["lotsync.queue"]


@pytest.fixture
def conflict_ids(app_queue: SyncQueue, server, backend: StubBackend) -> List[str]:
    """Two conflicting fabric-roll updates in the app's queue."""
    ids = []
    for record_id, local_status, server_status in [
        ("roll-1", "inspected", "allocated"),
        ("roll-2", "cut", "shipped"),
    ]:
        original = {"id": record_id, "status": "received", "qty": 5, "bin": "A1"}
        server.set_row("fabric_rolls", record_id, {**original, "status": server_status})
        ids.append(app_queue.queue_mutation(
            "UPDATE", "fabric_rolls", record_id,
            {**original, "status": local_status, "bin": "B2"}, original,
        ))
    backend.online = True
    app_queue.process_sync_queue(server.execute)
    backend.online = False
    return ids
