"""Pytest fixtures for CLI tests.

The CLI runs in a subprocess, so state is shared through the default
SQLite store in a temporary config directory.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable, List

import pytest

from lotsync.core.config import Config
from lotsync.core.store import open_store
from lotsync.core.sync_queue import SyncQueue

PROJECT_ROOT = Path(__file__).resolve().parents[2]

RunCli = Callable[..., "subprocess.CompletedProcess[str]"]


@pytest.fixture
def run_cli(test_config_dir: Path) -> RunCli:
    """Run `python -m lotsync.cli -d <test dir> <args>` and capture output."""

    def run(*args: str) -> "subprocess.CompletedProcess[str]":
        return subprocess.run(
            [sys.executable, "-m", "lotsync.cli", "-d", str(test_config_dir), *args],
            capture_output=True,
            text=True,
            cwd=PROJECT_ROOT,
        )

    return run


@pytest.fixture
def seeded_conflicts(test_config_dir: Path, server) -> List[str]:
    """Persist two conflicting updates and one pending create.

    Returns:
        Mutation IDs: [conflict roll-1, conflict roll-2, pending roll-9]
    """
    config = Config(config_dir=test_config_dir)
    store = open_store(config)
    try:
        queue = SyncQueue(store, is_online=lambda: True)
        ids = []
        for record_id, local_status, server_status in [
            ("roll-1", "inspected", "allocated"),
            ("roll-2", "cut", "shipped"),
        ]:
            original = {"id": record_id, "status": "received", "qty": 5}
            server.set_row("fabric_rolls", record_id, {**original, "status": server_status})
            ids.append(queue.queue_mutation(
                "UPDATE", "fabric_rolls", record_id,
                {**original, "status": local_status}, original,
            ))
        queue.process_sync_queue(server.execute)
        ids.append(queue.queue_mutation("CREATE", "fabric_rolls", "roll-9", {"qty": 1}))
    finally:
        store.close()
    return ids
