"""Unit tests for the offline mutation queue.

Tests core/sync_queue.py: queueing, replay, failure accounting, conflict
detection and conflict resolution.
"""

from __future__ import annotations

import pytest

from lotsync.core.models import ExecuteResult, MutationStatus, MutationType, QueuedMutation
from lotsync.core.store import SYNC_METADATA, SYNC_QUEUE, MemoryStore
from lotsync.core.sync_queue import LOCK_TIMEOUT_SECONDS, SYNC_LOCK_KEY, SyncQueue
from lotsync.core.validation import ValidationError, mutation_to_dict


ROLL = {"id": "roll-1", "status": "received", "qty": 5, "bin": "A1"}


@pytest.mark.unit
class TestQueueMutation:
    """Tests for queue_mutation and queries."""

    def test_queue_returns_id_and_counts(self, queue: SyncQueue) -> None:
        mutation_id = queue.queue_mutation(
            "UPDATE", "fabric_rolls", "roll-1", {"status": "cut"}, ROLL, "user-7"
        )
        assert len(mutation_id) == 32
        assert queue.status.pending_count == 1

        mutation = queue.get_mutation(mutation_id)
        assert mutation.type == MutationType.UPDATE
        assert mutation.status == MutationStatus.PENDING
        assert mutation.original_data == ROLL
        assert mutation.user_id == "user-7"
        assert mutation.attempts == 0

    def test_delete_with_no_data(self, queue: SyncQueue) -> None:
        mutation_id = queue.queue_mutation("DELETE", "fabric_rolls", "roll-1", None)
        assert queue.get_mutation(mutation_id).data == {}

    def test_invalid_table_rejected(self, queue: SyncQueue) -> None:
        with pytest.raises(ValidationError):
            queue.queue_mutation("UPDATE", "Fabric Rolls", "roll-1", {})
        assert queue.status.pending_count == 0

    def test_pending_in_queue_order(self, queue: SyncQueue) -> None:
        ids = [
            queue.queue_mutation("CREATE", "fabric_rolls", f"roll-{i}", {"qty": i})
            for i in range(5)
        ]
        assert [m.id for m in queue.get_pending_mutations()] == ids

    def test_find_mutation_by_prefix(self, queue: SyncQueue) -> None:
        mutation_id = queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        assert queue.find_mutation(mutation_id).id == mutation_id
        assert queue.find_mutation(mutation_id[:20]).id == mutation_id
        assert queue.find_mutation("ffffffff") is None

    def test_remove_and_clear(self, queue: SyncQueue) -> None:
        first = queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        queue.queue_mutation("CREATE", "fabric_rolls", "roll-2", {})
        assert queue.remove_mutation(first) is True
        assert queue.remove_mutation(first) is False
        assert queue.status.pending_count == 1
        queue.clear_queue()
        assert queue.status.pending_count == 0
        assert queue.get_all_mutations() == []

    def test_malformed_record_skipped(self, queue: SyncQueue, memory_store: MemoryStore) -> None:
        memory_store.put(SYNC_QUEUE, "bad", {"id": "bad", "type": "NOPE"})
        queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        assert len(queue.get_all_mutations()) == 1


@pytest.mark.unit
class TestProcessSyncQueue:
    """Tests for process_sync_queue."""

    def test_success_removes_mutation(self, queue: SyncQueue, server) -> None:
        queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {"qty": 5})
        result = queue.process_sync_queue(server.execute)
        assert (result.success, result.failed, result.conflicts) == (1, 0, 0)
        assert queue.get_all_mutations() == []
        assert server.row("fabric_rolls", "roll-1") == {"qty": 5}
        assert queue.status.last_sync_at is not None

    def test_serial_in_queue_order(self, queue: SyncQueue, server) -> None:
        for i in range(3):
            queue.queue_mutation("CREATE", "fabric_rolls", f"roll-{i}", {})
        queue.process_sync_queue(server.execute)
        assert [m.record_id for m in server.calls] == ["roll-0", "roll-1", "roll-2"]

    def test_executor_sees_processing_status(self, queue: SyncQueue) -> None:
        seen = []

        def execute(mutation: QueuedMutation) -> ExecuteResult:
            seen.append(queue.get_mutation(mutation.id).status)
            return ExecuteResult(success=True)

        queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        queue.process_sync_queue(execute)
        assert seen == [MutationStatus.PROCESSING]

    def test_offline_skips(self, memory_store: MemoryStore, clock, server) -> None:
        queue = SyncQueue(memory_store, is_online=lambda: False, clock=clock)
        queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        result = queue.process_sync_queue(server.execute)
        assert result.total == 0
        assert server.calls == []
        assert queue.status.pending_count == 1

    def test_already_processing_skips(self, queue: SyncQueue, server) -> None:
        queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        nested = []

        def execute(mutation: QueuedMutation) -> ExecuteResult:
            nested.append(queue.process_sync_queue(server.execute).total)
            return ExecuteResult(success=True)

        queue.process_sync_queue(execute)
        assert nested == [0]
        assert server.calls == []

    def test_exception_counts_attempt(self, queue: SyncQueue, server) -> None:
        server.fail_with = ConnectionError("Network request failed")
        mutation_id = queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})

        result = queue.process_sync_queue(server.execute)

        assert result.failed == 1
        mutation = queue.get_mutation(mutation_id)
        assert mutation.status == MutationStatus.PENDING
        assert mutation.attempts == 1
        assert mutation.last_error == "Network request failed"

    def test_failed_after_max_attempts(self, queue: SyncQueue, server) -> None:
        server.fail_with = ConnectionError("down")
        mutation_id = queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})

        for _ in range(3):
            queue.process_sync_queue(server.execute)

        mutation = queue.get_mutation(mutation_id)
        assert mutation.status == MutationStatus.FAILED
        assert mutation.attempts == 3
        assert queue.status.failed_count == 1
        assert queue.status.pending_count == 0

        # Failed mutations are not replayed
        server.fail_with = None
        assert queue.process_sync_queue(server.execute).total == 0

    def test_retry_failed_resets(self, queue: SyncQueue, server) -> None:
        server.fail_with = ConnectionError("down")
        mutation_id = queue.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        for _ in range(3):
            queue.process_sync_queue(server.execute)

        assert queue.retry_failed() == 1
        mutation = queue.get_mutation(mutation_id)
        assert mutation.status == MutationStatus.PENDING
        assert mutation.attempts == 0
        assert mutation.last_error is None

        server.fail_with = None
        assert queue.process_sync_queue(server.execute).success == 1

    def test_plain_failure_without_server_row(self, queue: SyncQueue) -> None:
        mutation_id = queue.queue_mutation("UPDATE", "fabric_rolls", "roll-1", {"qty": 1}, ROLL)
        result = queue.process_sync_queue(lambda m: ExecuteResult(success=False))
        assert result.failed == 1
        assert queue.get_mutation(mutation_id).last_error == "Sync failed"

    def test_conflict_detected(self, queue: SyncQueue, server) -> None:
        server.set_row("fabric_rolls", "roll-1", {**ROLL, "status": "allocated"})
        mutation_id = queue.queue_mutation(
            "UPDATE", "fabric_rolls", "roll-1", {**ROLL, "status": "cut"}, ROLL
        )

        result = queue.process_sync_queue(server.execute)

        assert result.conflicts == 1
        mutation = queue.get_mutation(mutation_id)
        assert mutation.status == MutationStatus.CONFLICT
        assert mutation.server_data["status"] == "allocated"
        assert mutation.original_data == ROLL
        assert queue.status.conflict_count == 1
        assert [m.id for m in queue.get_conflicts()] == [mutation_id]

    def test_rejection_without_divergence_is_failure(self, queue: SyncQueue, server) -> None:
        """A rejected write whose server row matches the snapshot is not a conflict."""
        server.set_row("fabric_rolls", "roll-1", dict(ROLL))
        server.reject = True
        queue.queue_mutation("UPDATE", "fabric_rolls", "roll-1", {**ROLL, "qty": 9}, ROLL)
        result = queue.process_sync_queue(server.execute)
        assert (result.failed, result.conflicts) == (1, 0)

    def test_conflicts_not_replayed(self, conflicted_queue: SyncQueue, server) -> None:
        server.calls.clear()
        assert conflicted_queue.process_sync_queue(server.execute).total == 0
        assert server.calls == []

    def test_metadata_only_divergence_is_not_conflict(
        self, memory_store: MemoryStore, clock
    ) -> None:
        queue = SyncQueue(memory_store, clock=clock)
        queue.queue_mutation(
            "UPDATE", "fabric_rolls", "roll-1",
            {"status": "B", "updated_at": "t1"},
            {"status": "A", "updated_at": "t0"},
        )

        def execute(mutation: QueuedMutation) -> ExecuteResult:
            return ExecuteResult(False, {"status": "A", "updated_at": "t2"})

        result = queue.process_sync_queue(execute)
        assert (result.failed, result.conflicts) == (1, 0)
        assert queue.get_conflicts() == []

    def test_last_sync_shared_through_store(self, memory_store: MemoryStore, clock, server) -> None:
        first = SyncQueue(memory_store, clock=clock)
        first.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        first.process_sync_queue(server.execute)

        second = SyncQueue(memory_store, clock=clock)
        assert second.status.last_sync_at == first.status.last_sync_at
        assert second.status.last_sync_at is not None


@pytest.mark.unit
class TestSharedStore:
    """Two queues replaying the same store never send a mutation twice."""

    def test_second_queue_waits_for_running_sync(self, memory_store: MemoryStore, clock) -> None:
        queue_a = SyncQueue(memory_store, clock=clock)
        queue_b = SyncQueue(memory_store, clock=clock)
        for i in range(3):
            queue_a.queue_mutation("CREATE", "fabric_rolls", f"r{i}", {})
        calls = []

        def execute_b(mutation: QueuedMutation) -> ExecuteResult:
            calls.append(("b", mutation.record_id))
            return ExecuteResult(success=True)

        def execute_a(mutation: QueuedMutation) -> ExecuteResult:
            calls.append(("a", mutation.record_id))
            if len(calls) == 1:
                assert queue_b.process_sync_queue(execute_b).total == 0
                assert queue_b.refresh_status().is_processing
            return ExecuteResult(success=True)

        result = queue_a.process_sync_queue(execute_a)
        assert result.success == 3
        assert calls == [("a", "r0"), ("a", "r1"), ("a", "r2")]
        assert memory_store.get(SYNC_METADATA, SYNC_LOCK_KEY) is None
        assert not queue_b.refresh_status().is_processing

    def test_removed_mutation_is_skipped(self, memory_store: MemoryStore, clock) -> None:
        queue_a = SyncQueue(memory_store, clock=clock)
        queue_b = SyncQueue(memory_store, clock=clock)
        ids = [
            queue_a.queue_mutation("CREATE", "fabric_rolls", f"r{i}", {})
            for i in range(3)
        ]
        calls = []

        def execute(mutation: QueuedMutation) -> ExecuteResult:
            calls.append(mutation.record_id)
            if mutation.record_id == "r0":
                queue_b.remove_mutation(ids[1])
            return ExecuteResult(success=True)

        result = queue_a.process_sync_queue(execute)
        assert calls == ["r0", "r2"]
        assert result.success == 2

    def test_recovery_leaves_live_lock_rows_alone(self, memory_store: MemoryStore, clock) -> None:
        queue_a = SyncQueue(memory_store, clock=clock)
        ids = [
            queue_a.queue_mutation("CREATE", "fabric_rolls", f"r{i}", {})
            for i in range(2)
        ]
        seen = []

        def execute(mutation: QueuedMutation) -> ExecuteResult:
            late = SyncQueue(memory_store, clock=clock)
            seen.append(late.get_mutation(mutation.id).status)
            return ExecuteResult(success=True)

        assert queue_a.process_sync_queue(execute).success == 2
        assert seen == [MutationStatus.PROCESSING, MutationStatus.PROCESSING]
        assert all(queue_a.get_mutation(i) is None for i in ids)


@pytest.mark.unit
class TestRecovery:
    """Mutations left in processing by a crash go back to pending."""

    def test_processing_recovered_on_init(self, memory_store: MemoryStore, clock) -> None:
        first = SyncQueue(memory_store, clock=clock)
        mutation_id = first.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        raw = mutation_to_dict(first.get_mutation(mutation_id))
        raw["status"] = "processing"
        memory_store.put(SYNC_QUEUE, mutation_id, raw)

        second = SyncQueue(memory_store, clock=clock)
        assert second.get_mutation(mutation_id).status == MutationStatus.PENDING
        assert second.status.pending_count == 1

    def test_stale_lock_does_not_block_recovery(self, memory_store: MemoryStore, clock) -> None:
        first = SyncQueue(memory_store, clock=clock)
        mutation_id = first.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        raw = mutation_to_dict(first.get_mutation(mutation_id))
        raw["status"] = "processing"
        memory_store.put(SYNC_QUEUE, mutation_id, raw)
        memory_store.put(SYNC_METADATA, SYNC_LOCK_KEY, {
            "owner": "crashed", "acquiredAt": clock.now - LOCK_TIMEOUT_SECONDS,
        })

        second = SyncQueue(memory_store, clock=clock)
        assert second.get_mutation(mutation_id).status == MutationStatus.PENDING
        assert not second.status.is_processing

    def test_live_lock_blocks_recovery_and_sync(
        self, memory_store: MemoryStore, clock, server
    ) -> None:
        first = SyncQueue(memory_store, clock=clock)
        mutation_id = first.queue_mutation("CREATE", "fabric_rolls", "roll-1", {})
        raw = mutation_to_dict(first.get_mutation(mutation_id))
        raw["status"] = "processing"
        memory_store.put(SYNC_QUEUE, mutation_id, raw)
        memory_store.put(SYNC_METADATA, SYNC_LOCK_KEY, {
            "owner": "other-device", "acquiredAt": clock.now,
        })

        second = SyncQueue(memory_store, clock=clock)
        assert second.get_mutation(mutation_id).status == MutationStatus.PROCESSING
        assert second.status.is_processing
        assert second.process_sync_queue(server.execute).total == 0
        assert server.calls == []


@pytest.mark.unit
class TestResolveConflict:
    """Tests for resolve_conflict."""

    def test_server_removes_mutation(self, conflicted_queue: SyncQueue) -> None:
        first = conflicted_queue.get_conflicts()[0]
        conflicted_queue.resolve_conflict(first.id, "server")
        assert conflicted_queue.get_mutation(first.id) is None
        assert conflicted_queue.status.conflict_count == 2

    def test_local_requeues_with_server_base(self, conflicted_queue: SyncQueue) -> None:
        first = conflicted_queue.get_conflicts()[0]
        conflicted_queue.resolve_conflict(first.id, "local")

        mutation = conflicted_queue.get_mutation(first.id)
        assert mutation.status == MutationStatus.PENDING
        assert mutation.data == first.data
        assert mutation.original_data == first.server_data
        assert mutation.server_data is None
        assert mutation.attempts == 0

    def test_local_resolution_then_syncs(self, conflicted_queue: SyncQueue, server) -> None:
        first = conflicted_queue.get_conflicts()[0]
        conflicted_queue.resolve_conflict(first.id, "local")

        result = conflicted_queue.process_sync_queue(server.execute)

        assert result.success == 1
        assert server.row("fabric_rolls", first.record_id)["status"] == "inspected"

    def test_merge_uses_merged_data(self, conflicted_queue: SyncQueue) -> None:
        first = conflicted_queue.get_conflicts()[0]
        merged = {**first.server_data, "status": "inspected", "bin": "C3"}
        conflicted_queue.resolve_conflict(first.id, "merge", merged)
        assert conflicted_queue.get_mutation(first.id).data == merged

    def test_merge_without_data_keeps_local(self, conflicted_queue: SyncQueue) -> None:
        first = conflicted_queue.get_conflicts()[0]
        conflicted_queue.resolve_conflict(first.id, "merge")
        assert conflicted_queue.get_mutation(first.id).data == first.data

    def test_invalid_resolution(self, conflicted_queue: SyncQueue) -> None:
        first = conflicted_queue.get_conflicts()[0]
        with pytest.raises(ValidationError):
            conflicted_queue.resolve_conflict(first.id, "both")

    def test_unknown_id_is_ignored(self, conflicted_queue: SyncQueue) -> None:
        conflicted_queue.resolve_conflict("does-not-exist", "server")
        assert conflicted_queue.status.conflict_count == 3
