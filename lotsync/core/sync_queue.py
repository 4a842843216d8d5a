"""Offline mutation queue for LotSync.

Local writes made while the backend is unreachable are recorded here together
with a snapshot of the record they were based on. When connectivity returns
the queue is replayed serially, in queue order, through an executor supplied
by the caller (normally BackendClient.execute_mutation).

Status transitions:
    pending -> processing -> (removed | pending | failed | conflict)
    conflict -> (removed | pending) via resolve_conflict()
    failed -> pending via retry_failed()

Only one replay runs at a time per store. The running queue holds a lock
record in the sync_metadata collection, refreshed after every mutation; a
lock older than LOCK_TIMEOUT_SECONDS is treated as left behind by a crashed
process. The time of the last completed replay is kept there as well.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from uuid6 import uuid7

from .conflicts import DEFAULT_SKIP_FIELDS, has_conflict
from .models import (
    ExecuteResult,
    MutationStatus,
    MutationType,
    QueuedMutation,
    Resolution,
    SyncResult,
    SyncStatus,
)
from .store import SYNC_METADATA, SYNC_QUEUE, KeyValueStore
from .validation import (
    ValidationError,
    mutation_from_dict,
    mutation_to_dict,
    validate_mutation_type,
    validate_record,
    validate_record_id,
    validate_resolution,
    validate_table_name,
)

logger = logging.getLogger(__name__)

__all__ = ["SyncQueue", "MutationExecutor"]

MutationExecutor = Callable[[QueuedMutation], ExecuteResult]

DEFAULT_MAX_ATTEMPTS = 3
LOCK_TIMEOUT_SECONDS = 300

SYNC_LOCK_KEY = "sync_lock"
LAST_SYNC_KEY = "last_sync"


class SyncQueue:
    """Persistent queue of local mutations awaiting sync."""

    def __init__(
        self,
        store: KeyValueStore,
        is_online: Callable[[], bool] = lambda: True,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
        skip_fields: Iterable[str] = DEFAULT_SKIP_FIELDS,
    ) -> None:
        """Initialize the queue.

        Args:
            store: Persistence backend
            is_online: Returns True when the backend is reachable
            max_attempts: Failed attempts before a mutation is marked failed
            clock: Source of Unix timestamps
            skip_fields: Metadata fields ignored when detecting conflicts
        """
        self.store = store
        self.is_online = is_online
        self.max_attempts = max_attempts
        self.clock = clock
        self.skip_fields = frozenset(skip_fields)
        self._owner = uuid7().hex
        self._running = False
        self._status = SyncStatus()
        self._recover_interrupted()
        self.refresh_status()

    def _recover_interrupted(self) -> None:
        """Return mutations left in 'processing' by an interrupted run to pending.

        Rows are only recovered when no live sync lock exists; while another
        queue holds the lock its in-flight mutation is left alone.
        """
        holder = self._lock_holder()
        if holder is not None:
            logger.info(f"Sync lock held by {holder.get('owner')}, not recovering")
            return
        for mutation in self._by_status(MutationStatus.PROCESSING):
            self._save(replace(mutation, status=MutationStatus.PENDING))
            logger.info(f"Recovered interrupted mutation {mutation.id}")

    # ===== Persistence helpers =====

    def _save(self, mutation: QueuedMutation) -> None:
        self.store.put(SYNC_QUEUE, mutation.id, mutation_to_dict(mutation))

    def _load_all(self) -> List[QueuedMutation]:
        mutations = []
        for raw in self.store.all(SYNC_QUEUE):
            try:
                mutations.append(mutation_from_dict(raw))
            except ValidationError as e:
                logger.error(f"Skipping malformed queue record {raw.get('id')!r}: {e}")
        return mutations

    def _by_status(self, status: MutationStatus) -> List[QueuedMutation]:
        mutations = [m for m in self._load_all() if m.status == status]
        return sorted(mutations, key=lambda m: (m.created_at, m.id))

    # ===== Sync lock =====

    def _lock_holder(self) -> Optional[Dict[str, Any]]:
        """The live sync lock record, or None if free or stale."""
        raw = self.store.get(SYNC_METADATA, SYNC_LOCK_KEY)
        if not raw:
            return None
        acquired_at = raw.get("acquiredAt")
        if not isinstance(acquired_at, (int, float)):
            return None
        if self.clock() - acquired_at >= LOCK_TIMEOUT_SECONDS:
            return None
        return raw

    def _acquire_lock(self) -> bool:
        holder = self._lock_holder()
        if holder is not None and holder.get("owner") != self._owner:
            return False
        self.store.put(SYNC_METADATA, SYNC_LOCK_KEY, {
            "owner": self._owner,
            "acquiredAt": self.clock(),
        })
        # Another process may have written between the read and the put
        confirmed = self.store.get(SYNC_METADATA, SYNC_LOCK_KEY)
        return bool(confirmed) and confirmed.get("owner") == self._owner

    def _release_lock(self) -> None:
        raw = self.store.get(SYNC_METADATA, SYNC_LOCK_KEY)
        if raw and raw.get("owner") == self._owner:
            self.store.delete(SYNC_METADATA, SYNC_LOCK_KEY)

    # ===== Queries =====

    @property
    def status(self) -> SyncStatus:
        """Current queue counters."""
        return self._status

    def refresh_status(self) -> SyncStatus:
        """Recount mutations and reload the shared sync state."""
        mutations = self._load_all()
        self._status.is_processing = self._running or self._lock_holder() is not None
        last_sync = self.store.get(SYNC_METADATA, LAST_SYNC_KEY)
        if last_sync and isinstance(last_sync.get("at"), (int, float)):
            self._status.last_sync_at = datetime.fromtimestamp(last_sync["at"])
        self._status.pending_count = sum(
            1 for m in mutations
            if m.status in (MutationStatus.PENDING, MutationStatus.PROCESSING)
        )
        self._status.failed_count = sum(
            1 for m in mutations if m.status == MutationStatus.FAILED
        )
        self._status.conflict_count = sum(
            1 for m in mutations if m.status == MutationStatus.CONFLICT
        )
        return self._status

    def get_mutation(self, mutation_id: str) -> Optional[QueuedMutation]:
        """Get a queued mutation by ID."""
        raw = self.store.get(SYNC_QUEUE, mutation_id)
        return mutation_from_dict(raw) if raw else None

    def find_mutation(self, id_prefix: str) -> Optional[QueuedMutation]:
        """Find a mutation by full ID or unambiguous ID prefix."""
        exact = self.get_mutation(id_prefix)
        if exact:
            return exact
        matches = [m for m in self._load_all() if m.id.startswith(id_prefix)]
        if len(matches) > 1:
            raise ValidationError("id", f"prefix '{id_prefix}' is ambiguous")
        return matches[0] if matches else None

    def get_all_mutations(self) -> List[QueuedMutation]:
        """All queued mutations in queue order."""
        return sorted(self._load_all(), key=lambda m: (m.created_at, m.id))

    def get_pending_mutations(self) -> List[QueuedMutation]:
        """Mutations waiting to be synced, in queue order."""
        return self._by_status(MutationStatus.PENDING)

    def get_failed_mutations(self) -> List[QueuedMutation]:
        """Mutations that exhausted their attempts."""
        return self._by_status(MutationStatus.FAILED)

    def get_conflicts(self) -> List[QueuedMutation]:
        """Mutations waiting for conflict resolution, in queue order."""
        return self._by_status(MutationStatus.CONFLICT)

    # ===== Mutations =====

    def queue_mutation(
        self,
        type: Union[MutationType, str],
        table: str,
        record_id: str,
        data: Optional[Dict[str, Any]],
        original_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> str:
        """Record a local write.

        Args:
            type: CREATE, UPDATE or DELETE
            table: Backend table
            record_id: ID of the affected record
            data: Proposed field values (may be empty for DELETE)
            original_data: Snapshot of the record before the change
            user_id: ID of the user making the change

        Returns:
            ID of the queued mutation
        """
        mutation = QueuedMutation(
            id=uuid7().hex,
            type=validate_mutation_type(type),
            table=validate_table_name(table),
            record_id=validate_record_id(record_id),
            data=validate_record(data if data is not None else {}, "data"),
            original_data=validate_record(original_data, "original_data", allow_none=True),
            created_at=self.clock(),
            user_id=user_id,
        )
        self._save(mutation)
        self.refresh_status()
        logger.info(f"Mutation queued: {mutation.id} ({mutation.type.value} {table}/{mutation.record_id})")
        return mutation.id

    def remove_mutation(self, mutation_id: str) -> bool:
        """Delete a mutation from the queue."""
        removed = self.store.delete(SYNC_QUEUE, mutation_id)
        self.refresh_status()
        return removed

    def clear_queue(self) -> None:
        """Remove every queued mutation."""
        self.store.clear(SYNC_QUEUE)
        self.refresh_status()
        logger.info("Sync queue cleared")

    def retry_failed(self) -> int:
        """Reset failed mutations to pending with a fresh attempt count.

        Returns:
            Number of mutations reset
        """
        failed = self.get_failed_mutations()
        for mutation in failed:
            self._save(replace(
                mutation, status=MutationStatus.PENDING, attempts=0, last_error=None
            ))
        self.refresh_status()
        if failed:
            logger.info(f"Re-queued {len(failed)} failed mutation(s)")
        return len(failed)

    def _record_failure(self, mutation: QueuedMutation, error: str) -> None:
        attempts = mutation.attempts + 1
        status = (
            MutationStatus.FAILED if attempts >= self.max_attempts else MutationStatus.PENDING
        )
        self._save(replace(mutation, status=status, attempts=attempts, last_error=error))

    def process_sync_queue(self, execute: MutationExecutor) -> SyncResult:
        """Replay pending mutations serially through `execute`.

        Each mutation is re-read just before it is executed and skipped
        unless it is still pending, so rows claimed or removed elsewhere are
        never sent twice.

        Args:
            execute: Called once per mutation, returns an ExecuteResult

        Returns:
            SyncResult with success, failed and conflict counts
        """
        result = SyncResult()

        if not self.is_online():
            logger.info("Offline, skipping sync")
            return result

        if self._running or not self._acquire_lock():
            logger.info("Sync already in progress, skipping")
            return result

        self._running = True
        self._status.is_processing = True
        try:
            mutations = self.get_pending_mutations()
            logger.info(f"Processing {len(mutations)} mutation(s)")

            for queued in mutations:
                mutation = self.get_mutation(queued.id)
                if mutation is None or mutation.status != MutationStatus.PENDING:
                    logger.info(f"Mutation {queued.id} no longer pending, skipping")
                    continue

                self._acquire_lock()
                processing = replace(mutation, status=MutationStatus.PROCESSING)
                self._save(processing)

                try:
                    outcome = execute(processing)
                except Exception as e:
                    logger.error(f"Mutation {mutation.id} failed: {e}")
                    self._record_failure(mutation, str(e) or type(e).__name__)
                    result.failed += 1
                    continue

                if outcome.success:
                    self.store.delete(SYNC_QUEUE, mutation.id)
                    result.success += 1
                elif outcome.server_data is not None and has_conflict(
                    mutation.original_data, mutation.data, outcome.server_data,
                    self.skip_fields,
                ):
                    self._save(replace(
                        mutation,
                        status=MutationStatus.CONFLICT,
                        server_data=outcome.server_data,
                    ))
                    logger.warning(f"Conflict detected for {mutation.table}/{mutation.record_id}")
                    result.conflicts += 1
                else:
                    self._record_failure(mutation, "Sync failed")
                    result.failed += 1

            self.store.put(SYNC_METADATA, LAST_SYNC_KEY, {"at": self.clock()})
        finally:
            self._running = False
            self._release_lock()
            self.refresh_status()

        logger.info(
            f"Sync complete: success={result.success}, failed={result.failed}, "
            f"conflicts={result.conflicts}"
        )
        return result

    def resolve_conflict(
        self,
        mutation_id: str,
        resolution: Union[Resolution, str],
        merged_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Resolve a conflicting mutation.

        'server' discards the local change. 'local' and 'merge' re-queue the
        mutation as pending (merge with `merged_data`, falling back to the
        local data); the server row becomes the new base snapshot so the
        next replay does not report the same conflict again.

        Args:
            mutation_id: ID of the conflicting mutation
            resolution: 'local', 'server' or 'merge'
            merged_data: Merged record for 'merge'
        """
        resolution = validate_resolution(resolution)
        mutation = self.get_mutation(mutation_id)
        if mutation is None:
            logger.warning(f"Cannot resolve unknown mutation {mutation_id}")
            return

        if resolution == Resolution.SERVER:
            self.remove_mutation(mutation_id)
            logger.info(f"Resolved {mutation_id}: kept server version")
            return

        data = mutation.data
        if resolution == Resolution.MERGE and merged_data is not None:
            data = validate_record(merged_data, "merged_data")

        base = mutation.server_data if mutation.server_data is not None else mutation.original_data
        self._save(replace(
            mutation,
            status=MutationStatus.PENDING,
            data=data,
            original_data=base,
            server_data=None,
            attempts=0,
            last_error=None,
        ))
        self.refresh_status()
        logger.info(f"Resolved {mutation_id} with {resolution.value}, re-queued")
