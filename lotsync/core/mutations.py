"""Online/offline mutation entry point for LotSync.

Writes go straight to the backend when it is reachable (with network retry)
and are queued for background sync when it is not.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from uuid6 import uuid7

from .backend import BackendClient
from .models import MutationType, QueuedMutation
from .retry import DEFAULT_POLICY, RetryPolicy, Scheduler, retry_call
from .sync_queue import SyncQueue
from .validation import (
    validate_mutation_type,
    validate_record,
    validate_record_id,
    validate_table_name,
)

logger = logging.getLogger(__name__)

__all__ = ["OfflineMutator", "MutationOutcome"]


@dataclass(frozen=True)
class MutationOutcome:
    """Result of a write.

    Attributes:
        data: Row returned by the backend, or the submitted data when queued
        queued: True if the write was queued for later sync
        mutation_id: Queue ID when queued
    """

    data: Optional[Dict[str, Any]]
    queued: bool
    mutation_id: Optional[str] = None


class OfflineMutator:
    """Performs writes online, or queues them while offline."""

    def __init__(
        self,
        queue: SyncQueue,
        backend: Optional[BackendClient],
        is_online: Callable[[], bool],
        policy: RetryPolicy = DEFAULT_POLICY,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.queue = queue
        self.backend = backend
        self.is_online = is_online
        self.policy = policy
        self.scheduler = scheduler

    def mutate(
        self,
        type: Union[MutationType, str],
        table: str,
        data: Optional[Dict[str, Any]],
        record_id: Optional[str] = None,
        original_data: Optional[Dict[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> MutationOutcome:
        """Write a record change.

        Args:
            type: CREATE, UPDATE or DELETE
            table: Backend table
            data: Field values to write
            record_id: Target record (generated for CREATE when omitted)
            original_data: Snapshot of the record before the change
            user_id: ID of the user making the change

        Returns:
            MutationOutcome describing whether the write was applied or queued

        Raises:
            BackendError: If the online write fails after retries
        """
        mutation_type = validate_mutation_type(type)
        validate_table_name(table)
        payload = validate_record(data if data is not None else {}, "data")
        record_id = validate_record_id(record_id) if record_id is not None else uuid7().hex

        if self.backend is not None and self.is_online():
            mutation = QueuedMutation(
                id=uuid7().hex,
                type=mutation_type,
                table=table,
                record_id=record_id,
                data=payload,
                original_data=original_data,
                created_at=0.0,
                user_id=user_id,
            )
            row = retry_call(
                lambda: self.backend.write(mutation),
                policy=self.policy,
                scheduler=self.scheduler,
            )
            logger.info(f"{mutation_type.value} {table}/{record_id} applied online")
            return MutationOutcome(data=row, queued=False)

        mutation_id = self.queue.queue_mutation(
            mutation_type, table, record_id, payload, original_data, user_id
        )
        logger.info("Saved offline - will sync when connected")
        return MutationOutcome(data=payload, queued=True, mutation_id=mutation_id)

    def create(self, table: str, data: Dict[str, Any], **kwargs: Any) -> MutationOutcome:
        """Create a record."""
        return self.mutate(MutationType.CREATE, table, data, **kwargs)

    def update(
        self, table: str, record_id: str, data: Dict[str, Any], **kwargs: Any
    ) -> MutationOutcome:
        """Update a record."""
        return self.mutate(MutationType.UPDATE, table, data, record_id=record_id, **kwargs)

    def remove(self, table: str, record_id: str, **kwargs: Any) -> MutationOutcome:
        """Delete a record."""
        return self.mutate(MutationType.DELETE, table, {}, record_id=record_id, **kwargs)
