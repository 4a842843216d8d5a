"""Data models for LotSync.

This module defines immutable dataclasses representing the offline sync
entities: QueuedMutation, ConflictInfo, PendingUpload and the status/result
records reported by the sync queue.

Records are frozen. State transitions produce new instances via
dataclasses.replace() and are written back to the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class MutationType(Enum):
    """Kinds of local writes that can be queued."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class MutationStatus(Enum):
    """Lifecycle state of a queued mutation."""

    PENDING = "pending"
    PROCESSING = "processing"
    FAILED = "failed"
    CONFLICT = "conflict"


class Resolution(Enum):
    """How a whole conflicting mutation is resolved."""

    LOCAL = "local"
    SERVER = "server"
    MERGE = "merge"


class FieldSide(Enum):
    """Which side wins a single field."""

    LOCAL = "local"
    SERVER = "server"


class UploadStatus(Enum):
    """State of a backed-up upload."""

    PENDING = "pending"
    UPLOADING = "uploading"
    FAILED = "failed"


@dataclass(frozen=True)
class QueuedMutation:
    """A locally recorded intent to change a record, awaiting sync.

    Attributes:
        id: Queue entry ID (UUID7 hex, sorts by creation time)
        type: CREATE, UPDATE or DELETE
        table: Backend table the record lives in (e.g. "lots")
        record_id: ID of the affected record
        data: Proposed new field values
        original_data: Snapshot of the record when the mutation was queued
        created_at: Unix timestamp (seconds, float) of queueing
        attempts: Number of failed sync attempts so far
        status: Current lifecycle state
        last_error: Message of the most recent failure
        server_data: Server row captured when a conflict was detected
        user_id: ID of the user who made the change
    """

    id: str
    type: MutationType
    table: str
    record_id: str
    data: Dict[str, Any]
    created_at: float
    original_data: Optional[Dict[str, Any]] = None
    attempts: int = 0
    status: MutationStatus = MutationStatus.PENDING
    last_error: Optional[str] = None
    server_data: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ConflictInfo:
    """Per-field comparison of the original, local and server values.

    Derived, never persisted. `resolution` is only set for auto-mergeable
    fields, where it names the side that wins.
    """

    field: str
    original_value: Any
    local_value: Any
    server_value: Any
    resolution: Optional[FieldSide] = None


@dataclass(frozen=True)
class ConflictAnalysis:
    """Result of a three-way field comparison."""

    conflicts: List[ConflictInfo] = field(default_factory=list)
    auto_mergeable: List[ConflictInfo] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return len(self.conflicts) > 0

    @property
    def conflict_fields(self) -> List[str]:
        return [c.field for c in self.conflicts]


@dataclass
class SyncStatus:
    """Counters describing the queue, refreshed after every change."""

    is_processing: bool = False
    pending_count: int = 0
    failed_count: int = 0
    conflict_count: int = 0
    last_sync_at: Optional[datetime] = None


@dataclass
class SyncResult:
    """Outcome of one pass over the queue."""

    success: int = 0
    failed: int = 0
    conflicts: int = 0

    @property
    def total(self) -> int:
        return self.success + self.failed + self.conflicts


@dataclass(frozen=True)
class ExecuteResult:
    """What a mutation executor reports back for a single mutation.

    Attributes:
        success: True if the backend accepted the write
        server_data: Current server row, when the write was rejected and the
            row may have diverged from the queued snapshot
    """

    success: bool
    server_data: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class PendingUpload:
    """A payload backed up locally before upload, for later retry.

    Attributes:
        id: Backup ID (UUID7 hex)
        session_id: Capture session the upload belongs to
        capture_sequence: Position of the capture within the session
        user_id: Uploading user
        payload: Data to upload (e.g. a data URL of a captured image)
        created_at: Unix timestamp of the backup
        status: pending, uploading or failed
        retry_count: Number of retries already attempted
        last_error: Message of the most recent failure
    """

    id: str
    session_id: str
    capture_sequence: int
    user_id: str
    payload: str
    created_at: float
    status: UploadStatus = UploadStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
