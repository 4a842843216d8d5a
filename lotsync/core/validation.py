"""Input validation for LotSync.

This module validates everything that crosses a boundary (queue records read
from the store, request bodies, backend rows, CLI arguments) and converts the
wire dictionaries into the domain dataclasses exactly once.
All validators raise ValidationError with descriptive messages.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

from .models import (
    FieldSide,
    MutationStatus,
    MutationType,
    PendingUpload,
    QueuedMutation,
    Resolution,
    UploadStatus,
)


class ValidationError(ValueError):
    """Validation error with field and message attributes."""

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"

    def __repr__(self) -> str:
        return f"ValidationError(field='{self.field}', message='{self.message}')"


__all__ = [
    "ValidationError",
    "validate_table_name",
    "validate_record_id",
    "validate_mutation_type",
    "validate_resolution",
    "validate_field_side",
    "validate_record",
    "mutation_from_dict",
    "mutation_to_dict",
    "upload_from_dict",
    "upload_to_dict",
]

# Limits
MAX_TABLE_NAME_LENGTH = 63  # PostgreSQL identifier limit
MAX_RECORD_ID_LENGTH = 128
MAX_ERROR_LENGTH = 1000

_TABLE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


def validate_table_name(table: Any, field_name: str = "table") -> str:
    """Validate a backend table name."""
    if not isinstance(table, str):
        raise ValidationError(field_name, f"must be a string, got {type(table).__name__}")
    if not table:
        raise ValidationError(field_name, "cannot be empty")
    if len(table) > MAX_TABLE_NAME_LENGTH:
        raise ValidationError(
            field_name, f"must be at most {MAX_TABLE_NAME_LENGTH} characters"
        )
    if not _TABLE_NAME_RE.match(table):
        raise ValidationError(
            field_name, "must contain only lowercase letters, digits and underscores"
        )
    return table


def validate_record_id(record_id: Any, field_name: str = "record_id") -> str:
    """Validate a record ID (UUIDs, lot numbers, etc.)."""
    if not isinstance(record_id, str):
        raise ValidationError(
            field_name, f"must be a string, got {type(record_id).__name__}"
        )
    record_id = record_id.strip()
    if not record_id:
        raise ValidationError(field_name, "cannot be empty")
    if len(record_id) > MAX_RECORD_ID_LENGTH:
        raise ValidationError(
            field_name, f"must be at most {MAX_RECORD_ID_LENGTH} characters"
        )
    return record_id


def validate_mutation_type(value: Any, field_name: str = "type") -> MutationType:
    """Validate a mutation type (case-insensitive)."""
    if isinstance(value, MutationType):
        return value
    if not isinstance(value, str):
        raise ValidationError(field_name, f"must be a string, got {type(value).__name__}")
    try:
        return MutationType(value.upper())
    except ValueError:
        choices = ", ".join(t.value for t in MutationType)
        raise ValidationError(field_name, f"must be one of {choices}") from None


def validate_resolution(value: Any, field_name: str = "resolution") -> Resolution:
    """Validate a whole-mutation resolution ('local', 'server' or 'merge')."""
    if isinstance(value, Resolution):
        return value
    try:
        return Resolution(value)
    except ValueError:
        raise ValidationError(
            field_name, "must be 'local', 'server' or 'merge'"
        ) from None


def validate_field_side(value: Any, field_name: str = "resolution") -> FieldSide:
    """Validate a per-field resolution ('local' or 'server')."""
    if isinstance(value, FieldSide):
        return value
    try:
        return FieldSide(value)
    except ValueError:
        raise ValidationError(field_name, "must be 'local' or 'server'") from None


def validate_record(
    value: Any, field_name: str = "data", allow_none: bool = False
) -> Optional[Dict[str, Any]]:
    """Validate a JSON object record (string keys only)."""
    if value is None:
        if allow_none:
            return None
        raise ValidationError(field_name, "is required")
    if not isinstance(value, Mapping):
        raise ValidationError(
            field_name, f"must be an object, got {type(value).__name__}"
        )
    for key in value:
        if not isinstance(key, str):
            raise ValidationError(field_name, "keys must be strings")
    return dict(value)


def _validate_int(value: Any, field_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(field_name, "must be an integer")
    if value < 0:
        raise ValidationError(field_name, "cannot be negative")
    return value


def _validate_timestamp(value: Any, field_name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field_name, "must be a Unix timestamp")
    return float(value)


def _truncate_error(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)[:MAX_ERROR_LENGTH]


def mutation_from_dict(raw: Any) -> QueuedMutation:
    """Convert a persisted/wire queue record into a QueuedMutation.

    Args:
        raw: Dict with keys id, table, recordId, type, data, originalData,
            createdAt and optionally attempts, status, lastError, serverData,
            userId

    Returns:
        Validated QueuedMutation

    Raises:
        ValidationError: If any field is missing or malformed
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("mutation", "must be an object")
    if not isinstance(raw.get("id"), str) or not raw.get("id"):
        raise ValidationError("id", "is required")

    status_value = raw.get("status", MutationStatus.PENDING.value)
    try:
        status = MutationStatus(status_value)
    except ValueError:
        raise ValidationError("status", f"unknown status '{status_value}'") from None

    return QueuedMutation(
        id=raw["id"],
        type=validate_mutation_type(raw.get("type")),
        table=validate_table_name(raw.get("table")),
        record_id=validate_record_id(raw.get("recordId"), "recordId"),
        data=validate_record(raw.get("data"), "data"),
        created_at=_validate_timestamp(raw.get("createdAt"), "createdAt"),
        original_data=validate_record(
            raw.get("originalData"), "originalData", allow_none=True
        ),
        attempts=_validate_int(raw.get("attempts", 0), "attempts"),
        status=status,
        last_error=_truncate_error(raw.get("lastError")),
        server_data=validate_record(raw.get("serverData"), "serverData", allow_none=True),
        user_id=raw.get("userId"),
    )


def mutation_to_dict(mutation: QueuedMutation) -> Dict[str, Any]:
    """Convert a QueuedMutation to its persisted/wire representation."""
    return {
        "id": mutation.id,
        "type": mutation.type.value,
        "table": mutation.table,
        "recordId": mutation.record_id,
        "data": mutation.data,
        "originalData": mutation.original_data,
        "createdAt": mutation.created_at,
        "attempts": mutation.attempts,
        "status": mutation.status.value,
        "lastError": mutation.last_error,
        "serverData": mutation.server_data,
        "userId": mutation.user_id,
    }


def upload_from_dict(raw: Any) -> PendingUpload:
    """Convert a persisted upload backup into a PendingUpload."""
    if not isinstance(raw, Mapping):
        raise ValidationError("upload", "must be an object")
    for key in ("id", "sessionId", "userId"):
        if not isinstance(raw.get(key), str) or not raw.get(key):
            raise ValidationError(key, "is required")
    if not isinstance(raw.get("payload"), str):
        raise ValidationError("payload", "must be a string")

    status_value = raw.get("status", UploadStatus.PENDING.value)
    try:
        status = UploadStatus(status_value)
    except ValueError:
        raise ValidationError("status", f"unknown status '{status_value}'") from None

    return PendingUpload(
        id=raw["id"],
        session_id=raw["sessionId"],
        capture_sequence=_validate_int(raw.get("captureSequence", 0), "captureSequence"),
        user_id=raw["userId"],
        payload=raw["payload"],
        created_at=_validate_timestamp(raw.get("createdAt"), "createdAt"),
        status=status,
        retry_count=_validate_int(raw.get("retryCount", 0), "retryCount"),
        last_error=_truncate_error(raw.get("lastError")),
    )


def upload_to_dict(upload: PendingUpload) -> Dict[str, Any]:
    """Convert a PendingUpload to its persisted representation."""
    return {
        "id": upload.id,
        "sessionId": upload.session_id,
        "captureSequence": upload.capture_sequence,
        "userId": upload.user_id,
        "payload": upload.payload,
        "createdAt": upload.created_at,
        "status": upload.status.value,
        "retryCount": upload.retry_count,
        "lastError": upload.last_error,
    }
