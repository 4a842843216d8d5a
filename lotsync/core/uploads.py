"""Upload backup and retry for LotSync.

Payloads (e.g. stock-take capture images) are backed up to the store before
upload. Failed uploads are retried later in a single serial loop with
exponential backoff; there is never more than one retry in flight.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Callable, List, Optional, Tuple

from uuid6 import uuid7

from .models import PendingUpload, UploadStatus
from .retry import DEFAULT_POLICY, RetryPolicy, Scheduler, SleepScheduler
from .store import PENDING_UPLOADS, KeyValueStore
from .validation import ValidationError, upload_from_dict, upload_to_dict

logger = logging.getLogger(__name__)

__all__ = ["UploadRetry", "RetryState"]

UploadFn = Callable[[PendingUpload], bool]


@dataclass
class RetryState:
    """Progress of the current retry loop."""

    is_retrying: bool = False
    current_retry: int = 0
    max_retries: int = DEFAULT_POLICY.max_retries


class UploadRetry:
    """Backs up uploads and retries the failed ones."""

    def __init__(
        self,
        store: KeyValueStore,
        scheduler: Optional[Scheduler] = None,
        policy: RetryPolicy = DEFAULT_POLICY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.policy = policy
        self.scheduler = scheduler if scheduler is not None else SleepScheduler(policy)
        self.clock = clock
        self.retry_state = RetryState(max_retries=policy.max_retries)

    def _save(self, upload: PendingUpload) -> None:
        self.store.put(PENDING_UPLOADS, upload.id, upload_to_dict(upload))

    def get_upload(self, backup_id: str) -> Optional[PendingUpload]:
        """Get an upload backup by ID."""
        raw = self.store.get(PENDING_UPLOADS, backup_id)
        return upload_from_dict(raw) if raw else None

    def backup_before_upload(
        self,
        session_id: str,
        capture_sequence: int,
        user_id: str,
        payload: str,
    ) -> str:
        """Save a payload before attempting its upload.

        Returns:
            Backup ID to pass to mark_upload_success/mark_upload_failed
        """
        upload = upload_from_dict({
            "id": uuid7().hex,
            "sessionId": session_id,
            "captureSequence": capture_sequence,
            "userId": user_id,
            "payload": payload,
            "createdAt": self.clock(),
        })
        self._save(upload)
        logger.info(f"Backup saved: {upload.id}")
        return upload.id

    def mark_upload_success(self, backup_id: str) -> None:
        """Drop the backup of a successful upload."""
        if self.store.delete(PENDING_UPLOADS, backup_id):
            logger.info(f"Backup removed after success: {backup_id}")

    def mark_upload_failed(self, backup_id: str, error: str) -> None:
        """Flag a backup as failed so the retry loop picks it up."""
        upload = self.get_upload(backup_id)
        if upload is None:
            raise ValidationError("backup_id", f"unknown backup '{backup_id}'")
        self._save(replace(upload, status=UploadStatus.FAILED, last_error=error))
        logger.info(f"Marked as failed: {backup_id}")

    def get_pending_uploads(self) -> List[PendingUpload]:
        """All backed-up uploads, oldest first."""
        uploads = []
        for raw in self.store.all(PENDING_UPLOADS):
            try:
                uploads.append(upload_from_dict(raw))
            except ValidationError as e:
                logger.error(f"Skipping malformed upload backup: {e}")
        return sorted(uploads, key=lambda u: (u.created_at, u.id))

    @property
    def pending_count(self) -> int:
        return len(self.get_pending_uploads())

    def retry_failed_uploads(self, upload_fn: UploadFn) -> Tuple[int, int]:
        """Retry failed uploads that still have retries left.

        Each upload waits for its backoff delay before the attempt.

        Args:
            upload_fn: Performs the upload, returns True on success

        Returns:
            Tuple of (succeeded, failed)
        """
        candidates = [
            u for u in self.get_pending_uploads()
            if u.status == UploadStatus.FAILED and u.retry_count < self.policy.max_retries
        ]
        if not candidates:
            return 0, 0

        succeeded = 0
        failed = 0
        self.retry_state = RetryState(
            is_retrying=True, current_retry=0, max_retries=self.policy.max_retries
        )

        try:
            for upload in candidates:
                retry_count = upload.retry_count + 1
                upload = replace(upload, retry_count=retry_count)
                self._save(upload)
                self.retry_state.current_retry = retry_count

                self.scheduler.schedule_retry(retry_count - 1)

                self._save(replace(upload, status=UploadStatus.UPLOADING))
                try:
                    ok = upload_fn(upload)
                except Exception as e:
                    logger.error(f"Retry failed: {upload.id}: {e}")
                    self._save(replace(upload, status=UploadStatus.FAILED, last_error=str(e)))
                    failed += 1
                    continue

                if ok:
                    self.store.delete(PENDING_UPLOADS, upload.id)
                    logger.info(f"Retry succeeded: {upload.id}")
                    succeeded += 1
                else:
                    self._save(replace(
                        upload, status=UploadStatus.FAILED, last_error="Upload returned false"
                    ))
                    failed += 1
        finally:
            self.retry_state = RetryState(max_retries=self.policy.max_retries)

        return succeeded, failed

    def clear_all_backups(self) -> None:
        """Delete every upload backup."""
        self.store.clear(PENDING_UPLOADS)
