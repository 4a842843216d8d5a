"""Conflict resolution session for LotSync.

Drives an operator through a list of conflicting mutations, one at a time:

    viewing conflict N of M
        -> keep local | keep server | merge (all fields resolved)
        -> conflict N+1, or closed after the last one

Per-field choices only live while a conflict is on screen; moving to another
conflict (forward or back) clears them. The side-by-side and unified views
render the same analysis and never touch the choices.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Union

from .conflicts import (
    DEFAULT_SKIP_FIELDS,
    analyze_conflicts,
    apply_resolutions,
    get_diff_preview,
    unresolved_fields,
)
from .models import ConflictAnalysis, FieldSide, QueuedMutation, Resolution
from .validation import ValidationError, validate_field_side

logger = logging.getLogger(__name__)

__all__ = ["ConflictResolutionSession", "ViewMode", "ResolveCallback"]

# on_resolve(mutation_id, 'local' | 'server' | 'merge', merged_data)
ResolveCallback = Callable[[str, str, Optional[Dict[str, Any]]], None]


class ViewMode(Enum):
    """How the current conflict is presented."""

    SIDE_BY_SIDE = "side_by_side"
    UNIFIED = "unified"


def server_view(mutation: QueuedMutation) -> Dict[str, Any]:
    """The server side of a conflict (falls back to the queued snapshot)."""
    if mutation.server_data is not None:
        return mutation.server_data
    return mutation.original_data or {}


class ConflictResolutionSession:
    """State machine behind the conflict resolution dialog."""

    def __init__(
        self,
        conflicts: Sequence[QueuedMutation],
        on_resolve: ResolveCallback,
        on_close: Optional[Callable[[], None]] = None,
        skip_fields: Iterable[str] = DEFAULT_SKIP_FIELDS,
    ) -> None:
        self.conflicts: List[QueuedMutation] = list(conflicts)
        self.on_resolve = on_resolve
        self.on_close = on_close
        self.skip_fields = frozenset(skip_fields)
        self.current_index = 0
        self.resolutions: Dict[str, FieldSide] = {}
        self.view_mode = ViewMode.SIDE_BY_SIDE
        self.is_resolving = False
        self.is_open = len(self.conflicts) > 0

    # ===== Current conflict =====

    @property
    def total(self) -> int:
        return len(self.conflicts)

    @property
    def current(self) -> Optional[QueuedMutation]:
        if not self.is_open or self.current_index >= len(self.conflicts):
            return None
        return self.conflicts[self.current_index]

    @property
    def position_label(self) -> str:
        """'N of M' for the conflict on screen."""
        return f"{self.current_index + 1} of {self.total}"

    @property
    def analysis(self) -> ConflictAnalysis:
        """Field analysis of the current conflict, recomputed on every access."""
        mutation = self.current
        if mutation is None:
            return ConflictAnalysis()
        return analyze_conflicts(
            mutation.original_data or {},
            mutation.data,
            server_view(mutation),
            self.skip_fields,
        )

    def unified_diff(self) -> str:
        """Unified diff text for the current conflict."""
        return get_diff_preview(self.analysis)

    # ===== Field choices =====

    def set_field_resolution(self, field: str, side: Union[FieldSide, str]) -> None:
        """Choose the winning side for one conflicting field."""
        if self.current is None:
            raise ValidationError("session", "no conflict is open")
        if field not in self.analysis.conflict_fields:
            raise ValidationError(field, "is not a conflicting field")
        self.resolutions[field] = validate_field_side(side, field)

    def clear_field_resolution(self, field: str) -> None:
        self.resolutions.pop(field, None)

    @property
    def unresolved(self) -> List[str]:
        return unresolved_fields(self.analysis, self.resolutions)

    @property
    def can_merge(self) -> bool:
        """True once every conflicting field has a choice."""
        return self.current is not None and not self.is_resolving and not self.unresolved

    def merged_preview(self) -> Optional[Dict[str, Any]]:
        """The record a merge would produce, or None while fields are unresolved."""
        if not self.can_merge:
            return None
        return self._merged_data()

    def _merged_data(self) -> Dict[str, Any]:
        mutation = self.current
        return apply_resolutions(
            mutation.original_data or {},
            mutation.data,
            server_view(mutation),
            {field: side.value for field, side in self.resolutions.items()},
            self.skip_fields,
        )

    # ===== Actions =====

    def keep_local(self) -> None:
        """Resolve the current conflict with the local version."""
        self._resolve(Resolution.LOCAL)

    def keep_server(self) -> None:
        """Resolve the current conflict with the server version."""
        self._resolve(Resolution.SERVER)

    def merge(self) -> Dict[str, Any]:
        """Resolve the current conflict with the per-field choices.

        Returns:
            The merged record passed to on_resolve

        Raises:
            ValidationError: If any conflicting field is still unresolved
        """
        if self.current is None:
            raise ValidationError("session", "no conflict is open")
        missing = self.unresolved
        if missing:
            raise ValidationError(
                "resolutions", f"unresolved conflicting fields: {', '.join(missing)}"
            )
        merged = self._merged_data()
        self._resolve(Resolution.MERGE, merged)
        return merged

    def _resolve(
        self, resolution: Resolution, merged: Optional[Dict[str, Any]] = None
    ) -> None:
        mutation = self.current
        if mutation is None:
            raise ValidationError("session", "no conflict is open")
        if self.is_resolving:
            raise ValidationError("session", "a resolution is already in progress")

        self.is_resolving = True
        try:
            self.on_resolve(mutation.id, resolution.value, merged)
        finally:
            self.is_resolving = False

        logger.info(f"Conflict {mutation.id} resolved with {resolution.value}")
        self._move_to_next()

    def _move_to_next(self) -> None:
        self.resolutions.clear()
        if self.current_index < len(self.conflicts) - 1:
            self.current_index += 1
        else:
            self.close()

    # ===== Navigation =====

    def next(self) -> bool:
        """Skip to the next conflict without resolving. False at the last one."""
        if self.current is None or self.current_index >= len(self.conflicts) - 1:
            return False
        self.current_index += 1
        self.resolutions.clear()
        return True

    def previous(self) -> bool:
        """Go back one conflict. Choices are not restored. False at the first."""
        if self.current is None or self.current_index == 0:
            return False
        self.current_index -= 1
        self.resolutions.clear()
        return True

    def toggle_view(self) -> ViewMode:
        """Switch between side-by-side and unified views."""
        if self.view_mode == ViewMode.SIDE_BY_SIDE:
            self.view_mode = ViewMode.UNIFIED
        else:
            self.view_mode = ViewMode.SIDE_BY_SIDE
        return self.view_mode

    def close(self) -> None:
        """Close the session and reset to the first conflict."""
        was_open = self.is_open
        self.is_open = False
        self.current_index = 0
        self.resolutions.clear()
        if was_open and self.on_close is not None:
            self.on_close()
