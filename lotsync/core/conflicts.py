"""Conflict detection and resolution for LotSync.

This module handles:
- Three-way field comparison of a queued mutation (original snapshot,
  local proposal, current server row)
- Applying per-field resolutions to build a merged record
- Formatting values and diffs for the resolution interfaces

Rules for each field (metadata fields are skipped):
1. Local changed, server unchanged -> take local (auto-merge)
2. Server changed, local unchanged -> take server (auto-merge)
3. Both changed to the same value -> take local (auto-merge)
4. Both changed to different values -> CONFLICT (needs a resolution)

Composite values (objects, arrays) are compared as whole values; there is no
per-element diff of line items.

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import difflib
import json
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .models import ConflictAnalysis, ConflictInfo, FieldSide
from .validation import ValidationError, validate_field_side

logger = logging.getLogger(__name__)

__all__ = [
    "MISSING",
    "DEFAULT_SKIP_FIELDS",
    "values_equal",
    "analyze_conflicts",
    "apply_resolutions",
    "unresolved_fields",
    "has_conflict",
    "format_value_for_display",
    "get_diff_preview",
    "analysis_to_dict",
]

DEFAULT_SKIP_FIELDS = frozenset(
    ["id", "created_at", "updated_at", "created_by", "updated_by"]
)


class _Missing:
    """Marker for a field that is absent from a record (distinct from None)."""

    _instance: Optional["_Missing"] = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def _canonical(value: Any) -> str:
    """Stable JSON text for container comparison."""
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


def values_equal(a: Any, b: Any) -> bool:
    """Compare two field values.

    Booleans never equal numbers, ints and floats compare by value, and
    objects/arrays compare as whole values regardless of key order.
    """
    if a is b:
        return True
    if a is MISSING or b is MISSING:
        return False
    if a is None or b is None:
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return type(a) is type(b) and a == b
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return a == b
    if isinstance(a, Mapping) or isinstance(b, Mapping):
        if not (isinstance(a, Mapping) and isinstance(b, Mapping)):
            return False
        return _canonical(a) == _canonical(b)
    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        if not (isinstance(a, (list, tuple)) and isinstance(b, (list, tuple))):
            return False
        return _canonical(list(a)) == _canonical(list(b))
    return type(a) is type(b) and a == b


def _get(record: Mapping[str, Any], field: str) -> Any:
    return record[field] if field in record else MISSING


def _all_fields(*records: Mapping[str, Any]) -> List[str]:
    """Union of field names in first-seen order."""
    seen: Dict[str, None] = {}
    for record in records:
        for key in record:
            seen.setdefault(key, None)
    return list(seen)


def analyze_conflicts(
    original: Optional[Mapping[str, Any]],
    local: Optional[Mapping[str, Any]],
    server: Optional[Mapping[str, Any]],
    skip_fields: Iterable[str] = DEFAULT_SKIP_FIELDS,
) -> ConflictAnalysis:
    """Classify every field of a record as conflicting or auto-mergeable.

    Args:
        original: Snapshot taken when the mutation was queued (None = empty)
        local: Locally proposed values
        server: Current server values
        skip_fields: Metadata fields that are never compared

    Returns:
        ConflictAnalysis with conflicts and auto-mergeable entries
    """
    original = original or {}
    local = local or {}
    server = server or {}
    skip = set(skip_fields)

    conflicts: List[ConflictInfo] = []
    auto_mergeable: List[ConflictInfo] = []

    for field in _all_fields(original, local, server):
        if field in skip:
            continue

        original_value = _get(original, field)
        local_value = _get(local, field)
        server_value = _get(server, field)

        local_changed = not values_equal(local_value, original_value)
        server_changed = not values_equal(server_value, original_value)

        if not local_changed and not server_changed:
            continue

        if local_changed and server_changed:
            if values_equal(local_value, server_value):
                # Both sides converged on the same new value
                auto_mergeable.append(ConflictInfo(
                    field, original_value, local_value, server_value, FieldSide.LOCAL
                ))
            else:
                conflicts.append(ConflictInfo(
                    field, original_value, local_value, server_value
                ))
        elif local_changed:
            auto_mergeable.append(ConflictInfo(
                field, original_value, local_value, server_value, FieldSide.LOCAL
            ))
        else:
            auto_mergeable.append(ConflictInfo(
                field, original_value, local_value, server_value, FieldSide.SERVER
            ))

    return ConflictAnalysis(conflicts=conflicts, auto_mergeable=auto_mergeable)


def unresolved_fields(
    analysis: ConflictAnalysis, resolutions: Mapping[str, Any]
) -> List[str]:
    """Conflicting fields that have no entry in the resolution map."""
    return [c.field for c in analysis.conflicts if not resolutions.get(c.field)]


def _assign(merged: Dict[str, Any], field: str, value: Any) -> None:
    if value is MISSING:
        merged.pop(field, None)
    else:
        merged[field] = value


def apply_resolutions(
    original: Optional[Mapping[str, Any]],
    local: Optional[Mapping[str, Any]],
    server: Optional[Mapping[str, Any]],
    resolutions: Mapping[str, Any],
    skip_fields: Iterable[str] = DEFAULT_SKIP_FIELDS,
) -> Dict[str, Any]:
    """Build the merged record from a resolution map.

    The server record is the base. Auto-mergeable local winners are applied,
    then each conflicting field takes the side named in `resolutions`.

    Args:
        original: Snapshot taken when the mutation was queued
        local: Locally proposed values
        server: Current server values
        resolutions: Mapping of field name to 'local' or 'server'
        skip_fields: Metadata fields that are never compared

    Returns:
        Merged record

    Raises:
        ValidationError: If a conflicting field has no resolution, or a
            resolution value is not 'local'/'server'
    """
    skip_fields = frozenset(skip_fields)
    analysis = analyze_conflicts(original, local, server, skip_fields)

    missing = unresolved_fields(analysis, resolutions)
    if missing:
        raise ValidationError(
            "resolutions", f"unresolved conflicting fields: {', '.join(missing)}"
        )

    merged: Dict[str, Any] = dict(server or {})

    for item in analysis.auto_mergeable:
        if item.resolution == FieldSide.LOCAL:
            _assign(merged, item.field, item.local_value)

    for conflict in analysis.conflicts:
        side = validate_field_side(resolutions[conflict.field], conflict.field)
        if side == FieldSide.LOCAL:
            _assign(merged, conflict.field, conflict.local_value)

    logger.debug(
        f"Merged {len(analysis.conflicts)} conflicting and "
        f"{len(analysis.auto_mergeable)} auto-mergeable fields"
    )
    return merged


def has_conflict(
    original: Optional[Mapping[str, Any]],
    local: Mapping[str, Any],
    server: Mapping[str, Any],
    skip_fields: Iterable[str] = DEFAULT_SKIP_FIELDS,
) -> bool:
    """Quick check used while replaying the queue.

    Without an original snapshot there is nothing to compare against, so no
    conflict is reported. Otherwise a conflict exists if any field the local
    side changed was also changed on the server to a different value.
    Metadata fields in skip_fields are ignored, as in analyze_conflicts.
    """
    if original is None:
        return False

    skip = set(skip_fields)
    for field in local:
        if field in skip:
            continue
        local_value = _get(local, field)
        original_value = _get(original, field)
        if values_equal(local_value, original_value):
            continue
        server_value = _get(server, field)
        server_changed = not values_equal(server_value, original_value)
        if server_changed and not values_equal(local_value, server_value):
            return True

    return False


def format_value_for_display(value: Any) -> str:
    """Render a field value for the resolution interfaces."""
    if value is None or value is MISSING:
        return "(empty)"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (int, float)):
        return f"{value:,}"
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    if isinstance(value, Mapping):
        return json.dumps(value, indent=2, ensure_ascii=False, default=str)
    return str(value)


def get_diff_preview(analysis: ConflictAnalysis, include_auto: bool = False) -> str:
    """Get a unified diff of the conflicting fields (server -> local).

    Args:
        analysis: Analysis of the conflict being viewed
        include_auto: Also include auto-mergeable fields

    Returns:
        Unified diff string (empty if nothing differs)
    """
    items = list(analysis.conflicts)
    if include_auto:
        items.extend(analysis.auto_mergeable)

    server_lines: List[str] = []
    local_lines: List[str] = []
    for item in items:
        server_lines.extend(_field_lines(item.field, item.server_value))
        local_lines.extend(_field_lines(item.field, item.local_value))

    diff = difflib.unified_diff(
        server_lines,
        local_lines,
        fromfile="Server",
        tofile="Local",
        lineterm="",
    )
    return "\n".join(diff)


def _field_lines(field: str, value: Any) -> List[str]:
    rendered = format_value_for_display(value).splitlines() or [""]
    lines = [f"{field}: {rendered[0]}"]
    lines.extend(f"{field}:   {line}" for line in rendered[1:])
    return lines


def _plain(value: Any) -> Any:
    return None if value is MISSING else value


def analysis_to_dict(analysis: ConflictAnalysis) -> Dict[str, Any]:
    """JSON-ready form of an analysis (absent values become null)."""

    def item(info: ConflictInfo) -> Dict[str, Any]:
        return {
            "field": info.field,
            "originalValue": _plain(info.original_value),
            "localValue": _plain(info.local_value),
            "serverValue": _plain(info.server_value),
            "resolution": info.resolution.value if info.resolution else None,
        }

    return {
        "hasConflicts": analysis.has_conflicts,
        "conflicts": [item(c) for c in analysis.conflicts],
        "autoMergeable": [item(a) for a in analysis.auto_mergeable],
    }
