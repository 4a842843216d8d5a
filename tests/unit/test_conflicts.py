"""Unit tests for three-way conflict analysis and resolution.

Tests core/conflicts.py: field classification, merged record building,
the replay-time conflict check and display helpers.
"""

from __future__ import annotations

import random
from typing import Any, Dict

import pytest

from lotsync.core.conflicts import (
    DEFAULT_SKIP_FIELDS,
    MISSING,
    analysis_to_dict,
    analyze_conflicts,
    apply_resolutions,
    format_value_for_display,
    get_diff_preview,
    has_conflict,
    unresolved_fields,
    values_equal,
)
from lotsync.core.models import FieldSide
from lotsync.core.validation import ValidationError


VALUE_POOL = [None, 0, 1, 5, 10, "A", "B", "C", True, False, [1, 2], {"k": 1}]


@pytest.mark.unit
class TestValuesEqual:
    """Tests for values_equal."""

    def test_scalars(self) -> None:
        assert values_equal(5, 5)
        assert values_equal("A", "A")
        assert not values_equal("A", "B")

    def test_bool_never_equals_number(self) -> None:
        """True and 1 are different field values."""
        assert not values_equal(True, 1)
        assert not values_equal(False, 0)

    def test_int_equals_float(self) -> None:
        assert values_equal(5, 5.0)

    def test_dicts_compared_whole_ignoring_key_order(self) -> None:
        assert values_equal({"a": 1, "b": [1, 2]}, {"b": [1, 2], "a": 1})
        assert not values_equal({"a": 1}, {"a": 2})

    def test_lists_are_order_sensitive(self) -> None:
        assert values_equal([1, 2], [1, 2])
        assert not values_equal([1, 2], [2, 1])

    def test_missing_differs_from_none(self) -> None:
        assert values_equal(MISSING, MISSING)
        assert not values_equal(MISSING, None)
        assert not values_equal(None, MISSING)


@pytest.mark.unit
class TestAnalyzeConflicts:
    """Tests for analyze_conflicts."""

    def test_both_changed_differently_is_conflict(self) -> None:
        """{status:A}/{status:B}/{status:C} gives one conflict."""
        analysis = analyze_conflicts({"status": "A"}, {"status": "B"}, {"status": "C"})
        assert analysis.has_conflicts
        assert analysis.conflict_fields == ["status"]
        conflict = analysis.conflicts[0]
        assert conflict.original_value == "A"
        assert conflict.local_value == "B"
        assert conflict.server_value == "C"
        assert conflict.resolution is None
        assert analysis.auto_mergeable == []

    def test_only_local_changed_auto_merges_to_local(self) -> None:
        """{qty:5}/{qty:10}/{qty:5}: no conflict, qty resolves to local."""
        analysis = analyze_conflicts({"qty": 5}, {"qty": 10}, {"qty": 5})
        assert not analysis.has_conflicts
        assert len(analysis.auto_mergeable) == 1
        item = analysis.auto_mergeable[0]
        assert item.field == "qty"
        assert item.resolution == FieldSide.LOCAL
        assert item.local_value == 10

    def test_only_server_changed_auto_merges_to_server(self) -> None:
        analysis = analyze_conflicts({"qty": 5}, {"qty": 5}, {"qty": 7})
        assert not analysis.has_conflicts
        assert analysis.auto_mergeable[0].resolution == FieldSide.SERVER

    def test_both_changed_to_same_value_auto_merges_to_local(self) -> None:
        analysis = analyze_conflicts({"qty": 5}, {"qty": 9}, {"qty": 9})
        assert not analysis.has_conflicts
        assert analysis.auto_mergeable[0].resolution == FieldSide.LOCAL

    def test_unchanged_fields_are_omitted(self) -> None:
        analysis = analyze_conflicts({"qty": 5, "bin": "A1"}, {"qty": 5, "bin": "A1"},
                                     {"qty": 5, "bin": "A1"})
        assert analysis.conflicts == []
        assert analysis.auto_mergeable == []

    def test_metadata_fields_are_skipped(self) -> None:
        original = {"id": "r1", "updated_at": "t0", "status": "A"}
        local = {"id": "r1", "updated_at": "t1", "status": "A"}
        server = {"id": "r1", "updated_at": "t2", "status": "A"}
        analysis = analyze_conflicts(original, local, server)
        assert not analysis.has_conflicts
        assert analysis.auto_mergeable == []
        assert "updated_at" in DEFAULT_SKIP_FIELDS

    def test_custom_skip_fields(self) -> None:
        analysis = analyze_conflicts(
            {"note": "a"}, {"note": "b"}, {"note": "c"}, skip_fields={"note"}
        )
        assert not analysis.has_conflicts

    def test_field_absent_from_one_side(self) -> None:
        """A field removed locally and changed on the server conflicts."""
        analysis = analyze_conflicts({"bin": "A1"}, {}, {"bin": "B2"})
        assert analysis.conflict_fields == ["bin"]
        assert analysis.conflicts[0].local_value is MISSING

    def test_field_added_on_both_sides(self) -> None:
        analysis = analyze_conflicts({}, {"color": "navy"}, {"color": "black"})
        assert analysis.conflict_fields == ["color"]
        assert analysis.conflicts[0].original_value is MISSING

    def test_none_original_is_empty_record(self) -> None:
        analysis = analyze_conflicts(None, {"qty": 1}, {"qty": 2})
        assert analysis.conflict_fields == ["qty"]

    def test_null_value_is_a_real_value(self) -> None:
        """Setting a field to None locally is a change from its old value."""
        analysis = analyze_conflicts({"bin": "A1"}, {"bin": None}, {"bin": "A1"})
        assert analysis.auto_mergeable[0].resolution == FieldSide.LOCAL
        assert analysis.auto_mergeable[0].local_value is None

    def test_composite_values_compared_whole(self) -> None:
        original = {"lines": [{"sku": "X", "qty": 1}]}
        local = {"lines": [{"sku": "X", "qty": 2}]}
        server = {"lines": [{"sku": "X", "qty": 1}, {"sku": "Y", "qty": 1}]}
        analysis = analyze_conflicts(original, local, server)
        assert analysis.conflict_fields == ["lines"]

    def test_field_order_is_first_seen(self) -> None:
        analysis = analyze_conflicts(
            {"b": 0, "a": 0}, {"b": 1, "a": 1, "c": 1}, {"b": 2, "a": 2, "c": 2}
        )
        assert analysis.conflict_fields == ["b", "a", "c"]

    def test_conflict_iff_pairwise_different_randomised(self) -> None:
        """A field conflicts exactly when all three values differ pairwise."""
        rng = random.Random(20240917)
        for _ in range(500):
            o, l, s = (rng.choice(VALUE_POOL) for _ in range(3))
            analysis = analyze_conflicts({"f": o}, {"f": l}, {"f": s})
            expected = (
                not values_equal(o, l)
                and not values_equal(o, s)
                and not values_equal(l, s)
            )
            assert analysis.has_conflicts == expected, (o, l, s)


@pytest.mark.unit
class TestApplyResolutions:
    """Tests for apply_resolutions."""

    def test_resolve_local(self) -> None:
        """Resolving the status conflict with local yields the local value."""
        merged = apply_resolutions(
            {"status": "A"}, {"status": "B"}, {"status": "C"}, {"status": "local"}
        )
        assert merged["status"] == "B"

    def test_resolve_server(self) -> None:
        merged = apply_resolutions(
            {"status": "A"}, {"status": "B"}, {"status": "C"}, {"status": "server"}
        )
        assert merged["status"] == "C"

    def test_accepts_field_side_enum(self) -> None:
        merged = apply_resolutions(
            {"status": "A"}, {"status": "B"}, {"status": "C"}, {"status": FieldSide.LOCAL}
        )
        assert merged["status"] == "B"

    def test_auto_merged_local_change_applied(self) -> None:
        merged = apply_resolutions({"qty": 5}, {"qty": 10}, {"qty": 5}, {})
        assert merged == {"qty": 10}

    def test_server_is_the_base(self) -> None:
        """Server-only changes and server-only fields survive the merge."""
        original = {"id": "r1", "qty": 5, "status": "A"}
        local = {"id": "r1", "qty": 5, "status": "B"}
        server = {"id": "r1", "qty": 8, "status": "C", "updated_at": "t2"}
        merged = apply_resolutions(original, local, server, {"status": "local"})
        assert merged == {"id": "r1", "qty": 8, "status": "B", "updated_at": "t2"}

    def test_local_removal_is_applied(self) -> None:
        merged = apply_resolutions({"bin": "A1", "qty": 1}, {"qty": 1},
                                   {"bin": "A1", "qty": 1}, {})
        assert "bin" not in merged

    def test_unresolved_conflict_raises(self) -> None:
        with pytest.raises(ValidationError) as exc:
            apply_resolutions(
                {"a": 0, "b": 0}, {"a": 1, "b": 1}, {"a": 2, "b": 2}, {"a": "local"}
            )
        assert exc.value.field == "resolutions"
        assert "b" in exc.value.message

    def test_invalid_side_raises(self) -> None:
        with pytest.raises(ValidationError):
            apply_resolutions({"a": 0}, {"a": 1}, {"a": 2}, {"a": "both"})

    def test_inputs_are_not_modified(self) -> None:
        original = {"a": 0}
        local = {"a": 1}
        server = {"a": 2}
        apply_resolutions(original, local, server, {"a": "local"})
        assert original == {"a": 0}
        assert local == {"a": 1}
        assert server == {"a": 2}

    def test_merged_values_come_from_local_or_server_randomised(self) -> None:
        """Every compared field of a full merge holds the local or server value."""
        rng = random.Random(7)
        fields = ["status", "qty", "bin", "color", "grade"]
        for _ in range(200):
            original: Dict[str, Any] = {f: rng.choice(VALUE_POOL) for f in fields}
            local = {f: rng.choice(VALUE_POOL) for f in fields}
            server = {f: rng.choice(VALUE_POOL) for f in fields}
            analysis = analyze_conflicts(original, local, server)
            resolutions = {f: rng.choice(["local", "server"]) for f in analysis.conflict_fields}

            merged = apply_resolutions(original, local, server, resolutions)

            for f in fields:
                assert values_equal(merged[f], local[f]) or values_equal(merged[f], server[f])
            for f, side in resolutions.items():
                expected = local[f] if side == "local" else server[f]
                assert values_equal(merged[f], expected)


@pytest.mark.unit
class TestUnresolvedFields:
    """Tests for unresolved_fields."""

    def test_lists_fields_without_choice(self) -> None:
        analysis = analyze_conflicts({"a": 0, "b": 0}, {"a": 1, "b": 1}, {"a": 2, "b": 2})
        assert unresolved_fields(analysis, {}) == ["a", "b"]
        assert unresolved_fields(analysis, {"b": "server"}) == ["a"]
        assert unresolved_fields(analysis, {"a": "local", "b": "server"}) == []


@pytest.mark.unit
class TestHasConflict:
    """Tests for has_conflict."""

    def test_no_original_means_no_conflict(self) -> None:
        assert not has_conflict(None, {"status": "B"}, {"status": "C"})

    def test_divergent_change(self) -> None:
        assert has_conflict({"status": "A"}, {"status": "B"}, {"status": "C"})

    def test_server_changed_other_field(self) -> None:
        assert not has_conflict({"status": "A", "qty": 1}, {"status": "B", "qty": 1},
                                {"status": "A", "qty": 2})

    def test_same_new_value(self) -> None:
        assert not has_conflict({"status": "A"}, {"status": "B"}, {"status": "B"})

    def test_local_unchanged_field(self) -> None:
        assert not has_conflict({"status": "A"}, {"status": "A"}, {"status": "C"})

    def test_metadata_only_divergence(self) -> None:
        original = {"status": "A", "updated_at": "t0"}
        local = {"status": "B", "updated_at": "t1"}
        server = {"status": "A", "updated_at": "t2"}
        assert not has_conflict(original, local, server)
        assert not analyze_conflicts(original, local, server).has_conflicts

    def test_custom_skip_fields(self) -> None:
        original = {"status": "A", "note": "x"}
        local = {"status": "A", "note": "y"}
        server = {"status": "A", "note": "z"}
        assert has_conflict(original, local, server)
        assert not has_conflict(original, local, server, skip_fields={"note"})


@pytest.mark.unit
class TestDisplay:
    """Tests for display helpers."""

    @pytest.mark.parametrize("value,expected", [
        (None, "(empty)"),
        (MISSING, "(empty)"),
        (True, "Yes"),
        (False, "No"),
        (1250, "1,250"),
        (["red", "blue"], "red, blue"),
        ("roll", "roll"),
    ])
    def test_format_value_for_display(self, value: Any, expected: str) -> None:
        assert format_value_for_display(value) == expected

    def test_format_dict_as_json(self) -> None:
        assert format_value_for_display({"a": 1}) == '{\n  "a": 1\n}'

    def test_diff_preview(self) -> None:
        analysis = analyze_conflicts({"status": "A"}, {"status": "B"}, {"status": "C"})
        diff = get_diff_preview(analysis)
        lines = diff.splitlines()
        assert lines[0] == "--- Server"
        assert lines[1] == "+++ Local"
        assert "-status: C" in lines
        assert "+status: B" in lines

    def test_diff_preview_empty_without_conflicts(self) -> None:
        analysis = analyze_conflicts({"qty": 5}, {"qty": 10}, {"qty": 5})
        assert get_diff_preview(analysis) == ""
        assert "+qty: 10" in get_diff_preview(analysis, include_auto=True)

    def test_analysis_to_dict_replaces_missing_with_null(self) -> None:
        analysis = analyze_conflicts({}, {"color": "navy"}, {"color": "black"})
        data = analysis_to_dict(analysis)
        assert data["hasConflicts"] is True
        assert data["conflicts"][0] == {
            "field": "color",
            "originalValue": None,
            "localValue": "navy",
            "serverValue": "black",
            "resolution": None,
        }
        assert data["autoMergeable"] == []
