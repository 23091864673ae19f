"""Tests for the progress-regenerate CLI: argument parsing and drift detection."""

import dataclasses

import pytest

from progress_workers.aggregates import (
    apply_contribution,
    build_contribution,
    rebuild_scope,
    remove_contribution,
)
from progress_workers.cli import _build_parser, compare_scope
from progress_workers.models import AggregateKey

from .conftest import CATEGORY, USER, at, exercise, workout

HISTORY = [
    workout("w1", at(1), exercise("Squats", (5, 100)), exercise("Bench", (5, 60))),
    workout("w2", at(2), exercise("Squats", (5, 120))),
]


class TestParser:
    def test_defaults_rebuild_everything(self):
        args = _build_parser().parse_args([])
        assert args.user_id is None
        assert args.category_id is None
        assert not args.enqueue
        assert not args.verify
        assert args.max_retries is None

    def test_scope_filters(self):
        args = _build_parser().parse_args(["--user-id", "u1", "--category-id", "c1", "--verify"])
        assert (args.user_id, args.category_id, args.verify) == ("u1", "c1", True)

    def test_enqueue_and_verify_are_exclusive(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args(["--enqueue", "--verify"])


class TestCompareScope:
    def test_consistent_scope_has_no_issues(self):
        rebuilt = rebuild_scope(USER, CATEGORY, HISTORY)
        stored = rebuild_scope(USER, CATEGORY, HISTORY)
        assert compare_scope(stored, rebuilt) == []

    def test_missing_and_orphaned(self):
        rebuilt = rebuild_scope(USER, CATEGORY, HISTORY)
        stale = rebuild_scope(USER, CATEGORY, [workout("w0", at(1), exercise("Rows", (10, 40)))])
        stored = [rebuilt[1], *stale]

        issues = compare_scope(stored, rebuilt)
        assert issues == [
            {"exercise": "bench", "issue": "missing"},
            {"exercise": "rows", "issue": "orphaned"},
        ]

    def test_drift_reports_both_sides(self):
        rebuilt = rebuild_scope(USER, CATEGORY, HISTORY)
        squats = rebuilt[1]
        drifted = dataclasses.replace(squats, total_volume=squats.total_volume + 10)

        issues = compare_scope([rebuilt[0], drifted], rebuilt)
        kinds = [i["issue"] for i in issues]
        assert kinds == ["invariant", "drift"]
        drift = issues[-1]
        assert drift["exercise"] == "squats"
        assert drift["stored"]["total_volume"] == squats.total_volume + 10
        assert drift["expected"]["total_volume"] == squats.total_volume

    def test_version_is_ignored(self):
        rebuilt = rebuild_scope(USER, CATEGORY, HISTORY)
        stored = [dataclasses.replace(a, version=7) for a in rebuilt]
        assert compare_scope(stored, rebuilt) == []

    def test_incremental_history_with_fractional_loads_has_no_drift(self):
        key = AggregateKey(USER, CATEGORY, "squats")
        w1 = workout("w1", at(1), exercise("Squats", (3, 0.1)))
        w2 = workout("w2", at(2), exercise("Squats", (7, 0.2)))
        w0 = workout("w0", at(1, 8), exercise("Squats", (9, 0.3)))

        stored = None
        for w in (w1, w2, w0):
            ex = w.exercises[0]
            entry = build_contribution(ex, w.created_at, 70.3, workout_id=w.id)
            stored = apply_contribution(stored, key, ex, entry)
        stored = remove_contribution(stored, at(2), "w2").aggregate

        assert compare_scope([stored], rebuild_scope(USER, CATEGORY, [w0, w1], 70.3)) == []
