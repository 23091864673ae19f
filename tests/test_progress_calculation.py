"""Tests for the progress-calculation job: payload contract and full reconciliation."""

from unittest.mock import AsyncMock, patch

import pytest

from progress_workers.aggregates import rebuild_scope
from progress_workers.errors import InvalidJobPayloadError, UserNotFoundError
from progress_workers.handlers.progress_calculation import (
    ProgressJobPayload,
    handle_progress_calculation,
    parse_payload,
    recalculate_progress_for_category,
)
from progress_workers.models import AggregateKey
from progress_workers.registry import get_handler, validate_payload

from .conftest import CATEGORY, USER, at, exercise, workout

HISTORY = [
    workout("w1", at(1), exercise("Squats", (5, 100)), exercise("Pull-ups", (8, 0))),
    workout("w2", at(2), exercise("Squats", (5, 110))),
    workout("w3", at(2, 18), exercise("squats", (3, 120))),
]


def _source(baseline=70.0, workouts=HISTORY):
    """Patch context: the user's baseline and workout history."""
    return (
        patch(
            "progress_workers.handlers.progress_calculation.resolve_baseline",
            new_callable=AsyncMock,
            return_value=baseline,
        ),
        patch(
            "progress_workers.handlers.progress_calculation.load_workouts",
            new_callable=AsyncMock,
            return_value=list(workouts),
        ),
    )


class TestPayload:
    def test_accepts_camel_case_aliases(self):
        job = parse_payload({"userId": "u1", "categoryId": "c1"})
        assert job.user_id == "u1"
        assert job.category_id == "c1"
        assert job.baseline_in_max_weight is None

    def test_accepts_field_names(self):
        job = ProgressJobPayload.model_validate(
            {"user_id": " u1 ", "category_id": "c1", "baseline_in_max_weight": True}
        )
        assert job.user_id == "u1"
        assert job.baseline_in_max_weight is True

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"userId": "u1"},
            {"categoryId": "c1"},
            {"userId": "   ", "categoryId": "c1"},
            {"userId": "u1", "categoryId": ""},
        ],
    )
    def test_rejects_incomplete_payloads(self, payload):
        with pytest.raises(InvalidJobPayloadError, match="progress-calculation"):
            parse_payload(payload)


class TestRecalculate:
    @pytest.mark.asyncio
    async def test_rebuilds_scope_from_history(self, fake_conn, memory_store):
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            summary = await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        assert summary.aggregates == 2
        assert summary.entries == 4
        assert summary.removed == 0

        squats = memory_store.get("squats")
        assert squats.name == "squats"
        assert squats.total_volume == 5 * 170 + 5 * 180 + 3 * 190
        assert squats.total_reps == 13
        assert squats.max_weight == 120.0
        assert [e.workout_id for e in squats.progress] == ["w1", "w2", "w3"]

    @pytest.mark.asyncio
    async def test_locks_scope_exclusively(self, fake_conn, memory_store):
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)
        assert memory_store.calls[0] == ("lock_scope", USER, CATEGORY, False)

    @pytest.mark.asyncio
    async def test_idempotent(self, fake_conn, memory_store):
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)
            first = dict(memory_store.rows)
            summary = await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        assert memory_store.rows == first
        assert summary.removed == 2

    @pytest.mark.asyncio
    async def test_repairs_drifted_rows(self, fake_conn, memory_store):
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)
            memory_store.get("squats").total_volume = 1.0
            memory_store.rows.pop(AggregateKey(USER, CATEGORY, "pull-ups"))
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        expected = rebuild_scope(USER, CATEGORY, HISTORY, 70.0)
        stored = sorted(memory_store.rows.values(), key=lambda a: a.normalized_name)
        assert stored == expected

    @pytest.mark.asyncio
    async def test_empty_history_clears_scope(self, fake_conn, memory_store):
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        baseline_patch, workouts_patch = _source(workouts=[])
        with baseline_patch, workouts_patch:
            summary = await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        assert memory_store.rows == {}
        assert summary == (0, 0, 2)

    @pytest.mark.asyncio
    async def test_other_scopes_untouched(self, fake_conn, memory_store):
        other = rebuild_scope(USER, "cat-cardio", [workout("c1", at(1), exercise("Row", (1, 1)))])
        for aggregate in other:
            memory_store.rows[aggregate.key] = aggregate

        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        assert memory_store.get("row", category_id="cat-cardio") == other[0]

    @pytest.mark.asyncio
    async def test_unknown_user_leaves_store_untouched(self, fake_conn, memory_store):
        existing = rebuild_scope(USER, CATEGORY, HISTORY[:1])
        for aggregate in existing:
            memory_store.rows[aggregate.key] = aggregate
        snapshot = dict(memory_store.rows)

        with patch(
            "progress_workers.handlers.progress_calculation.resolve_baseline",
            new_callable=AsyncMock,
            side_effect=UserNotFoundError(USER),
        ):
            with pytest.raises(UserNotFoundError):
                await recalculate_progress_for_category(fake_conn, USER, CATEGORY)

        assert memory_store.rows == snapshot
        assert memory_store.mutations() == []

    @pytest.mark.asyncio
    async def test_baseline_in_max_weight(self, fake_conn, memory_store):
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(
                fake_conn, USER, CATEGORY, baseline_in_max_weight=True
            )
        assert memory_store.get("squats").max_weight == 190.0
        assert memory_store.get("pull-ups").max_weight == 70.0

    @pytest.mark.asyncio
    async def test_env_flag_applies_when_not_given(self, fake_conn, memory_store, monkeypatch):
        monkeypatch.setenv("PROGRESS_BASELINE_IN_MAX_WEIGHT", "1")
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)
        assert memory_store.get("squats").max_weight == 190.0

    @pytest.mark.asyncio
    async def test_flag_off_by_default(self, fake_conn, memory_store, monkeypatch):
        monkeypatch.delenv("PROGRESS_BASELINE_IN_MAX_WEIGHT", raising=False)
        baseline_patch, workouts_patch = _source()
        with baseline_patch, workouts_patch:
            await recalculate_progress_for_category(fake_conn, USER, CATEGORY)
        assert memory_store.get("squats").max_weight == 120.0


class TestHandler:
    def test_registered(self):
        assert get_handler("progress-calculation") is handle_progress_calculation

    @pytest.mark.asyncio
    async def test_invalid_payload_raises_before_io(self, fake_conn, memory_store):
        with pytest.raises(InvalidJobPayloadError):
            await handle_progress_calculation(fake_conn, {"userId": "u1"})
        assert memory_store.calls == []

    @pytest.mark.asyncio
    async def test_payload_flag_overrides_env(self, fake_conn, memory_store, monkeypatch):
        monkeypatch.setenv("PROGRESS_BASELINE_IN_MAX_WEIGHT", "true")
        with patch(
            "progress_workers.handlers.progress_calculation.recalculate_progress_for_category",
            new_callable=AsyncMock,
        ) as recalc:
            await handle_progress_calculation(
                fake_conn,
                {"userId": USER, "categoryId": CATEGORY, "baselineInMaxWeight": False},
            )
        recalc.assert_awaited_once_with(
            fake_conn, USER, CATEGORY, baseline_in_max_weight=False
        )

    @pytest.mark.asyncio
    async def test_silent_payload_leaves_flag_to_env(self, fake_conn, monkeypatch):
        monkeypatch.setenv("PROGRESS_BASELINE_IN_MAX_WEIGHT", "1")
        with patch(
            "progress_workers.handlers.progress_calculation.recalculate_progress_for_category",
            new_callable=AsyncMock,
        ) as recalc:
            await handle_progress_calculation(
                fake_conn, {"userId": USER, "categoryId": CATEGORY}
            )
        recalc.assert_awaited_once_with(
            fake_conn, USER, CATEGORY, baseline_in_max_weight=None
        )

    def test_payload_contract_registered(self):
        job = validate_payload("progress-calculation", {"userId": "u1", "categoryId": "c1"})
        assert isinstance(job, ProgressJobPayload)
