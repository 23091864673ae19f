"""Incremental progress updater.

Applies the effect of a single workout create / update / delete to the
exercise_progress aggregates, in-line with the request that mutated the
workout. Each call runs in one transaction (a savepoint when the caller
already has one open), so a multi-exercise workout and the delete-then-create
composition of an update are applied all-or-nothing.

The owning user is resolved first; an unknown user aborts the call before
any aggregate is read or written. Unless given, ``baseline_in_max_weight``
follows PROGRESS_BASELINE_IN_MAX_WEIGHT, as reconciliation does.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

import psycopg

from . import store
from .aggregates import apply_contribution, build_contribution, remove_contribution
from .config import baseline_in_max_weight_enabled
from .logging import progress_context
from .metrics import record_aggregate_mutation
from .models import AggregateKey, ExercisePerformance
from .source import resolve_baseline

logger = logging.getLogger(__name__)


def _key_context(key: AggregateKey, workout_id: str | None) -> dict[str, Any]:
    return progress_context(
        user_id=key.user_id,
        category_id=key.category_id,
        exercise=key.normalized_name,
        workout_id=workout_id,
    )


async def _resolve_policy(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    baseline: float | None,
    baseline_in_max_weight: bool | None,
) -> tuple[float, bool]:
    """Fill in the user's baseline and the max-weight switch when not given.

    Reconciliation resolves the switch the same way, so both paths store
    the same max weight.
    """
    if baseline is None:
        baseline = await resolve_baseline(conn, user_id)
    if baseline_in_max_weight is None:
        baseline_in_max_weight = baseline_in_max_weight_enabled()
    return baseline, baseline_in_max_weight


async def _lock_for_write(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    scopes: Iterable[tuple[str, Sequence[ExercisePerformance]]],
) -> None:
    scopes = list(scopes)
    for category_id in sorted({category_id for category_id, _ in scopes}):
        await store.lock_scope(conn, user_id, category_id, shared=True)
    keys = {
        AggregateKey(user_id, category_id, exercise.normalized_name)
        for category_id, exercises in scopes
        for exercise in exercises
    }
    for key in sorted(keys):
        await store.lock_key(conn, key)


async def _apply_created(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    workout_date: datetime,
    exercises: Sequence[ExercisePerformance],
    baseline: float,
    workout_id: str | None,
    baseline_in_max_weight: bool,
) -> None:
    for exercise in exercises:
        key = AggregateKey(user_id, category_id, exercise.normalized_name)
        entry = build_contribution(
            exercise,
            workout_date,
            baseline,
            workout_id=workout_id,
            baseline_in_max_weight=baseline_in_max_weight,
        )
        existing = await store.get_aggregate(conn, key, for_update=True)
        aggregate = apply_contribution(existing, key, exercise, entry)
        await store.upsert_aggregate(conn, aggregate)
        record_aggregate_mutation("created" if existing is None else "updated")
        logger.info(
            "Added contribution to exercise_progress (volume=%.1f, reps=%d, entries=%d)",
            entry.volume,
            entry.reps,
            len(aggregate.progress),
            extra=_key_context(key, workout_id),
        )


async def _apply_deleted(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    workout_date: datetime,
    exercises: Sequence[ExercisePerformance],
    baseline: float,
    workout_id: str | None,
    baseline_in_max_weight: bool,
) -> None:
    for exercise in exercises:
        key = AggregateKey(user_id, category_id, exercise.normalized_name)
        existing = await store.get_aggregate(conn, key, for_update=True)
        if existing is None:
            logger.debug(
                "No exercise_progress row, nothing to remove",
                extra=_key_context(key, workout_id),
            )
            continue

        result = remove_contribution(existing, workout_date, workout_id)
        if result.removed is None:
            logger.warning(
                "No contribution dated %s found in exercise_progress, skipping",
                workout_date.isoformat(),
                extra=_key_context(key, workout_id),
            )
            continue

        expected = build_contribution(
            exercise,
            workout_date,
            baseline,
            baseline_in_max_weight=baseline_in_max_weight,
        )
        if (expected.volume, expected.reps) != (result.removed.volume, result.removed.reps):
            logger.warning(
                "Removed contribution differs from supplied sets "
                "(stored volume=%.1f reps=%d, supplied volume=%.1f reps=%d)",
                result.removed.volume,
                result.removed.reps,
                expected.volume,
                expected.reps,
                extra=_key_context(key, workout_id),
            )

        if result.aggregate is None:
            await store.delete_aggregate(conn, key)
            record_aggregate_mutation("deleted")
            logger.info(
                "Deleted exercise_progress (last contribution removed)",
                extra=_key_context(key, workout_id),
            )
        else:
            await store.upsert_aggregate(conn, result.aggregate)
            record_aggregate_mutation("updated")
            logger.info(
                "Removed contribution from exercise_progress (entries=%d)",
                len(result.aggregate.progress),
                extra=_key_context(key, workout_id),
            )


async def on_workout_created(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    workout_date: datetime,
    exercises: Sequence[ExercisePerformance],
    *,
    workout_id: str | None = None,
    baseline: float | None = None,
    baseline_in_max_weight: bool | None = None,
) -> None:
    """Append one contribution per exercise of a newly created workout."""
    baseline, baseline_in_max_weight = await _resolve_policy(
        conn, user_id, baseline, baseline_in_max_weight
    )

    async with conn.transaction():
        await _lock_for_write(conn, user_id, [(category_id, exercises)])
        await _apply_created(
            conn, user_id, category_id, workout_date, exercises,
            baseline, workout_id, baseline_in_max_weight,
        )


async def on_workout_deleted(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    workout_date: datetime,
    exercises: Sequence[ExercisePerformance],
    *,
    workout_id: str | None = None,
    baseline: float | None = None,
    baseline_in_max_weight: bool | None = None,
) -> None:
    """Back a deleted workout's contributions out of its aggregates.

    ``exercises`` must be the set data as it existed when the workout was
    deleted.
    """
    baseline, baseline_in_max_weight = await _resolve_policy(
        conn, user_id, baseline, baseline_in_max_weight
    )

    async with conn.transaction():
        await _lock_for_write(conn, user_id, [(category_id, exercises)])
        await _apply_deleted(
            conn, user_id, category_id, workout_date, exercises,
            baseline, workout_id, baseline_in_max_weight,
        )


async def on_workout_updated(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    old_category_id: str,
    new_category_id: str,
    old_workout_date: datetime,
    new_workout_date: datetime,
    old_exercises: Sequence[ExercisePerformance],
    new_exercises: Sequence[ExercisePerformance],
    *,
    workout_id: str | None = None,
    baseline: float | None = None,
    baseline_in_max_weight: bool | None = None,
) -> None:
    """Delete the old workout state, then create the new one, atomically."""
    baseline, baseline_in_max_weight = await _resolve_policy(
        conn, user_id, baseline, baseline_in_max_weight
    )

    async with conn.transaction():
        await _lock_for_write(
            conn,
            user_id,
            [(old_category_id, old_exercises), (new_category_id, new_exercises)],
        )
        await _apply_deleted(
            conn, user_id, old_category_id, old_workout_date, old_exercises,
            baseline, workout_id, baseline_in_max_weight,
        )
        await _apply_created(
            conn, user_id, new_category_id, new_workout_date, new_exercises,
            baseline, workout_id, baseline_in_max_weight,
        )
