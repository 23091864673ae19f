"""Pure aggregate algebra shared by the incremental updater and reconciliation.

Every write path (workout created, workout deleted, full rebuild) goes
through ``apply_contribution`` / ``remove_contribution``, so the incremental
and from-scratch paths cannot disagree on how a contribution is folded in.

Merge policy: one ContributionEntry per workout, kept in (date, workout_id)
order. Same-day workouts are never merged.
"""

from __future__ import annotations

import bisect
import dataclasses
from collections.abc import Iterable
from datetime import datetime
from typing import NamedTuple

from .models import (
    AggregateKey,
    ContributionEntry,
    ExerciseAggregate,
    ExercisePerformance,
    WorkoutRecord,
    as_utc,
    series_totals,
)
from .stats import compute_stats


class Removal(NamedTuple):
    aggregate: ExerciseAggregate | None
    removed: ContributionEntry | None


def build_contribution(
    exercise: ExercisePerformance,
    workout_date: datetime,
    baseline: float = 0.0,
    *,
    workout_id: str | None = None,
    baseline_in_max_weight: bool = False,
) -> ContributionEntry:
    stats = compute_stats(
        exercise.sets, baseline, baseline_in_max_weight=baseline_in_max_weight
    )
    return ContributionEntry(
        date=as_utc(workout_date),
        volume=stats.total_volume,
        sets=len(exercise.sets),
        reps=stats.total_reps,
        max_weight=stats.max_weight,
        unit=exercise.unit,
        workout_id=workout_id,
    )


def _entry_order(entry: ContributionEntry) -> tuple[datetime, str]:
    return entry.date, entry.workout_id or ""


def apply_contribution(
    existing: ExerciseAggregate | None,
    key: AggregateKey,
    exercise: ExercisePerformance,
    entry: ContributionEntry,
) -> ExerciseAggregate:
    """Fold one contribution into ``existing`` (or seed a new aggregate).

    Returns a new object; ``existing`` is left untouched. The entry is
    inserted in (date, workout_id) order, after any entry with the same key,
    so a back-dated workout lands where a rebuild would put it. Totals are
    re-derived from the series. Display name, type and unit follow the
    latest entry of the series.
    """
    if existing is None:
        return ExerciseAggregate(
            user_id=key.user_id,
            category_id=key.category_id,
            normalized_name=key.normalized_name,
            name=exercise.name,
            type=exercise.type,
            unit=exercise.unit,
            total_volume=entry.volume,
            total_reps=entry.reps,
            max_weight=entry.max_weight,
            progress=[entry],
        )

    progress = list(existing.progress)
    bisect.insort_right(progress, entry, key=_entry_order)
    total_volume, total_reps = series_totals(progress)
    labels: dict[str, str | None] = {}
    if progress[-1] is entry:
        labels = {"name": exercise.name, "type": exercise.type, "unit": exercise.unit}

    return dataclasses.replace(
        existing,
        total_volume=total_volume,
        total_reps=total_reps,
        max_weight=max(existing.max_weight, entry.max_weight),
        progress=progress,
        **labels,
    )


def _find_entry(
    progress: list[ContributionEntry],
    workout_date: datetime,
    workout_id: str | None,
) -> int | None:
    if workout_id is not None:
        for index in range(len(progress) - 1, -1, -1):
            if progress[index].workout_id == workout_id:
                return index

    target = as_utc(workout_date)
    for index in range(len(progress) - 1, -1, -1):
        entry = progress[index]
        if workout_id is not None and entry.workout_id not in (None, workout_id):
            continue
        if entry.date == target:
            return index
    return None


def remove_contribution(
    aggregate: ExerciseAggregate,
    workout_date: datetime,
    workout_id: str | None = None,
) -> Removal:
    """Remove exactly one workout's entry and re-derive the totals.

    The entry is located by ``workout_id`` when the stored entries carry one,
    otherwise by exact timestamp equality with ``workout_date``. Totals are
    recomputed from the remaining series, so they can never go negative and
    removing an entry restores the totals it was added to. ``max_weight`` is
    only rescanned when the removed entry could have been the maximum.

    ``Removal.aggregate`` is None when nothing remains (the row must be
    deleted); ``Removal.removed`` is None when no entry matched.
    """
    index = _find_entry(aggregate.progress, workout_date, workout_id)
    if index is None:
        return Removal(aggregate, None)

    removed = aggregate.progress[index]
    remaining = aggregate.progress[:index] + aggregate.progress[index + 1:]
    if not remaining:
        return Removal(None, removed)

    max_weight = aggregate.max_weight
    if removed.max_weight >= aggregate.max_weight:
        max_weight = max(entry.max_weight for entry in remaining)

    # Entries only record the unit; name and type keep their last value.
    unit = aggregate.unit
    if index == len(aggregate.progress) - 1:
        unit = remaining[-1].unit

    total_volume, total_reps = series_totals(remaining)
    updated = dataclasses.replace(
        aggregate,
        total_volume=total_volume,
        total_reps=total_reps,
        max_weight=max_weight,
        unit=unit,
        progress=remaining,
    )
    return Removal(updated, removed)


def rebuild_scope(
    user_id: str,
    category_id: str,
    workouts: Iterable[WorkoutRecord],
    baseline: float = 0.0,
    *,
    baseline_in_max_weight: bool = False,
) -> list[ExerciseAggregate]:
    """Recompute every aggregate of one (user, category) from its workouts.

    Workouts are folded in (created_at, id) order, the same order
    ``apply_contribution`` keeps entries in. The result is sorted by
    normalized name so repeated runs are identical.
    """
    by_name: dict[str, ExerciseAggregate] = {}
    ordered = sorted(workouts, key=lambda w: (as_utc(w.created_at), w.id))
    for workout in ordered:
        for exercise in workout.exercises:
            key = AggregateKey(user_id, category_id, exercise.normalized_name)
            entry = build_contribution(
                exercise,
                workout.created_at,
                baseline,
                workout_id=workout.id,
                baseline_in_max_weight=baseline_in_max_weight,
            )
            by_name[key.normalized_name] = apply_contribution(
                by_name.get(key.normalized_name), key, exercise, entry
            )
    return [by_name[name] for name in sorted(by_name)]
