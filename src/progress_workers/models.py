"""Core data models: source workouts and the exercise progress aggregate."""

from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, NamedTuple

from .stats import normalize_exercise_name


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: datetime | str) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    return as_utc(datetime.fromisoformat(value))


@dataclass(frozen=True)
class SetRecord:
    order: int
    reps: int
    value: float = 0.0
    rest_minutes: float = 0.0


@dataclass(frozen=True)
class ExercisePerformance:
    name: str
    type: str
    sets: tuple[SetRecord, ...] = ()
    unit: str | None = None

    @property
    def normalized_name(self) -> str:
        return normalize_exercise_name(self.name)


@dataclass(frozen=True)
class WorkoutRecord:
    id: str
    user_id: str
    category_id: str
    created_at: datetime
    exercises: tuple[ExercisePerformance, ...] = ()
    notes: str | None = None


class AggregateKey(NamedTuple):
    user_id: str
    category_id: str
    normalized_name: str

    @property
    def lock_token(self) -> str:
        return f"exercise_progress:{self.user_id}:{self.category_id}:{self.normalized_name}"


@dataclass(frozen=True)
class ContributionEntry:
    """One point of an aggregate's time series: the stats of one workout."""

    date: datetime
    volume: float
    sets: int
    reps: int
    max_weight: float
    unit: str | None = None
    workout_id: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "date": as_utc(self.date).isoformat(),
            "volume": self.volume,
            "sets": self.sets,
            "reps": self.reps,
            "maxWeight": self.max_weight,
            "unit": self.unit,
        }
        if self.workout_id is not None:
            data["workoutId"] = self.workout_id
        return data

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> ContributionEntry:
        workout_id = data.get("workoutId")
        return cls(
            date=parse_timestamp(data["date"]),
            volume=float(data.get("volume", 0)),
            sets=int(data.get("sets", 0)),
            reps=int(data.get("reps", 0)),
            max_weight=float(data.get("maxWeight", 0)),
            unit=data.get("unit"),
            workout_id=str(workout_id) if workout_id is not None else None,
        )


@dataclass
class ExerciseAggregate:
    """Materialized rollup for one (user, category, exercise) triple."""

    user_id: str
    category_id: str
    normalized_name: str
    name: str
    type: str
    unit: str | None = None
    total_volume: float = 0.0
    total_reps: int = 0
    max_weight: float = 0.0
    progress: list[ContributionEntry] = field(default_factory=list)
    version: int = field(default=0, compare=False)

    @property
    def key(self) -> AggregateKey:
        return AggregateKey(self.user_id, self.category_id, self.normalized_name)

    def progress_json(self) -> list[dict[str, Any]]:
        return [entry.to_json() for entry in self.progress]

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> ExerciseAggregate:
        return cls(
            user_id=str(row["user_id"]),
            category_id=str(row["category_id"]),
            normalized_name=row["normalized_name"],
            name=row["name"],
            type=row["type"],
            unit=row.get("unit"),
            total_volume=float(row["total_volume"]),
            total_reps=int(row["total_reps"]),
            max_weight=float(row["max_weight"]),
            progress=[ContributionEntry.from_json(e) for e in (row.get("progress") or [])],
            version=int(row.get("version") or 0),
        )


def series_totals(progress: Iterable[ContributionEntry]) -> tuple[float, int]:
    """Total volume and reps of a series.

    Volume is summed with ``math.fsum`` so the result is exact to one
    rounding and does not depend on the order entries were folded in.
    """
    entries = list(progress)
    return math.fsum(entry.volume for entry in entries), sum(entry.reps for entry in entries)


_TOLERANCE = 1e-6


def check_invariants(aggregate: ExerciseAggregate) -> list[str]:
    """Return a human-readable list of violated invariants (empty when consistent)."""
    violations: list[str] = []
    series_volume, series_reps = series_totals(aggregate.progress)
    series_max = max((entry.max_weight for entry in aggregate.progress), default=0.0)

    if abs(aggregate.total_volume - series_volume) > _TOLERANCE:
        violations.append(
            f"total_volume {aggregate.total_volume} != series volume {series_volume}"
        )
    if aggregate.total_reps != series_reps:
        violations.append(f"total_reps {aggregate.total_reps} != series reps {series_reps}")
    if abs(aggregate.max_weight - series_max) > _TOLERANCE:
        violations.append(f"max_weight {aggregate.max_weight} != series max {series_max}")
    if aggregate.total_volume < 0:
        violations.append(f"total_volume is negative ({aggregate.total_volume})")
    if aggregate.total_reps < 0:
        violations.append(f"total_reps is negative ({aggregate.total_reps})")
    if not aggregate.progress:
        violations.append("empty aggregate must be deleted, not retained")
    if aggregate.normalized_name != normalize_exercise_name(aggregate.name):
        violations.append(
            f"normalized_name {aggregate.normalized_name!r} does not match name {aggregate.name!r}"
        )
    return violations
