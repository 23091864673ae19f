"""Per-exercise statistics and exercise-name normalization.

Pure functions, no I/O. Volume folds the user's baseline (bodyweight) into
the effective load of every set and floors it at 1, so zero-resistance
bodyweight work still counts. Max weight tracks the raw external value
unless ``baseline_in_max_weight`` is switched on.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING, NamedTuple

if TYPE_CHECKING:
    from .models import SetRecord

MIN_EFFECTIVE_WEIGHT = 1.0


class ExerciseStats(NamedTuple):
    total_volume: float
    total_reps: int
    max_weight: float


def normalize_exercise_name(name: str) -> str:
    return name.strip().lower()


def effective_weight(value: float, baseline: float = 0.0) -> float:
    return max(baseline + value, MIN_EFFECTIVE_WEIGHT)


def compute_stats(
    sets: Iterable[SetRecord],
    baseline: float = 0.0,
    *,
    baseline_in_max_weight: bool = False,
) -> ExerciseStats:
    """Sum volume and reps over ``sets`` and track the heaviest set.

    One set of 5 reps at 60 with a baseline of 70 gives volume 650
    (5 * 130) and max weight 60.
    """
    total_volume = 0.0
    total_reps = 0
    max_weight = 0.0
    for s in sets:
        total_volume += s.reps * effective_weight(s.value, baseline)
        total_reps += s.reps
        load = baseline + s.value if baseline_in_max_weight else s.value
        if load > max_weight:
            max_weight = float(load)
    return ExerciseStats(total_volume, total_reps, max_weight)
