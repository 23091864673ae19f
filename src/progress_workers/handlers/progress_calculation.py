"""Reconciliation handler for progress-calculation jobs.

Rebuilds every exercise_progress aggregate of one (user, category) from the
full workout history and swaps the scope's rows in one transaction. Running
it repeatedly on unchanged history yields identical rows.

The scope is locked exclusively for the whole run, so incremental writers
(which hold the same lock in shared mode) cannot interleave with it.
"""

import logging
from typing import Any, NamedTuple, cast

import psycopg
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .. import store
from ..aggregates import rebuild_scope
from ..config import baseline_in_max_weight_enabled
from ..jobs import PROGRESS_CALCULATION_JOB
from ..logging import progress_context
from ..metrics import record_reconciliation
from ..registry import register, validate_payload
from ..source import load_workouts, resolve_baseline

logger = logging.getLogger(__name__)


class ProgressJobPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    category_id: str = Field(alias="categoryId")
    baseline_in_max_weight: bool | None = Field(default=None, alias="baselineInMaxWeight")

    @field_validator("user_id", "category_id")
    @classmethod
    def validate_non_empty(cls, value: str, info: Any) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must not be empty")
        return normalized


class ReconciliationSummary(NamedTuple):
    aggregates: int
    entries: int
    removed: int


def parse_payload(payload: dict[str, Any]) -> ProgressJobPayload:
    return cast(ProgressJobPayload, validate_payload(PROGRESS_CALCULATION_JOB, payload))


async def recalculate_progress_for_category(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    *,
    baseline_in_max_weight: bool | None = None,
) -> ReconciliationSummary:
    """Discard and rebuild all aggregates of one (user, category) scope.

    ``baseline_in_max_weight`` defaults to PROGRESS_BASELINE_IN_MAX_WEIGHT,
    the same default the incremental updater uses.
    """
    if baseline_in_max_weight is None:
        baseline_in_max_weight = baseline_in_max_weight_enabled()
    baseline = await resolve_baseline(conn, user_id)

    async with conn.transaction():
        await store.lock_scope(conn, user_id, category_id)
        workouts = await load_workouts(conn, user_id, category_id)
        aggregates = rebuild_scope(
            user_id,
            category_id,
            workouts,
            baseline,
            baseline_in_max_weight=baseline_in_max_weight,
        )
        removed = await store.replace_scope(conn, user_id, category_id, aggregates)

    summary = ReconciliationSummary(
        aggregates=len(aggregates),
        entries=sum(len(a.progress) for a in aggregates),
        removed=removed,
    )
    record_reconciliation(summary.aggregates, summary.removed)
    logger.info(
        "Recalculated exercise_progress (workouts=%d, aggregates=%d, entries=%d, replaced=%d)",
        len(workouts),
        summary.aggregates,
        summary.entries,
        summary.removed,
        extra=progress_context(
            user_id=user_id,
            category_id=category_id,
            baseline_in_max_weight=baseline_in_max_weight,
        ),
    )
    return summary


@register(PROGRESS_CALCULATION_JOB, payload_model=ProgressJobPayload)
async def handle_progress_calculation(
    conn: psycopg.AsyncConnection[Any], payload: dict[str, Any]
) -> None:
    job = parse_payload(payload)
    await recalculate_progress_for_category(
        conn,
        job.user_id,
        job.category_id,
        baseline_in_max_weight=job.baseline_in_max_weight,
    )
