"""Job queue contract for progress recalculation.

Jobs live in the background_jobs table and wake the worker via NOTIFY on
the progress_jobs channel.
"""

from __future__ import annotations

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .config import max_retries_setting

logger = logging.getLogger(__name__)

PROGRESS_CALCULATION_JOB = "progress-calculation"
NOTIFY_CHANNEL = "progress_jobs"
DEFAULT_BACKOFF_SECONDS = 2.0


def retry_backoff_seconds(attempt: int, base_seconds: float = DEFAULT_BACKOFF_SECONDS) -> float:
    """Exponential backoff: base, 2*base, 4*base, ... for attempts 1, 2, 3, ..."""
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    return base_seconds * 2 ** (attempt - 1)


async def enqueue_progress_calculation(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    *,
    max_retries: int | None = None,
    delay_seconds: float = 0.0,
) -> int | None:
    """Queue a recalculation of one (user, category) scope.

    A scope with a job still pending is not queued twice; returns the new
    job id, or None when an equivalent job was already waiting.
    ``max_retries`` defaults to PROGRESS_MAX_RETRIES.
    """
    if max_retries is None:
        max_retries = max_retries_setting()
    payload = {"userId": user_id, "categoryId": category_id}
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            INSERT INTO background_jobs (user_id, job_type, payload, max_retries, scheduled_for)
            SELECT %s, %s, %s, %s, NOW() + make_interval(secs => %s)
            WHERE NOT EXISTS (
                SELECT 1 FROM background_jobs
                WHERE job_type = %s
                  AND status = 'pending'
                  AND payload->>'userId' = %s
                  AND payload->>'categoryId' = %s
            )
            RETURNING id
            """,
            (
                user_id,
                PROGRESS_CALCULATION_JOB,
                Json(payload),
                max_retries,
                float(delay_seconds),
                PROGRESS_CALCULATION_JOB,
                user_id,
                category_id,
            ),
        )
        row = await cur.fetchone()

    if row is None:
        logger.debug(
            "progress-calculation already pending for user=%s category=%s",
            user_id,
            category_id,
        )
        return None

    await conn.execute("SELECT pg_notify(%s, %s)", (NOTIFY_CHANNEL, str(row["id"])))
    logger.info(
        "Enqueued progress-calculation job %d for user=%s category=%s",
        row["id"],
        user_id,
        category_id,
    )
    return int(row["id"])
