"""Retention cleanup for finished background jobs.

Completed jobs are kept briefly for observability (bounded by age and by
count); dead jobs are kept longer for diagnosis.
"""

from __future__ import annotations

import logging
from typing import Any, NamedTuple

import psycopg

logger = logging.getLogger(__name__)


class PruneResult(NamedTuple):
    completed: int
    dead: int


async def prune_finished_jobs(
    conn: psycopg.AsyncConnection[Any],
    *,
    keep_completed_seconds: int,
    keep_completed_count: int,
    keep_failed_seconds: int,
) -> PruneResult:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            DELETE FROM background_jobs
            WHERE status = 'completed'
              AND (
                  completed_at < NOW() - make_interval(secs => %s)
                  OR id NOT IN (
                      SELECT id FROM background_jobs
                      WHERE status = 'completed'
                      ORDER BY completed_at DESC, id DESC
                      LIMIT %s
                  )
              )
            """,
            (float(keep_completed_seconds), keep_completed_count),
        )
        deleted_completed = cur.rowcount

        await cur.execute(
            """
            DELETE FROM background_jobs
            WHERE status = 'dead'
              AND completed_at < NOW() - make_interval(secs => %s)
            """,
            (float(keep_failed_seconds),),
        )
        deleted_dead = cur.rowcount

    if deleted_completed or deleted_dead:
        logger.info(
            "Pruned background_jobs (completed=%d, dead=%d)",
            deleted_completed,
            deleted_dead,
        )
    return PruneResult(deleted_completed, deleted_dead)
