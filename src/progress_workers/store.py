"""Aggregate Store: persistence for exercise_progress rows.

One row per (user_id, category_id, normalized_name), scalar totals plus the
ordered contribution series in a JSONB column.

Writers serialize through transaction-scoped advisory locks:
- incremental updates hold the (user, category) scope lock in shared mode
  and then the per-exercise key lock exclusively;
- reconciliation holds the scope lock exclusively.
Locks are always taken scope first, then keys in sorted order.
"""

import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Json

from .models import AggregateKey, ExerciseAggregate

logger = logging.getLogger(__name__)

_COLUMNS = """
    user_id, category_id, normalized_name, name, type, unit,
    total_volume, total_reps, max_weight, progress, version
"""


def _scope_token(user_id: str, category_id: str) -> str:
    return f"exercise_progress:{user_id}:{category_id}"


async def lock_scope(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    *,
    shared: bool = False,
) -> None:
    """Lock a whole (user, category) scope until the transaction ends."""
    fn = "pg_advisory_xact_lock_shared" if shared else "pg_advisory_xact_lock"
    await conn.execute(
        f"SELECT {fn}(hashtext(%s)::bigint)",
        (_scope_token(user_id, category_id),),
    )


async def lock_key(conn: psycopg.AsyncConnection[Any], key: AggregateKey) -> None:
    """Serialize all writers of one aggregate until the transaction ends."""
    await conn.execute(
        "SELECT pg_advisory_xact_lock(hashtext(%s)::bigint)",
        (key.lock_token,),
    )


async def get_aggregate(
    conn: psycopg.AsyncConnection[Any],
    key: AggregateKey,
    *,
    for_update: bool = False,
) -> ExerciseAggregate | None:
    query = f"""
        SELECT {_COLUMNS}
        FROM exercise_progress
        WHERE user_id = %s AND category_id = %s AND normalized_name = %s
    """
    if for_update:
        query += " FOR UPDATE"
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(query, tuple(key))
        row = await cur.fetchone()
    if row is None:
        return None
    return ExerciseAggregate.from_row(row)


async def upsert_aggregate(
    conn: psycopg.AsyncConnection[Any], aggregate: ExerciseAggregate
) -> None:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            INSERT INTO exercise_progress (
                user_id, category_id, normalized_name, name, type, unit,
                total_volume, total_reps, max_weight, progress, version, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, 1, NOW())
            ON CONFLICT (user_id, category_id, normalized_name) DO UPDATE SET
                name = EXCLUDED.name,
                type = EXCLUDED.type,
                unit = EXCLUDED.unit,
                total_volume = EXCLUDED.total_volume,
                total_reps = EXCLUDED.total_reps,
                max_weight = EXCLUDED.max_weight,
                progress = EXCLUDED.progress,
                version = exercise_progress.version + 1,
                updated_at = NOW()
            """,
            (
                aggregate.user_id,
                aggregate.category_id,
                aggregate.normalized_name,
                aggregate.name,
                aggregate.type,
                aggregate.unit,
                aggregate.total_volume,
                aggregate.total_reps,
                aggregate.max_weight,
                Json(aggregate.progress_json()),
            ),
        )


async def delete_aggregate(conn: psycopg.AsyncConnection[Any], key: AggregateKey) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            """
            DELETE FROM exercise_progress
            WHERE user_id = %s AND category_id = %s AND normalized_name = %s
            """,
            tuple(key),
        )
        return cur.rowcount


async def list_aggregates(
    conn: psycopg.AsyncConnection[Any], user_id: str, category_id: str
) -> list[ExerciseAggregate]:
    """All aggregates of a scope, sorted by display name."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            f"""
            SELECT {_COLUMNS}
            FROM exercise_progress
            WHERE user_id = %s AND category_id = %s
            ORDER BY name ASC, normalized_name ASC
            """,
            (user_id, category_id),
        )
        rows = await cur.fetchall()
    return [ExerciseAggregate.from_row(row) for row in rows]


async def delete_scope(
    conn: psycopg.AsyncConnection[Any], user_id: str, category_id: str
) -> int:
    async with conn.cursor() as cur:
        await cur.execute(
            "DELETE FROM exercise_progress WHERE user_id = %s AND category_id = %s",
            (user_id, category_id),
        )
        return cur.rowcount


async def replace_scope(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    aggregates: list[ExerciseAggregate],
) -> int:
    """Swap a scope's rows for ``aggregates`` in one all-or-nothing transaction.

    Returns the number of rows deleted.
    """
    async with conn.transaction():
        deleted = await delete_scope(conn, user_id, category_id)
        for aggregate in aggregates:
            await upsert_aggregate(conn, aggregate)
    logger.debug(
        "Replaced exercise_progress scope user=%s category=%s (deleted=%d, inserted=%d)",
        user_id,
        category_id,
        deleted,
        len(aggregates),
    )
    return deleted
