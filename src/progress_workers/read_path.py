"""Read helpers consumed by the HTTP layer: progress maps and workout history."""

from __future__ import annotations

import base64
import binascii
import dataclasses
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from . import store
from .models import ExerciseAggregate, WorkoutRecord, as_utc, parse_timestamp, series_totals
from .source import load_exercises, load_workouts

DEFAULT_PAGINATION_LIMIT = 20
MAX_PAGINATION_LIMIT = 100


def encode_cursor(created_at: datetime, workout_id: str) -> str:
    raw = f"{as_utc(created_at).isoformat()}|{workout_id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, str] | None:
    """Inverse of encode_cursor; None for anything that is not a valid cursor."""
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        created_at, workout_id = raw.rsplit("|", 1)
        if not workout_id:
            return None
        return parse_timestamp(created_at), workout_id
    except (ValueError, UnicodeError, binascii.Error):
        return None


def progress_map(aggregates: list[ExerciseAggregate]) -> dict[str, dict[str, Any]]:
    """Key aggregates as "<name>-<type>" for the category screen."""
    return {
        f"{a.name}-{a.type}": {
            "name": a.name,
            "type": a.type,
            "progress": a.progress_json(),
        }
        for a in aggregates
    }


def filter_progress(
    aggregates: list[ExerciseAggregate],
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ExerciseAggregate]:
    """Restrict each series to [start, end] and recompute totals over what is left.

    Aggregates with no entry in the window are dropped.
    """
    if start is None and end is None:
        return list(aggregates)

    lower = as_utc(start) if start is not None else None
    upper = as_utc(end) if end is not None else None
    filtered: list[ExerciseAggregate] = []
    for aggregate in aggregates:
        visible = [
            entry
            for entry in aggregate.progress
            if (lower is None or entry.date >= lower) and (upper is None or entry.date <= upper)
        ]
        if not visible:
            continue
        total_volume, total_reps = series_totals(visible)
        filtered.append(
            dataclasses.replace(
                aggregate,
                total_volume=total_volume,
                total_reps=total_reps,
                max_weight=max(entry.max_weight for entry in visible),
                progress=visible,
            )
        )
    return filtered


async def get_progress_by_category(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[ExerciseAggregate]:
    aggregates = await store.list_aggregates(conn, user_id, category_id)
    return filter_progress(aggregates, start, end)


async def get_workouts_by_category(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    *,
    include_progress: bool = False,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    """Workouts of a category (newest first), plus the full progress map on request.

    The date window applies to workouts only; progress always covers the
    whole history of the category.
    """
    workouts = await load_workouts(
        conn, user_id, category_id, start=start, end=end, ascending=False
    )
    if not include_progress:
        return {"workouts": workouts, "progress": None}

    aggregates = await store.list_aggregates(conn, user_id, category_id)
    return {"workouts": workouts, "progress": progress_map(aggregates)}


async def get_workouts(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    *,
    limit: int = DEFAULT_PAGINATION_LIMIT,
    sort_order: str = "desc",
    cursor: str | None = None,
) -> dict[str, Any]:
    """One page of a user's workouts, keyset-paginated on (created_at, id)."""
    limit = max(1, min(int(limit), MAX_PAGINATION_LIMIT))
    descending = sort_order.lower() != "asc"
    direction = "DESC" if descending else "ASC"
    comparison = "<" if descending else ">"

    query = "SELECT id, user_id, category_id, notes, created_at FROM workouts WHERE user_id = %s"
    params: list[Any] = [user_id]
    decoded = decode_cursor(cursor) if cursor else None
    if decoded is not None:
        query += f" AND (created_at, id) {comparison} (%s, %s)"
        params.extend(decoded)
    query += f" ORDER BY created_at {direction}, id {direction} LIMIT %s"
    params.append(limit + 1)

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(query, tuple(params))
        rows = await cur.fetchall()

    has_more = len(rows) > limit
    rows = rows[:limit]
    exercises = await load_exercises(conn, [str(row["id"]) for row in rows])
    workouts = [
        WorkoutRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            category_id=str(row["category_id"]),
            created_at=as_utc(row["created_at"]),
            exercises=tuple(exercises.get(str(row["id"]), ())),
            notes=row.get("notes"),
        )
        for row in rows
    ]

    next_cursor = None
    if has_more and workouts:
        last = workouts[-1]
        next_cursor = encode_cursor(last.created_at, last.id)

    return {
        "workouts": workouts,
        "pagination": {"hasMore": has_more, "nextCursor": next_cursor},
    }
