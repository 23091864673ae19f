"""Read access to the workout log (source of truth) and user baselines.

These tables are owned by the CRUD layer; this module only reads them.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .errors import UserNotFoundError
from .models import ExercisePerformance, SetRecord, WorkoutRecord, as_utc


async def resolve_baseline(conn: psycopg.AsyncConnection[Any], user_id: str) -> float:
    """Return the user's bodyweight baseline (0 when unset)."""
    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute("SELECT weight FROM users WHERE id = %s", (user_id,))
        row = await cur.fetchone()
    if row is None:
        raise UserNotFoundError(user_id)
    weight = row.get("weight")
    return float(weight) if weight is not None else 0.0


async def load_workouts(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    ascending: bool = True,
) -> list[WorkoutRecord]:
    """Load workouts of a scope with their exercises and sets, in order."""
    query = """
        SELECT id, user_id, category_id, notes, created_at
        FROM workouts
        WHERE user_id = %s AND category_id = %s
    """
    params: list[Any] = [user_id, category_id]
    if start is not None:
        query += " AND created_at >= %s"
        params.append(start)
    if end is not None:
        query += " AND created_at <= %s"
        params.append(end)
    direction = "ASC" if ascending else "DESC"
    query += f" ORDER BY created_at {direction}, id {direction}"

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(query, tuple(params))
        workout_rows = await cur.fetchall()

    exercises = await load_exercises(conn, [str(row["id"]) for row in workout_rows])
    return [
        WorkoutRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            category_id=str(row["category_id"]),
            created_at=as_utc(row["created_at"]),
            exercises=tuple(exercises.get(str(row["id"]), ())),
            notes=row.get("notes"),
        )
        for row in workout_rows
    ]


async def load_exercises(
    conn: psycopg.AsyncConnection[Any], workout_ids: list[str]
) -> dict[str, list[ExercisePerformance]]:
    """Map workout id -> exercises (ordered), each with its ordered sets."""
    if not workout_ids:
        return {}

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            """
            SELECT e.id AS exercise_id, e.workout_id, e.name, e.type, e.unit,
                   s."order" AS set_order, s.reps, s.value, s.rest_minutes
            FROM workout_exercises e
            LEFT JOIN exercise_sets s ON s.exercise_id = e.id
            WHERE e.workout_id::text = ANY(%s)
            ORDER BY e.workout_id, e."order" ASC, e.id ASC, s."order" ASC
            """,
            (workout_ids,),
        )
        rows = await cur.fetchall()

    meta: dict[str, dict[str, Any]] = {}
    sets: dict[str, list[SetRecord]] = defaultdict(list)
    order: dict[str, list[str]] = defaultdict(list)
    for row in rows:
        exercise_id = str(row["exercise_id"])
        if exercise_id not in meta:
            meta[exercise_id] = row
            order[str(row["workout_id"])].append(exercise_id)
        if row["set_order"] is not None:
            sets[exercise_id].append(
                SetRecord(
                    order=int(row["set_order"]),
                    reps=int(row["reps"]),
                    value=float(row["value"] or 0),
                    rest_minutes=float(row["rest_minutes"] or 0),
                )
            )

    return {
        workout_id: [
            ExercisePerformance(
                name=meta[exercise_id]["name"],
                type=meta[exercise_id]["type"],
                unit=meta[exercise_id]["unit"],
                sets=tuple(sets.get(exercise_id, ())),
            )
            for exercise_id in exercise_ids
        ]
        for workout_id, exercise_ids in order.items()
    }


async def list_scopes(
    conn: psycopg.AsyncConnection[Any],
    *,
    user_id: str | None = None,
    category_id: str | None = None,
) -> list[tuple[str, str]]:
    """Distinct (user_id, category_id) pairs with workouts or stored aggregates."""
    filters = ""
    params: list[Any] = []
    if user_id is not None:
        filters += " AND user_id = %s"
        params.append(user_id)
    if category_id is not None:
        filters += " AND category_id = %s"
        params.append(category_id)

    async with conn.cursor(row_factory=dict_row) as cur:
        await cur.execute(
            f"""
            SELECT user_id, category_id FROM workouts WHERE TRUE{filters}
            UNION
            SELECT user_id, category_id FROM exercise_progress WHERE TRUE{filters}
            ORDER BY user_id, category_id
            """,
            tuple(params * 2),
        )
        rows = await cur.fetchall()
    return [(str(row["user_id"]), str(row["category_id"])) for row in rows]
