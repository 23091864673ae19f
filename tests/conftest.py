"""Shared fixtures: workout builders, an in-memory aggregate store and a fake connection."""

from __future__ import annotations

import copy
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from progress_workers import store as store_module
from progress_workers.models import (
    AggregateKey,
    ExerciseAggregate,
    ExercisePerformance,
    SetRecord,
    WorkoutRecord,
)

USER = "user-1"
CATEGORY = "cat-strength"


def at(day: int, hour: int = 10, minute: int = 0) -> datetime:
    return datetime(2026, 3, day, hour, minute, tzinfo=timezone.utc)


def exercise(
    name: str,
    *sets: tuple[int, float],
    type: str = "weight",
    unit: str | None = "kg",
) -> ExercisePerformance:
    """Build an exercise from (reps, value) pairs."""
    return ExercisePerformance(
        name=name,
        type=type,
        unit=unit,
        sets=tuple(
            SetRecord(order=i, reps=reps, value=value, rest_minutes=1.0)
            for i, (reps, value) in enumerate(sets, start=1)
        ),
    )


def workout(
    workout_id: str,
    created_at: datetime,
    *exercises: ExercisePerformance,
    user_id: str = USER,
    category_id: str = CATEGORY,
) -> WorkoutRecord:
    return WorkoutRecord(
        id=workout_id,
        user_id=user_id,
        category_id=category_id,
        created_at=created_at,
        exercises=tuple(exercises),
    )


class _FakeTransaction:
    """Mimics psycopg's async transaction: restores the store snapshot on error."""

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self._snapshot: dict[AggregateKey, ExerciseAggregate] | None = None

    async def __aenter__(self):
        self._snapshot = copy.deepcopy(self._store.rows)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if exc_type is not None and self._snapshot is not None:
            self._store.rows = self._snapshot
        return False  # don't suppress exceptions


class InMemoryStore:
    """Stand-in for progress_workers.store keyed like the exercise_progress table."""

    def __init__(self) -> None:
        self.rows: dict[AggregateKey, ExerciseAggregate] = {}
        self.calls: list[tuple] = []
        self.fail_on_upsert: str | None = None

    async def lock_scope(self, conn, user_id, category_id, *, shared=False):
        self.calls.append(("lock_scope", user_id, category_id, shared))

    async def lock_key(self, conn, key):
        self.calls.append(("lock_key", key))

    async def get_aggregate(self, conn, key, *, for_update=False):
        self.calls.append(("get", key))
        return copy.deepcopy(self.rows.get(key))

    async def upsert_aggregate(self, conn, aggregate):
        self.calls.append(("upsert", aggregate.key))
        if self.fail_on_upsert == aggregate.normalized_name:
            raise RuntimeError(f"upsert failed for {aggregate.normalized_name}")
        self.rows[aggregate.key] = copy.deepcopy(aggregate)

    async def delete_aggregate(self, conn, key):
        self.calls.append(("delete", key))
        return 1 if self.rows.pop(key, None) is not None else 0

    async def list_aggregates(self, conn, user_id, category_id):
        found = [
            copy.deepcopy(a)
            for k, a in self.rows.items()
            if k.user_id == user_id and k.category_id == category_id
        ]
        return sorted(found, key=lambda a: (a.name, a.normalized_name))

    async def delete_scope(self, conn, user_id, category_id):
        doomed = [k for k in self.rows if k.user_id == user_id and k.category_id == category_id]
        for key in doomed:
            del self.rows[key]
        return len(doomed)

    async def replace_scope(self, conn, user_id, category_id, aggregates):
        self.calls.append(("replace_scope", user_id, category_id))
        deleted = await self.delete_scope(conn, user_id, category_id)
        for aggregate in aggregates:
            self.rows[aggregate.key] = copy.deepcopy(aggregate)
        return deleted

    def get(self, name: str, category_id: str = CATEGORY, user_id: str = USER):
        return self.rows.get(AggregateKey(user_id, category_id, name))

    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in {"upsert", "delete", "replace_scope"}]


@pytest.fixture
def memory_store(monkeypatch) -> InMemoryStore:
    fake = InMemoryStore()
    for name in (
        "lock_scope",
        "lock_key",
        "get_aggregate",
        "upsert_aggregate",
        "delete_aggregate",
        "list_aggregates",
        "delete_scope",
        "replace_scope",
    ):
        monkeypatch.setattr(store_module, name, getattr(fake, name))
    return fake


@pytest.fixture
def fake_conn(memory_store) -> MagicMock:
    conn = AsyncMock()
    conn.transaction = MagicMock(side_effect=lambda: _FakeTransaction(memory_store))
    conn.execute = AsyncMock()
    return conn
