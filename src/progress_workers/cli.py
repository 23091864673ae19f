"""CLI entry point for regenerating or auditing exercise progress aggregates."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any, Sequence

import psycopg

from .aggregates import rebuild_scope
from .config import baseline_in_max_weight_enabled
from .errors import UserNotFoundError
from .handlers.progress_calculation import recalculate_progress_for_category
from .jobs import enqueue_progress_calculation
from .models import ExerciseAggregate, check_invariants
from .source import list_scopes, load_workouts, resolve_baseline
from .store import list_aggregates


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="progress-regenerate",
        description="Rebuild exercise_progress aggregates from the workout history.",
    )
    parser.add_argument(
        "--user-id",
        default=None,
        help="Only touch scopes of this user.",
    )
    parser.add_argument(
        "--category-id",
        default=None,
        help="Only touch scopes of this category.",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--enqueue",
        action="store_true",
        help="Queue one progress-calculation job per scope instead of rebuilding inline.",
    )
    mode.add_argument(
        "--verify",
        action="store_true",
        help="Read-only: report scopes whose stored aggregates drifted from the history.",
    )
    parser.add_argument(
        "--max-retries",
        default=None,
        type=int,
        help="Attempts per queued job with --enqueue (default: PROGRESS_MAX_RETRIES, else 3).",
    )
    return parser


def compare_scope(
    stored: list[ExerciseAggregate], rebuilt: list[ExerciseAggregate]
) -> list[dict[str, Any]]:
    """Describe every difference between stored and freshly rebuilt aggregates."""
    issues: list[dict[str, Any]] = []
    stored_by_name = {a.normalized_name: a for a in stored}
    rebuilt_by_name = {a.normalized_name: a for a in rebuilt}

    for name in sorted(stored_by_name.keys() | rebuilt_by_name.keys()):
        current = stored_by_name.get(name)
        expected = rebuilt_by_name.get(name)
        if current is None:
            issues.append({"exercise": name, "issue": "missing"})
            continue
        if expected is None:
            issues.append({"exercise": name, "issue": "orphaned"})
            continue
        for violation in check_invariants(current):
            issues.append({"exercise": name, "issue": "invariant", "detail": violation})
        if current != expected:
            issues.append({
                "exercise": name,
                "issue": "drift",
                "stored": {
                    "total_volume": current.total_volume,
                    "total_reps": current.total_reps,
                    "max_weight": current.max_weight,
                    "entries": len(current.progress),
                },
                "expected": {
                    "total_volume": expected.total_volume,
                    "total_reps": expected.total_reps,
                    "max_weight": expected.max_weight,
                    "entries": len(expected.progress),
                },
            })
    return issues


async def _verify_scope(
    conn: psycopg.AsyncConnection[Any],
    user_id: str,
    category_id: str,
    include_baseline: bool,
) -> list[dict[str, Any]]:
    baseline = await resolve_baseline(conn, user_id)
    workouts = await load_workouts(conn, user_id, category_id)
    rebuilt = rebuild_scope(
        user_id, category_id, workouts, baseline,
        baseline_in_max_weight=include_baseline,
    )
    stored = await list_aggregates(conn, user_id, category_id)
    return compare_scope(stored, rebuilt)


async def _run(args: argparse.Namespace) -> int:
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL must be set")

    include_baseline = baseline_in_max_weight_enabled()
    result: dict[str, Any] = {"scopes": 0, "aggregates": 0, "entries": 0, "errors": []}
    exit_code = 0

    async with await psycopg.AsyncConnection.connect(database_url) as conn:
        scopes = await list_scopes(conn, user_id=args.user_id, category_id=args.category_id)
        await conn.commit()

        for user_id, category_id in scopes:
            result["scopes"] += 1
            scope = {"user_id": user_id, "category_id": category_id}
            try:
                if args.enqueue:
                    job_id = await enqueue_progress_calculation(
                        conn, user_id, category_id, max_retries=args.max_retries
                    )
                    result.setdefault("jobs", []).append({**scope, "job_id": job_id})
                elif args.verify:
                    issues = await _verify_scope(conn, user_id, category_id, include_baseline)
                    if issues:
                        exit_code = 1
                        result.setdefault("drift", []).append({**scope, "issues": issues})
                else:
                    summary = await recalculate_progress_for_category(
                        conn, user_id, category_id,
                        baseline_in_max_weight=include_baseline,
                    )
                    result["aggregates"] += summary.aggregates
                    result["entries"] += summary.entries
            except UserNotFoundError as exc:
                await conn.rollback()
                exit_code = 1
                result["errors"].append({**scope, "error": str(exc)})
                continue

            if args.verify:
                await conn.rollback()
            else:
                await conn.commit()

    print(json.dumps(result, indent=2, sort_keys=True))
    return exit_code


def main(argv: Sequence[str] | None = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    raise SystemExit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
