"""Health endpoint for container healthchecks.

Serves GET /health with database reachability, progress-calculation queue
depth and the in-process metrics snapshot. Built on asyncio.start_server.
"""

import asyncio
import json
import logging
from typing import Any

import psycopg
from psycopg.rows import dict_row

from .jobs import PROGRESS_CALCULATION_JOB
from .metrics import get_metrics

logger = logging.getLogger(__name__)

_STATUS_LINES = {
    200: "HTTP/1.1 200 OK",
    404: "HTTP/1.1 404 Not Found",
    503: "HTTP/1.1 503 Service Unavailable",
}


async def _queue_snapshot(db_url: str) -> dict[str, Any]:
    """Job counts per status, or {"db": "error"} when the DB does not answer in 2s."""
    try:
        async with asyncio.timeout(2):
            async with await psycopg.AsyncConnection.connect(
                db_url, autocommit=True
            ) as conn:
                async with conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(
                        """
                        SELECT status, COUNT(*) AS count
                        FROM background_jobs
                        WHERE job_type = %s
                        GROUP BY status
                        """,
                        (PROGRESS_CALCULATION_JOB,),
                    )
                    rows = await cur.fetchall()
        return {"db": "ok", "queue": {row["status"]: int(row["count"]) for row in rows}}
    except Exception:
        logger.debug("Health DB check failed", exc_info=True)
        return {"db": "error", "queue": None}


def _response(status: int, body: dict[str, Any]) -> bytes:
    payload = json.dumps(body)
    return (
        f"{_STATUS_LINES[status]}\r\nContent-Type: application/json\r\n"
        f"Content-Length: {len(payload)}\r\n\r\n{payload}"
    ).encode()


async def _handle_request(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    db_url: str,
) -> None:
    try:
        request_line = await asyncio.wait_for(reader.readline(), timeout=5)
        parts = request_line.decode("utf-8", errors="replace").strip().split()
        path = parts[1] if len(parts) >= 2 else "/"

        if path == "/health":
            snapshot = await _queue_snapshot(db_url)
            metrics = get_metrics()
            healthy = snapshot["db"] == "ok"
            body = {
                "status": "ok" if healthy else "degraded",
                "uptime_seconds": metrics["uptime_seconds"],
                "db": snapshot["db"],
                "queue": snapshot["queue"],
                "metrics": metrics,
            }
            writer.write(_response(200 if healthy else 503, body))
        else:
            writer.write(_response(404, {"error": "not_found"}))
        await writer.drain()
    except Exception:
        logger.debug("Health endpoint request error", exc_info=True)
    finally:
        writer.close()
        await writer.wait_closed()


async def start_health_server(port: int, db_url: str) -> asyncio.Server:
    """Start the health HTTP server. Returns the asyncio.Server for lifecycle management."""

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        await _handle_request(reader, writer, db_url)

    server = await asyncio.start_server(handler, "0.0.0.0", port)
    logger.info("Health endpoint listening on port %d", port)
    return server
