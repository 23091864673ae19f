"""Structured logging for the progress workers.

Every record can carry the scope it concerns (user, category, exercise, job)
as ``progress_*`` extras built with :func:`progress_context`. The JSON
formatter lifts them into top-level fields; the text formatter appends them
as ``key=value`` pairs so both formats show the same context.

Controlled via PROGRESS_LOG_FORMAT env var: "json" (default) or "text".
"""

import json
import logging
import sys
import traceback
from datetime import datetime, timezone
from typing import Any

EXTRA_PREFIX = "progress_"


def progress_context(
    *,
    user_id: str | None = None,
    category_id: str | None = None,
    exercise: str | None = None,
    job_id: int | None = None,
    **fields: Any,
) -> dict[str, Any]:
    """Build the ``extra=`` mapping for a log call; None values are left out."""
    context = {
        "user_id": user_id,
        "category_id": category_id,
        "exercise": exercise,
        "job_id": job_id,
        **fields,
    }
    return {
        f"{EXTRA_PREFIX}{name}": value
        for name, value in context.items()
        if value is not None
    }


def _record_context(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in record.__dict__.items()
        if key.startswith(EXTRA_PREFIX)
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, logger, message, context."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
        }
        entry.update(_record_context(record))

        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry, default=str)


class ContextTextFormatter(logging.Formatter):
    """Plaintext lines with the progress context appended as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = _record_context(record)
        if not context:
            return line
        pairs = " ".join(
            f"{key[len(EXTRA_PREFIX):]}={value}" for key, value in context.items()
        )
        # exception text, if any, stays on the lines after the message
        head, sep, tail = line.partition("\n")
        return f"{head} [{pairs}]{sep}{tail}"


def setup_logging(log_format: str, level: int = logging.INFO) -> None:
    """Install a single stderr handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(JSONFormatter() if log_format == "json" else ContextTextFormatter())
    root.addHandler(handler)
