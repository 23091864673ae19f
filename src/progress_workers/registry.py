"""Job type registry.

Each job type maps to one handler and, optionally, the pydantic model its
payload must satisfy. Handlers validate through :func:`validate_payload` so a
malformed payload surfaces as InvalidJobPayloadError, which the worker
dead-letters without retrying.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, NamedTuple

import psycopg
from pydantic import BaseModel, ValidationError

from .errors import InvalidJobPayloadError

logger = logging.getLogger(__name__)

# Handler signature: async def handler(conn: AsyncConnection, payload: dict) -> None
HandlerFn = Callable[[psycopg.AsyncConnection[Any], dict[str, Any]], Awaitable[None]]


class JobType(NamedTuple):
    name: str
    handler: HandlerFn
    payload_model: type[BaseModel] | None


_registry: dict[str, JobType] = {}


def register(
    job_type: str, *, payload_model: type[BaseModel] | None = None
) -> Callable[[HandlerFn], HandlerFn]:
    """Register the handler for ``job_type`` (e.g. 'progress-calculation')."""

    def decorator(fn: HandlerFn) -> HandlerFn:
        if job_type in _registry:
            raise ValueError(f"Duplicate handler for job_type={job_type!r}")
        _registry[job_type] = JobType(job_type, fn, payload_model)
        logger.info(
            "Registered handler %s for job_type=%s (payload=%s)",
            fn.__name__,
            job_type,
            payload_model.__name__ if payload_model else "untyped",
        )
        return fn

    return decorator


def get_handler(job_type: str) -> HandlerFn | None:
    registered = _registry.get(job_type)
    return registered.handler if registered else None


def validate_payload(job_type: str, payload: dict[str, Any]) -> BaseModel:
    """Parse ``payload`` with the model registered for ``job_type``."""
    registered = _registry.get(job_type)
    if registered is None or registered.payload_model is None:
        raise InvalidJobPayloadError(f"No payload contract for job_type={job_type}")
    try:
        return registered.payload_model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidJobPayloadError(
            f"Invalid {job_type} payload: {exc.errors(include_url=False)}"
        ) from exc


def registered_types() -> list[str]:
    return sorted(_registry)
