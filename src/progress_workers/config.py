import os
from dataclasses import dataclass


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_MAX_RETRIES = 3


# Per-call settings shared by the worker, the CLI and the in-process updater.
def baseline_in_max_weight_enabled() -> bool:
    """Whether max weight includes the user baseline (off: raw external load)."""
    return _env_bool("PROGRESS_BASELINE_IN_MAX_WEIGHT")


def max_retries_setting() -> int:
    """Attempts given to each newly queued job."""
    return _env_int("PROGRESS_MAX_RETRIES", DEFAULT_MAX_RETRIES)


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str = ""
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    backoff_seconds: float = 2.0
    concurrency: int = 5
    rate_limit_max: int = 10
    rate_limit_window_seconds: float = 1.0
    keep_completed_seconds: int = 3600
    keep_completed_count: int = 100
    keep_failed_seconds: int = 86400
    health_port: int = 8081
    log_format: str = "json"

    def __post_init__(self) -> None:
        if not self.listen_database_url:
            object.__setattr__(self, "listen_database_url", self.database_url)

    @classmethod
    def from_env(cls) -> "Config":
        database_url = os.environ.get("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL must be set")

        return cls(
            database_url=database_url,
            listen_database_url=os.environ.get(
                "PROGRESS_WORKER_LISTEN_DATABASE_URL", database_url
            ),
            poll_interval_seconds=_env_float("PROGRESS_POLL_INTERVAL", 5.0),
            batch_size=_env_int("PROGRESS_BATCH_SIZE", 10),
            backoff_seconds=_env_float("PROGRESS_BACKOFF_SECONDS", 2.0),
            concurrency=_env_int("PROGRESS_CONCURRENCY", 5),
            rate_limit_max=_env_int("PROGRESS_RATE_LIMIT_MAX", 10),
            rate_limit_window_seconds=_env_float("PROGRESS_RATE_LIMIT_WINDOW", 1.0),
            keep_completed_seconds=_env_int("PROGRESS_KEEP_COMPLETED_SECONDS", 3600),
            keep_completed_count=_env_int("PROGRESS_KEEP_COMPLETED_COUNT", 100, minimum=0),
            keep_failed_seconds=_env_int("PROGRESS_KEEP_FAILED_SECONDS", 86400),
            health_port=_env_int("PROGRESS_HEALTH_PORT", 8081),
            log_format=os.environ.get("PROGRESS_LOG_FORMAT", "json"),
        )
