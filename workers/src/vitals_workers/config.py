import os
from dataclasses import dataclass

DEFAULT_TERRA_API_URL = "https://api.tryterra.co/v2"


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


@dataclass(frozen=True)
class Config:
    database_url: str
    listen_database_url: str = ""
    poll_interval_seconds: float = 5.0
    batch_size: int = 10
    max_attempts: int = 3
    health_port: int = 8081
    log_format: str = "json"
    stuck_timeout_minutes: int = 60
    recovery_interval_seconds: int = 300
    confidence_window_days: int = 30
    terra_api_url: str = DEFAULT_TERRA_API_URL
    terra_api_key: str | None = None
    terra_dev_id: str | None = None
    terra_signing_secret: str | None = None
    terra_timeout_seconds: float = 15.0

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
                "VITALS_WORKER_LISTEN_DATABASE_URL", database_url
            ),
            poll_interval_seconds=_env_float("VITALS_POLL_INTERVAL", 5.0),
            batch_size=_env_int("VITALS_BATCH_SIZE", 10),
            max_attempts=_env_int("VITALS_MAX_ATTEMPTS", 3),
            health_port=_env_int("VITALS_HEALTH_PORT", 8081),
            log_format=os.environ.get("VITALS_LOG_FORMAT", "json"),
            stuck_timeout_minutes=_env_int("VITALS_STUCK_TIMEOUT_MINUTES", 60),
            recovery_interval_seconds=_env_int("VITALS_RECOVERY_INTERVAL_SECONDS", 300),
            confidence_window_days=_env_int("VITALS_CONFIDENCE_WINDOW_DAYS", 30),
            terra_api_url=os.environ.get("TERRA_API_URL", DEFAULT_TERRA_API_URL),
            terra_api_key=os.environ.get("TERRA_API_KEY") or None,
            terra_dev_id=os.environ.get("TERRA_DEV_ID") or None,
            terra_signing_secret=os.environ.get("TERRA_SIGNING_SECRET") or None,
            terra_timeout_seconds=_env_float("VITALS_TERRA_TIMEOUT_SECONDS", 15.0),
        )


def confidence_window_days() -> int:
    """Trailing window used by confidence recomputation (VITALS_CONFIDENCE_WINDOW_DAYS)."""
    return _env_int("VITALS_CONFIDENCE_WINDOW_DAYS", 30)


def max_job_attempts() -> int:
    """Attempt limit for every job the pipeline enqueues (VITALS_MAX_ATTEMPTS)."""
    return _env_int("VITALS_MAX_ATTEMPTS", 3)


def stuck_timeout_minutes() -> int:
    return _env_int("VITALS_STUCK_TIMEOUT_MINUTES", 60)
