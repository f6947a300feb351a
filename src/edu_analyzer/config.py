"""Runtime configuration for the analysis job pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class QueueSettings:
    """Job queue and scheduling settings."""

    lock_ttl_seconds: int = 90
    max_attempts: int = 3
    global_concurrency_ceiling: int = 10
    tick_deadline_seconds: float = 50.0
    recent_errors_limit: int = 5
    busy_timeout_ms: int = 5_000
    idle_poll_seconds: float = 5.0


@dataclass(slots=True)
class ProviderCredentials:
    """API credentials per provider, read from the conventional variable names."""

    openrouter_api_key: str | None = None
    anthropic_api_key: str | None = None
    openai_api_key: str | None = None
    google_api_key: str | None = None
    yandex_api_key: str | None = None
    yandex_folder_id: str | None = None


@dataclass(slots=True)
class ProviderSettings:
    """Provider orchestration settings."""

    default_model: str | None = None
    enable_model_switching: bool = True
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 10.0
    request_timeout_seconds: float = 30.0
    models_file: Path | None = None
    credentials: ProviderCredentials = field(default_factory=ProviderCredentials)


@dataclass(slots=True)
class ContentSettings:
    """Content fetch settings."""

    request_timeout_seconds: float = 30.0
    max_retries: int = 3
    max_chars: int = 50_000


@dataclass(slots=True)
class UserContextSettings:
    """User context settings."""

    user_id: str = "default_user"
    user_name: str = "Default User"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".edu_analyzer.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    providers: ProviderSettings = field(default_factory=ProviderSettings)
    content: ContentSettings = field(default_factory=ContentSettings)
    user_context: UserContextSettings = field(default_factory=UserContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        models_file_raw = os.getenv("EDU_ANALYZER_MODELS_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("EDU_ANALYZER_DB_PATH", ".edu_analyzer.db")),
            queue=QueueSettings(
                lock_ttl_seconds=int(os.getenv("EDU_ANALYZER_LOCK_TTL_SECONDS", "90")),
                max_attempts=int(os.getenv("EDU_ANALYZER_MAX_ATTEMPTS", "3")),
                global_concurrency_ceiling=int(
                    os.getenv("EDU_ANALYZER_GLOBAL_CONCURRENCY_CEILING", "10"),
                ),
                tick_deadline_seconds=float(
                    os.getenv("EDU_ANALYZER_TICK_DEADLINE_SECONDS", "50.0"),
                ),
                recent_errors_limit=int(os.getenv("EDU_ANALYZER_RECENT_ERRORS_LIMIT", "5")),
                busy_timeout_ms=int(os.getenv("EDU_ANALYZER_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                idle_poll_seconds=float(os.getenv("EDU_ANALYZER_IDLE_POLL_SECONDS", "5.0")),
            ),
            providers=ProviderSettings(
                default_model=os.getenv("EDU_ANALYZER_DEFAULT_MODEL", "").strip() or None,
                enable_model_switching=_env_bool("ENABLE_MODEL_SWITCHING", default=True),
                max_retries=int(os.getenv("MAX_RETRIES", "3")),
                backoff_base_seconds=float(
                    os.getenv("EDU_ANALYZER_BACKOFF_BASE_SECONDS", "1.0"),
                ),
                backoff_cap_seconds=float(os.getenv("EDU_ANALYZER_BACKOFF_CAP_SECONDS", "10.0")),
                request_timeout_seconds=int(os.getenv("REQUEST_TIMEOUT", "30000")) / 1000.0,
                models_file=Path(models_file_raw) if models_file_raw else None,
                credentials=ProviderCredentials(
                    openrouter_api_key=_env_secret("OPENROUTER_API_KEY"),
                    anthropic_api_key=_env_secret("ANTHROPIC_API_KEY"),
                    openai_api_key=_env_secret("OPENAI_API_KEY"),
                    google_api_key=_env_secret("GOOGLE_API_KEY"),
                    yandex_api_key=_env_secret("YANDEX_API_KEY"),
                    yandex_folder_id=_env_secret("YANDEX_FOLDER_ID"),
                ),
            ),
            content=ContentSettings(
                request_timeout_seconds=float(
                    os.getenv("EDU_ANALYZER_CONTENT_TIMEOUT_SECONDS", "30.0"),
                ),
                max_retries=int(os.getenv("EDU_ANALYZER_CONTENT_MAX_RETRIES", "3")),
                max_chars=int(os.getenv("EDU_ANALYZER_CONTENT_MAX_CHARS", "50000")),
            ),
            user_context=UserContextSettings(
                user_id=os.getenv("EDU_ANALYZER_USER_ID", "default_user"),
                user_name=os.getenv("EDU_ANALYZER_USER_NAME", "Default User"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if queue or provider settings are inconsistent."""

        if self.queue.lock_ttl_seconds <= 0:
            raise ValueError("EDU_ANALYZER_LOCK_TTL_SECONDS must be > 0.")
        if self.queue.max_attempts <= 0:
            raise ValueError("EDU_ANALYZER_MAX_ATTEMPTS must be > 0.")
        if self.queue.global_concurrency_ceiling <= 0:
            raise ValueError("EDU_ANALYZER_GLOBAL_CONCURRENCY_CEILING must be > 0.")
        if self.queue.tick_deadline_seconds <= 0:
            raise ValueError("EDU_ANALYZER_TICK_DEADLINE_SECONDS must be > 0.")
        if self.queue.recent_errors_limit < 0:
            raise ValueError("EDU_ANALYZER_RECENT_ERRORS_LIMIT must be >= 0.")
        if self.providers.max_retries <= 0:
            raise ValueError("MAX_RETRIES must be > 0.")
        if self.providers.request_timeout_seconds <= 0:
            raise ValueError("REQUEST_TIMEOUT must be > 0.")
        if self.providers.backoff_base_seconds < 0 or self.providers.backoff_cap_seconds < 0:
            raise ValueError("Provider backoff settings must be >= 0.")
        if self.queue.lock_ttl_seconds <= self.providers.request_timeout_seconds:
            raise ValueError(
                "EDU_ANALYZER_LOCK_TTL_SECONDS must exceed the provider request timeout "
                f"({self.providers.request_timeout_seconds:g}s), otherwise in-flight jobs "
                "are reclaimed as stale.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_secret(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None
