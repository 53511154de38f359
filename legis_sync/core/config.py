from typing import List, Optional

from dotenv import load_dotenv
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

ENTITY_TYPES = ("deputado", "despesa", "proposicao", "votacao")
BREAKER_SCOPES = ("client", "entity")


class Settings(BaseSettings):
    PROJECT_NAME: str = "legis-sync"

    # Falls back to a local SQLite file for development
    DATABASE_URL: str = "sqlite:///./legis_sync.db"

    # Upstream API
    CAMARA_BASE_URL: str = "https://dadosabertos.camara.leg.br/api/v2"
    USER_AGENT: str = "legis-sync/1.0"
    HTTP_TIMEOUT: float = 30.0  # per HTTP request

    # Rate limiter (token bucket)
    REQUESTS_PER_SECOND: float = 5.0
    RATE_LIMIT_BURST: int = 10
    RATE_LIMIT_WAIT_TIMEOUT: Optional[float] = None  # None = wait as long as the caller allows

    # Retry with exponential backoff
    MAX_RETRY_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 0.2
    RETRY_MAX_DELAY: float = 10.0
    RETRY_JITTER: bool = True

    # Circuit breaker (tolerant defaults, the upstream is slow)
    BREAKER_MAX_FAILURES: int = 8
    BREAKER_RESET_TIMEOUT: float = 120.0
    BREAKER_SUCCESS_THRESHOLD: int = 3
    BREAKER_CALL_TIMEOUT: float = 90.0
    BREAKER_SCOPE: str = "client"  # "client" = one breaker for every entity, "entity" = one per entity type

    # Orchestrator
    PAGE_SIZE: int = 100  # API maximum
    MAX_PAGES: int = 100  # safety ceiling for pagination
    PAGE_DELAY: float = 0.1  # polite pause between pages/units
    UNIT_TIMEOUT: float = 600.0
    FAILURE_COOLDOWN: float = 30.0
    RUN_DEADLINE: Optional[float] = None
    BACKFILL_ENTITIES: List[str] = ["deputado", "proposicao", "votacao", "despesa"]
    INCREMENTAL_ENTITIES: List[str] = ["deputado", "proposicao", "votacao"]
    QUICK_SYNC_ENTITIES: List[str] = ["proposicao"]
    INCREMENTAL_LOOKBACK_DAYS: int = 1

    # Scheduler
    DAILY_SYNC_HOUR: int = 3  # UTC
    QUICK_SYNC_INTERVAL_MINUTES: int = 240
    STALE_RUN_MINUTES: int = 180

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @field_validator("REQUESTS_PER_SECOND", "HTTP_TIMEOUT", "BREAKER_CALL_TIMEOUT", "UNIT_TIMEOUT")
    @classmethod
    def _positive_float(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @field_validator(
        "RATE_LIMIT_BURST",
        "MAX_RETRY_ATTEMPTS",
        "BREAKER_MAX_FAILURES",
        "BREAKER_SUCCESS_THRESHOLD",
        "PAGE_SIZE",
        "MAX_PAGES",
    )
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value

    @field_validator("PAGE_SIZE")
    @classmethod
    def _page_size_cap(cls, value: int) -> int:
        return min(value, 100)

    @field_validator("BREAKER_SCOPE")
    @classmethod
    def _known_scope(cls, value: str) -> str:
        value = value.lower()
        if value not in BREAKER_SCOPES:
            raise ValueError(f"unknown breaker scope {value!r}, expected one of {BREAKER_SCOPES}")
        return value

    @field_validator("BACKFILL_ENTITIES", "INCREMENTAL_ENTITIES", "QUICK_SYNC_ENTITIES")
    @classmethod
    def _known_entities(cls, value: List[str]) -> List[str]:
        unknown = [v for v in value if v not in ENTITY_TYPES]
        if unknown:
            raise ValueError(f"unknown entity types {unknown}, expected any of {ENTITY_TYPES}")
        return value


settings = Settings()
