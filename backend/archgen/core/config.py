from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Use top level .env file (one level above ./backend/)
        env_file="../.env",
        env_ignore_empty=True,
        extra="ignore",
    )

    PROJECT_NAME: str = "archgen"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: Literal["local", "staging", "production"] = "local"
    LOG_LEVEL: str = "INFO"

    DATABASE_URL: str = "sqlite:///./archgen.db"
    # Without a Redis URL the queue and status cache live in-process.
    REDIS_URL: str | None = None

    LLM_API_KEY: str | None = None
    LLM_BASE_URL: str | None = None
    MODEL_DEFAULT: str = "gpt-4o"

    STATUS_TTL_SECONDS: int = 86400

    DESIGN_QUEUE_NAME: str = "design-generation"
    DESIGN_QUEUE_ATTEMPTS: int = 3
    DESIGN_QUEUE_BACKOFF_SECONDS: float = 1.0
    DIAGRAM_QUEUE_NAME: str = "diagram-rendering"
    DIAGRAM_QUEUE_ATTEMPTS: int = 2
    DIAGRAM_QUEUE_BACKOFF_SECONDS: float = 0.5
    QUEUE_REMOVE_ON_COMPLETE: int = 100
    QUEUE_REMOVE_ON_FAIL: int = 50
    QUEUE_VISIBILITY_TIMEOUT_SECONDS: int = 300
    QUEUE_STALL_GRACE_SECONDS: float = 5.0

    DESIGN_WORKER_CONCURRENCY: int = 5
    DIAGRAM_WORKER_CONCURRENCY: int = 10

    VERSION_ALLOCATION_MAX_ATTEMPTS: int = 5
    STALE_PENDING_JOB_SECONDS: int = 600

    MERMAID_CLI_PATH: str | None = None
    RENDER_TIMEOUT_SECONDS: float = 30.0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def run_worker_in_process(self) -> bool:
        return self.REDIS_URL is None


settings = Settings()  # type: ignore
