import logging
import os
from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./coursepay.db"
    rabbitmq_url: Optional[str] = None
    exchange: str = "coursepay_events"
    repository_timeout: float = 5.0
    conflict_retries: int = 3
    conflict_backoff: float = 0.05
    log_level: str = "INFO"


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", "sqlite:///./coursepay.db"),
        rabbitmq_url=os.getenv("RABBITMQ_URL") or None,
        exchange=os.getenv("COURSEPAY_EXCHANGE", "coursepay_events"),
        repository_timeout=float(os.getenv("REPOSITORY_TIMEOUT", "5")),
        conflict_retries=int(os.getenv("CONFLICT_RETRIES", "3")),
        conflict_backoff=float(os.getenv("CONFLICT_BACKOFF", "0.05")),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(settings: Settings):
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
