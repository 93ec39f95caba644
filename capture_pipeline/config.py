from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).parent.parent.resolve()


class Settings(BaseSettings):
    """Pipeline configuration loaded from environment variables."""

    base_dir: Path = BASE_DIR
    # Server side authoritative state (records + jobs)
    db_path: Path = Field(
        default=BASE_DIR / "capture_pipeline.db",
        validation_alias=AliasChoices('db_path', 'CAPTURE_DB_PATH')
    )
    # Device side durable capture queue
    local_queue_path: Path = Field(
        default=BASE_DIR / "local_captures.db",
        validation_alias=AliasChoices('local_queue_path', 'LOCAL_QUEUE_PATH')
    )
    # Archive synced entries instead of deleting them
    local_queue_archive_synced: bool = False
    audio_dir: Path = BASE_DIR / "audio"

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices('log_level', 'LOG_LEVEL')
    )

    # Worker pool
    worker_count: int = Field(
        default=4,
        validation_alias=AliasChoices('worker_count', 'PIPELINE_WORKER_COUNT')
    )
    # Idle workers re-check the queue at least this often
    worker_poll_interval_seconds: float = 1.0

    # Retry policy (centralized in the job queue)
    retry_base_delay_seconds: float = Field(
        default=1.0,
        validation_alias=AliasChoices('retry_base_delay_seconds', 'RETRY_BASE_DELAY_SECONDS')
    )
    retry_max_delay_seconds: float = Field(
        default=60.0,
        validation_alias=AliasChoices('retry_max_delay_seconds', 'RETRY_MAX_DELAY_SECONDS')
    )
    ai_max_attempts: int = 3

    # Per-stage call timeouts
    transcription_timeout_seconds: float = 30.0
    enrichment_timeout_seconds: float = 15.0
    integration_timeout_seconds: float = 10.0

    # Provider rate limits (requests per minute)
    transcription_rpm: int = Field(
        default=50,
        validation_alias=AliasChoices('transcription_rpm', 'TRANSCRIPTION_RPM')
    )
    enrichment_rpm: int = Field(
        default=500,
        validation_alias=AliasChoices('enrichment_rpm', 'ENRICHMENT_RPM')
    )
    integration_rpm: int = Field(
        default=60,
        validation_alias=AliasChoices('integration_rpm', 'INTEGRATION_RPM')
    )

    # Circuit breaker
    circuit_failure_threshold: int = 5
    circuit_window_seconds: float = 60.0
    circuit_cooldown_seconds: float = 30.0

    # Content cache TTLs
    enrichment_cache_ttl_seconds: int = 3600
    transcription_cache_ttl_seconds: int = 24 * 3600

    # Duplicate detection
    dedup_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices('dedup_enabled', 'CAPTURE_DEDUP_ENABLED')
    )
    dedup_window_seconds: int = Field(
        default=300,
        validation_alias=AliasChoices('dedup_window_seconds', 'CAPTURE_DEDUP_WINDOW_SECONDS')
    )

    # Confidence tuning
    auto_apply_threshold: float = Field(
        default=0.9,
        validation_alias=AliasChoices('auto_apply_threshold', 'AUTO_APPLY_THRESHOLD')
    )
    heuristic_confidence: float = 0.5
    fallback_transcript_confidence: float = 0.6
    max_tags: int = 10
    suggested_link_threshold: float = 0.6
    max_suggested_links: int = 3
    prior_records_context: int = 20

    # External services
    openai_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('openai_api_key', 'OPENAI_API_KEY')
    )
    openai_base_url: str = Field(
        default="https://api.openai.com/v1",
        validation_alias=AliasChoices('openai_base_url', 'OPENAI_BASE_URL')
    )
    transcription_model: str = "whisper-1"
    enrichment_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices('enrichment_model', 'ENRICHMENT_MODEL')
    )

    integration_enabled: bool = Field(
        default=False,
        validation_alias=AliasChoices('integration_enabled', 'INTEGRATION_ENABLED')
    )
    calendar_api_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    calendar_access_token: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices('calendar_access_token', 'CALENDAR_ACCESS_TOKEN')
    )

    # Client sync
    sync_batch_size: int = 10
    sync_server_url: str = Field(
        default="http://localhost:8082",
        validation_alias=AliasChoices('sync_server_url', 'SYNC_SERVER_URL')
    )

    # Status notifier
    notifier_send_timeout_seconds: float = 5.0

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @model_validator(mode='after')
    def check_thresholds(self) -> 'Settings':
        """Reject confidence values outside 0..1."""
        for name in ("auto_apply_threshold", "heuristic_confidence", "fallback_transcript_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        if self.heuristic_confidence >= self.auto_apply_threshold:
            raise ValueError("heuristic_confidence must stay below auto_apply_threshold")
        return self

    @property
    def stage_timeouts(self) -> dict[str, float]:
        return {
            "transcription": self.transcription_timeout_seconds,
            "enrichment": self.enrichment_timeout_seconds,
            "integration": self.integration_timeout_seconds,
        }


settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance"""
    return settings


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging for the server and CLI entry points."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
