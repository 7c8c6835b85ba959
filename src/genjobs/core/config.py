"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database Configuration
    database_url: str = Field(alias="DATABASE_URL")
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Prompt enhancement (Replicate)
    replicate_api_token: str = Field(default="", alias="REPLICATE_API_TOKEN")
    prompt_model: str = Field(default="google/gemini-2.5-flash", alias="PROMPT_MODEL")
    prompt_enhancement_template: str = Field(
        default=(
            "Rewrite the following image edit instruction as a single, precise English "
            "prompt for an AI image editor. Keep everything outside the requested change "
            "unchanged. Output only the prompt.\n\nInstruction: {prompt}"
        ),
        alias="PROMPT_ENHANCEMENT_TEMPLATE",
    )
    prompt_timeout_seconds: float = Field(default=120.0, alias="PROMPT_TIMEOUT_SECONDS")

    # Image synthesis (fal.ai)
    fal_api_key: str = Field(default="", alias="FAL_API_KEY")
    synthesis_endpoint: str = Field(
        default="https://fal.run/fal-ai/nano-banana-pro/edit", alias="SYNTHESIS_ENDPOINT"
    )
    synthesis_timeout_seconds: float = Field(default=300.0, alias="SYNTHESIS_TIMEOUT_SECONDS")

    # External call retry policy
    external_max_attempts: int = Field(default=3, ge=1, alias="EXTERNAL_MAX_ATTEMPTS")
    external_base_delay_seconds: float = Field(default=1.0, alias="EXTERNAL_BASE_DELAY_SECONDS")
    external_max_delay_seconds: float = Field(default=5.0, alias="EXTERNAL_MAX_DELAY_SECONDS")

    # Image pipeline
    image_fetch_timeout_seconds: float = Field(default=30.0, alias="IMAGE_FETCH_TIMEOUT_SECONDS")
    image_max_bytes: int = Field(default=3 * 1024 * 1024, alias="IMAGE_MAX_BYTES")
    image_min_dimension: int = Field(default=512, alias="IMAGE_MIN_DIMENSION")

    # Object storage (any S3-compatible endpoint)
    s3_bucket: str = Field(default="generations", alias="S3_BUCKET")
    s3_region: str = Field(default="us-east-1", alias="S3_REGION")
    s3_endpoint_url: str | None = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_access_key_id: str = Field(default="", alias="S3_ACCESS_KEY_ID")
    s3_secret_access_key: str = Field(default="", alias="S3_SECRET_ACCESS_KEY")
    s3_public_base_url: str = Field(default="", alias="S3_PUBLIC_BASE_URL")

    # Notifications
    expo_push_url: str = Field(
        default="https://exp.host/--/api/v2/push/send", alias="EXPO_PUSH_URL"
    )
    notification_title: str = Field(
        default="Your process is complete!", alias="NOTIFICATION_TITLE"
    )
    notification_body: str = Field(
        default="Your image is ready. You can view the results.", alias="NOTIFICATION_BODY"
    )

    # Credits
    standard_tier_cost: int = Field(default=10, ge=0, alias="STANDARD_TIER_COST")
    premium_tier_cost: int = Field(default=35, ge=0, alias="PREMIUM_TIER_COST")
    ledger_cas_max_attempts: int = Field(default=5, ge=1, alias="LEDGER_CAS_MAX_ATTEMPTS")

    # Worker
    poll_interval_seconds: int = Field(default=1, alias="POLL_INTERVAL_SECONDS")
    worker_batch_size: int = Field(default=10, alias="WORKER_BATCH_SIZE")
    stale_job_timeout_minutes: int = Field(default=15, alias="STALE_JOB_TIMEOUT_MINUTES")

    @model_validator(mode="after")
    def validate_stale_timeout(self) -> "Settings":
        """A running job heartbeats before every external attempt, so the
        stale timeout must outlast the longest single attempt plus its backoff.
        """
        longest_attempt = max(
            self.prompt_timeout_seconds,
            self.synthesis_timeout_seconds,
            self.image_fetch_timeout_seconds,
        )
        if self.stale_job_timeout_minutes * 60 <= longest_attempt + self.external_max_delay_seconds:
            raise ValueError(
                f"STALE_JOB_TIMEOUT_MINUTES ({self.stale_job_timeout_minutes}) must exceed the "
                f"longest external attempt ({longest_attempt:.0f}s plus "
                f"{self.external_max_delay_seconds:.0f}s backoff)"
            )
        return self

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if configuration is incomplete.
        Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.replicate_api_token:
            missing.append(
                "REPLICATE_API_TOKEN: Get your API token from https://replicate.com/account/api-tokens"
            )

        if not self.fal_api_key:
            missing.append("FAL_API_KEY: Create a key at https://fal.ai/dashboard/keys")

        if not self.s3_access_key_id or not self.s3_secret_access_key:
            missing.append("S3_ACCESS_KEY_ID / S3_SECRET_ACCESS_KEY: Object storage credentials")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe application cannot start without these variables."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        renderer = [
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderer = [structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            *renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
