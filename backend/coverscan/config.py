from functools import lru_cache

from pydantic import AliasChoices, Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )

    app_name: str = Field(default="Coverscan Backend", alias="COVERSCAN_APP_NAME")
    log_level: str = Field(default="INFO", alias="COVERSCAN_LOG_LEVEL")
    database_url: str = Field(default="sqlite:///./coverscan.db", alias="COVERSCAN_DATABASE_URL")
    redis_url: str = Field(default="redis://localhost:6379/0", alias="COVERSCAN_REDIS_URL")

    cors_origins: str | None = Field(
        default="http://localhost:3000",
        alias=AliasChoices("CORS_ORIGINS", "COVERSCAN_CORS_ORIGINS"),
    )
    max_upload_bytes: int = Field(default=10_000_000, alias="COVERSCAN_MAX_UPLOAD_BYTES")

    aws_region: str = Field(default="us-east-1", alias=AliasChoices("AWS_REGION", "COVERSCAN_AWS_REGION"))
    aws_bucket_name: str | None = Field(
        default=None, alias=AliasChoices("AWS_BUCKET_NAME", "COVERSCAN_AWS_BUCKET_NAME")
    )
    presign_ttl_seconds: int = Field(default=3600, alias="COVERSCAN_PRESIGN_TTL_SECONDS")

    openai_api_key: str | None = Field(default=None, alias=AliasChoices("OPENAI_API_KEY", "COVERSCAN_OPENAI_API_KEY"))
    vision_model: str = Field(default="gpt-4o", alias="COVERSCAN_VISION_MODEL")
    classifier_model: str = Field(default="gpt-4o-mini", alias="COVERSCAN_CLASSIFIER_MODEL")
    formatter_model: str = Field(default="gpt-4o-mini", alias="COVERSCAN_FORMATTER_MODEL")
    max_retry_attempts: int = Field(default=3, alias="COVERSCAN_MAX_RETRY_ATTEMPTS")

    google_books_api_key: str | None = Field(
        default=None, alias=AliasChoices("GOOGLE_BOOKS_API_KEY", "COVERSCAN_GOOGLE_BOOKS_API_KEY")
    )
    google_books_url: str = Field(
        default="https://www.googleapis.com/books/v1/volumes", alias="COVERSCAN_GOOGLE_BOOKS_URL"
    )
    request_timeout_seconds: float = Field(default=30.0, alias="COVERSCAN_REQUEST_TIMEOUT_SECONDS")

    libgen_base_url: str = Field(default="https://libgen.is", alias="COVERSCAN_LIBGEN_BASE_URL")
    libgen_mirror_url: str = Field(default="http://books.ms/main", alias="COVERSCAN_LIBGEN_MIRROR_URL")
    download_dir: str = Field(default="./downloads", alias=AliasChoices("DOWNLOAD_DIR", "COVERSCAN_DOWNLOAD_DIR"))
    max_download_mb: float = Field(default=100.0, alias="COVERSCAN_MAX_DOWNLOAD_MB")
    download_timeout_seconds: float = Field(default=120.0, alias="COVERSCAN_DOWNLOAD_TIMEOUT_SECONDS")
    format_preference_fiction: str = Field(default="epub,pdf", alias="COVERSCAN_FORMAT_PREFERENCE_FICTION")
    format_preference_nonfiction: str = Field(default="pdf,epub", alias="COVERSCAN_FORMAT_PREFERENCE_NONFICTION")

    vision_confidence_threshold: float = Field(default=0.5, alias="COVERSCAN_VISION_CONFIDENCE_THRESHOLD")
    content_scan_limit: int = Field(default=20, alias="COVERSCAN_CONTENT_SCAN_LIMIT")
    content_min_chars: int = Field(default=50, alias="COVERSCAN_CONTENT_MIN_CHARS")
    classification_sample_chars: int = Field(default=1000, alias="COVERSCAN_CLASSIFICATION_SAMPLE_CHARS")
    dedupe_window: int = Field(default=5, alias="COVERSCAN_DEDUPE_WINDOW")
    dedupe_threshold: float = Field(default=0.8, alias="COVERSCAN_DEDUPE_THRESHOLD")
    reformat_snippets: bool = Field(default=True, alias="COVERSCAN_REFORMAT_SNIPPETS")

    stage_max_retries: int = Field(default=2, alias="COVERSCAN_STAGE_MAX_RETRIES")
    stage_retry_backoff_max: int = Field(default=300, alias="COVERSCAN_STAGE_RETRY_BACKOFF_MAX")

    @computed_field(return_type=list[str])
    @property
    def cors_origin_list(self) -> list[str]:
        return _split_csv(self.cors_origins)

    @computed_field(return_type=list[str])
    @property
    def fiction_format_order(self) -> list[str]:
        return _split_csv(self.format_preference_fiction, lower=True)

    @computed_field(return_type=list[str])
    @property
    def nonfiction_format_order(self) -> list[str]:
        return _split_csv(self.format_preference_nonfiction, lower=True)

    @computed_field(return_type=int)
    @property
    def max_download_bytes(self) -> int:
        return int(self.max_download_mb * 1024 * 1024)


def _split_csv(value: str | None, lower: bool = False) -> list[str]:
    if not value:
        return []
    items = [item.strip() for item in value.split(",") if item.strip()]
    return [item.lower() for item in items] if lower else items


@lru_cache
def get_settings() -> Settings:
    return Settings()
