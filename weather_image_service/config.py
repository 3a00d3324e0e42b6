"""
Configuration loader for the weather image service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Infrastructure backend: in-process fakes or AWS services
    storage_backend: str = Field("memory", env="STORAGE_BACKEND")
    # With the memory backend the API process also runs the queue consumers
    embedded_consumers: bool = Field(True, env="EMBEDDED_CONSUMERS")
    aws_region: str = Field("eu-west-1", env="AWS_REGION")

    # Job store (DynamoDB)
    job_table_name: str = Field("JobStatus", env="JOB_TABLE_NAME")
    dynamodb_endpoint: Optional[str] = Field(None, env="DYNAMODB_ENDPOINT")
    job_update_max_attempts: int = Field(50, env="JOB_UPDATE_MAX_ATTEMPTS")

    # Queues (SQS)
    sqs_endpoint: Optional[str] = Field(None, env="SQS_ENDPOINT")
    dispatch_queue_name: str = Field("weather-stations-queue", env="DISPATCH_QUEUE_NAME")
    process_item_queue_name: str = Field("process-image-queue", env="PROCESS_ITEM_QUEUE_NAME")
    queue_visibility_timeout_seconds: int = Field(300, env="QUEUE_VISIBILITY_TIMEOUT_SECONDS")
    queue_wait_seconds: int = Field(10, env="QUEUE_WAIT_SECONDS")
    max_delivery_attempts: int = Field(5, env="MAX_DELIVERY_ATTEMPTS")
    worker_concurrency: int = Field(8, env="WORKER_CONCURRENCY")

    # S3 / Cloudflare R2 compatible object storage
    s3_endpoint: Optional[str] = Field(None, env="S3_ENDPOINT")
    s3_access_key_id: Optional[str] = Field(None, env="S3_ACCESS_KEY_ID")
    s3_secret_access_key: Optional[str] = Field(None, env="S3_SECRET_ACCESS_KEY")
    s3_bucket_name: str = Field("weather-images", env="S3_BUCKET_NAME")
    s3_public_base_url: Optional[str] = Field(None, env="S3_PUBLIC_BASE_URL")
    object_key_prefix: str = Field("weather-images/", env="OBJECT_KEY_PREFIX")
    result_url_ttl_seconds: int = Field(24 * 3600, env="RESULT_URL_TTL_SECONDS")

    # External providers
    data_provider_url: str = Field(
        "https://data.buienradar.nl/2.0/feed/json", env="DATA_PROVIDER_URL"
    )
    unsplash_api_url: str = Field(
        "https://api.unsplash.com/photos/random", env="UNSPLASH_API_URL"
    )
    unsplash_access_key: Optional[str] = Field(None, env="UNSPLASH_ACCESS_KEY")
    user_agent: str = Field("WeatherImageService/1.0", env="USER_AGENT")
    connect_timeout_seconds: float = Field(5.0, env="CONNECT_TIMEOUT_SECONDS")
    request_timeout_seconds: float = Field(30.0, env="REQUEST_TIMEOUT_SECONDS")

    # Retry policy for provider calls
    http_max_attempts: int = Field(4, env="HTTP_MAX_ATTEMPTS")
    http_backoff_factor: float = Field(0.5, env="HTTP_BACKOFF_FACTOR")
    http_backoff_max_seconds: float = Field(8.0, env="HTTP_BACKOFF_MAX_SECONDS")
    retry_after_cap_seconds: float = Field(30.0, env="RETRY_AFTER_CAP_SECONDS")

    # Item selection
    selection_hard_cap: int = Field(50, env="SELECTION_HARD_CAP")
    selection_fallback_cap: int = Field(10, env="SELECTION_FALLBACK_CAP")
    locality_strict: bool = Field(False, env="LOCALITY_STRICT")
    candidate_overfetch_factor: int = Field(2, env="CANDIDATE_OVERFETCH_FACTOR")

    # Image output
    image_max_width: int = Field(1280, env="IMAGE_MAX_WIDTH")
    image_max_height: int = Field(720, env="IMAGE_MAX_HEIGHT")
    image_quality: int = Field(85, env="IMAGE_QUALITY")
    use_placeholder_on_error: bool = Field(True, env="USE_PLACEHOLDER_ON_ERROR")
    placeholder_width: Optional[int] = Field(None, env="PLACEHOLDER_WIDTH")
    placeholder_height: Optional[int] = Field(None, env="PLACEHOLDER_HEIGHT")
    placeholder_color: str = Field("#2D2D2D", env="PLACEHOLDER_COLOR")
    placeholder_label: str = Field("No image available", env="PLACEHOLDER_LABEL")

    # Text overlay
    overlay_font_path: Optional[str] = Field(None, env="OVERLAY_FONT_PATH")
    overlay_font_size: int = Field(48, env="OVERLAY_FONT_SIZE")
    overlay_min_font_size: int = Field(20, env="OVERLAY_MIN_FONT_SIZE")
    overlay_font_step: int = Field(2, env="OVERLAY_FONT_STEP")
    overlay_band_opacity: int = Field(180, env="OVERLAY_BAND_OPACITY")
    overlay_include_region: bool = Field(False, env="OVERLAY_INCLUDE_REGION")
    measurement_unit: str = Field("°C", env="MEASUREMENT_UNIT")
    watermark_text: Optional[str] = Field("Data: Buienradar", env="WATERMARK_TEXT")
    include_timestamp: bool = Field(True, env="INCLUDE_TIMESTAMP")
    overlay_timezone: str = Field("Europe/Amsterdam", env="OVERLAY_TIMEZONE")
    watermark_font_size: Optional[int] = Field(None, env="WATERMARK_FONT_SIZE")
    watermark_opacity: float = Field(0.75, env="WATERMARK_OPACITY")

    # API
    log_level: str = Field("INFO", env="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False

    @validator("storage_backend")
    def validate_storage_backend(cls, v: str) -> str:  # noqa: B902
        if v not in {"memory", "aws"}:
            raise ValueError("STORAGE_BACKEND must be one of memory|aws")
        return v

    @validator("overlay_min_font_size")
    def validate_min_font_size(cls, v: int, values: dict) -> int:  # noqa: B902
        base = values.get("overlay_font_size")
        if v <= 0:
            raise ValueError("OVERLAY_MIN_FONT_SIZE must be positive")
        if base is not None and v > base:
            raise ValueError("OVERLAY_MIN_FONT_SIZE must not exceed OVERLAY_FONT_SIZE")
        return v

    @validator("overlay_font_step", "max_delivery_attempts", "http_max_attempts")
    def validate_positive(cls, v: int) -> int:  # noqa: B902
        if v < 1:
            raise ValueError("value must be at least 1")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def candidate_fetch_limit(
    max_items: int, has_locality_filter: bool, settings: Optional[Settings] = None
) -> Optional[int]:
    """
    Number of candidates to request from the data provider.

    Filtering needs the whole feed; otherwise over-fetch by a fixed factor so
    the selector always has at least the requested count to choose from.
    """
    settings = settings or get_settings()
    if has_locality_filter:
        return None
    return max(max_items, max_items * settings.candidate_overfetch_factor)
