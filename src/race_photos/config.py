"""Application configuration."""

import os

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")

CREDITS_PER_PHOTO = 1


class PipelineConfig(BaseModel):
    """Thresholds and sizes used by the ingestion pipeline."""

    max_concurrent_tasks: int = Field(default=4, ge=1)
    quality_threshold: int = Field(default=40, ge=0, le=100)
    ocr_confidence_threshold: float = Field(default=70.0, ge=0.0, le=100.0)
    face_match_threshold: float = Field(default=85.0, ge=0.0, le=100.0)
    face_search_max_faces: int = 100
    max_faces_per_photo: int = 10
    clustering_delay_seconds: float = 30.0
    session_retention_seconds: float = 300.0
    progress_stream_grace_seconds: float = 60.0
    auto_edit_enabled: bool = True
    face_index_enabled: bool = True
    label_detection_enabled: bool = True
    label_max: int = 20
    label_min_confidence: float = 70.0
    display_max_dimension: int = 1600
    display_quality: int = 80
    analysis_max_dimension: int = 1600
    analysis_max_bytes: int = 4 * 1024 * 1024
    thumbnail_max_dimension: int = 1200
    thumbnail_quality: int = 80
    watermark_text: str = "RACE PHOTOS"
    crop_max_dimension: int = 800
    crop_min_dimension: int = 50
    crop_quality: int = 80


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    supabase_url: str
    supabase_service_key: str
    admin_token: str
    storage_bucket: str = "photos"
    aws_access_key_id: str | None = None
    aws_secret_access_key: str | None = None
    aws_region: str = "eu-west-1"
    aws_rekognition_collection_id: str = "race-photos-faces"
    openai_api_key: str | None = None
    openai_model: str = "gpt-5.2"
    openai_store: bool = False
    environment: str = _ENVIRONMENT
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        env_nested_delimiter="__",
        extra="ignore",
    )
