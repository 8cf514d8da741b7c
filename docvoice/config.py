#!/usr/bin/env python3

from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str
    redis_url: str
    workdir: str

    # Celery queue that carries conversion work units
    conversion_queue: str = "document_conversion"

    # Conversion pipeline
    conversion_max_attempts: int = 3
    conversion_retry_delays: str = "60,300,900"  # Seconds between attempts
    conversion_job_timeout: int = 3600
    ownership_window_minutes: int = 5
    tts_chunk_size: int = 500
    tts_min_text_length: int = 10
    tts_max_text_length: int = 500_000

    # Progress cache
    progress_ttl_seconds: int = 1800
    progress_visible_seconds: int = 600
    cache_key_prefix: str = ""

    # Stuck-work reconciliation
    stuck_processing_minutes: int = 120
    stale_pending_minutes: int = 360
    stuck_reservation_minutes: int = 30
    failed_jobs_warning_threshold: int = 10
    queued_jobs_warning_threshold: int = 10
    reconcile_interval_minutes: int = 15
    reconcile_requeue: bool = True
    reconcile_stale_pending: bool = True

    # Storage
    storage_backend: str = "local"  # "local" or "s3"
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: Optional[str] = "us-east-1"
    s3_bucket_name: Optional[str] = None
    s3_folder_prefix: Optional[str] = ""

    # Gemini text-to-speech
    gemini_api_keys: str = ""  # Comma-separated, rotated on rate limits
    gemini_tts_url: str = (
        "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash-preview-tts:generateContent"
    )
    gemini_voice: str = "Kore"
    tts_chunk_timeout: int = 120
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    tts_generate_flac: bool = True

    class Config:
        env_file = ".env"


settings = Settings()
