from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Merge Render API"
    app_version: str = "4.0.0"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    host: str = "0.0.0.0"
    port: int = 10000
    # Prefix for check_url/status_url/url; empty means use the request's base URL
    public_base_url: str = ""

    # Storage
    tmp_dir: str = "temp"
    video_dir: str = "public/videos"

    # Input validation (length of the encoded payload)
    min_input_bytes: int = 1024
    download_timeout_seconds: float = 60.0
    max_download_bytes: int = 50 * 1024 * 1024

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    encode_timeout_seconds: float = 240.0
    stderr_tail_chars: int = 500
    render_width: int = 1080
    render_height: int = 1920
    render_preset: str = "ultrafast"
    render_crf: int = 24
    render_audio_bitrate: str = "128k"
    render_audio_sample_rate: int = 44100
    render_threads: int = 1
    font_file: str = ""

    # Caption overlay
    default_caption: str = ""
    caption_max_length: int = 100

    # Output verification
    min_output_bytes: int = 200 * 1024

    # Job retention
    max_job_age_seconds: float = 3600.0
    max_jobs: int = Field(100, ge=1)
    cleanup_interval_seconds: float = 900.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
