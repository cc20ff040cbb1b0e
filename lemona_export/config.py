import json
import tempfile
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Lemona Export API"
    app_version: str = "0.1.0"
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:3000,http://localhost:5173"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # Storage for finished exports
    use_local_storage: bool = True  # Set to False in production
    local_storage_path: str = "/tmp/lemona-exports"
    public_base_url: str = "http://localhost:8000"
    gcs_bucket_name: str = "lemona-exports"
    gcs_project_id: str = ""
    download_url_expiry_hours: int = 24

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Export job execution
    export_temp_dir: str = tempfile.gettempdir()
    max_concurrent_jobs: int = 2
    # Overall deadline for one job (assets + overlay + engine + upload)
    job_timeout_s: int = 5400
    # Finished job records older than this are dropped on the next submit (0 keeps them)
    job_retention_hours: int = 24
    # Deadline for the ffmpeg subprocess alone
    engine_timeout_s: int = 3600
    render_ffmpeg_threads: int = 2
    render_ffmpeg_max_muxing_queue: int = 1024
    render_audio_sample_rate: int = 48000
    # Probe the finished file and log a warning if its duration is off
    verify_output_duration: bool = True

    # Asset resolution
    asset_policy: Literal["strict", "lenient"] = "strict"
    asset_download_timeout_s: float = 30.0
    asset_download_retries: int = 3
    asset_retry_base_delay_s: float = 1.0
    asset_cache_max_entries: int = 256
    asset_cache_max_bytes: int = 8 * 1024 * 1024 * 1024

    # Overlay rendering
    overlay_failure_policy: Literal["fail", "degrade"] = "fail"
    overlay_render_workers: int = 4


@lru_cache
def get_settings() -> Settings:
    return Settings()
