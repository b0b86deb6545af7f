from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


def _load_repo_env() -> None:
    """Load the nearest .env starting from this file upward."""
    current = Path(__file__).resolve()
    for candidate in [current.parent, *current.parents]:
        env_file = candidate / ".env"
        if env_file.exists():
            load_dotenv(env_file)
            return


_load_repo_env()


@dataclass(frozen=True)
class TranscodeConfig:
    storage_endpoint_url: str
    storage_region: str
    storage_access_key: str
    storage_secret_key: str
    storage_bucket: str
    redis_host: str
    redis_port: int
    redis_db: int
    redis_queue_name: str
    redis_channel: str
    job_timeout_seconds: int
    job_max_retries: int
    backend_api_url: str | None
    backend_api_token: str | None
    callback_timeout_seconds: float
    callback_max_attempts: int
    callback_base_delay_seconds: float
    callback_backoff_multiplier: float
    upload_concurrency: int
    encode_concurrency: int | None
    segmentation_policy: str
    segment_seconds: float
    hybrid_initial_segment_seconds: float
    hybrid_initial_segment_count: int
    hybrid_subsequent_segment_seconds: float
    encode_preset: str
    encode_crf: int | None
    audio_bitrate_kbps: int
    ffmpeg_binary: str
    ffprobe_binary: str
    ffmpeg_log_level: str
    thumbnail_max_width: int
    sprite_columns: int
    sprite_rows: int
    sprite_tile_width: int
    sprite_tile_height: int
    work_dir: str | None
    publish_status: bool


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be an integer") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a number") from exc


def _env_optional(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def load_config() -> TranscodeConfig:
    crf = _env_optional("ENCODE_CRF")
    encode_concurrency = _env_int("ENCODE_CONCURRENCY", 0)
    policy = os.getenv("SEGMENTATION_POLICY", "uniform").strip().lower()
    if policy not in {"uniform", "hybrid"}:
        raise ValueError("SEGMENTATION_POLICY must be 'uniform' or 'hybrid'")
    return TranscodeConfig(
        storage_endpoint_url=os.getenv("STORAGE_ENDPOINT", "http://minio:9000"),
        storage_region=os.getenv("STORAGE_REGION", "auto"),
        storage_access_key=os.getenv("STORAGE_ACCESS_KEY", "minioadmin"),
        storage_secret_key=os.getenv("STORAGE_SECRET_KEY", "minioadmin"),
        storage_bucket=os.getenv("STORAGE_BUCKET", "videos"),
        redis_host=os.getenv("REDIS_HOST", "localhost"),
        redis_port=_env_int("REDIS_PORT", 6379),
        redis_db=_env_int("REDIS_DB", 0),
        redis_queue_name=os.getenv("QUEUE_NAME", "video-transcode"),
        redis_channel=os.getenv("REDIS_CHANNEL", "transcode_requests"),
        job_timeout_seconds=_env_int("JOB_TIMEOUT_SECONDS", 3600),
        job_max_retries=_env_int("JOB_MAX_RETRIES", 2),
        backend_api_url=_env_optional("BACKEND_API_URL"),
        backend_api_token=_env_optional("BACKEND_API_TOKEN"),
        callback_timeout_seconds=_env_float("CALLBACK_TIMEOUT_SECONDS", 30.0),
        callback_max_attempts=_env_int("CALLBACK_MAX_ATTEMPTS", 5),
        callback_base_delay_seconds=_env_float("CALLBACK_BASE_DELAY_SECONDS", 2.0),
        callback_backoff_multiplier=_env_float("CALLBACK_BACKOFF_MULTIPLIER", 2.0),
        upload_concurrency=_env_int("UPLOAD_CONCURRENCY", 16),
        encode_concurrency=encode_concurrency or None,
        segmentation_policy=policy,
        segment_seconds=_env_float("SEGMENT_SECONDS", 6.0),
        hybrid_initial_segment_seconds=_env_float("HYBRID_INITIAL_SEGMENT_SECONDS", 10.0),
        hybrid_initial_segment_count=_env_int("HYBRID_INITIAL_SEGMENT_COUNT", 3),
        hybrid_subsequent_segment_seconds=_env_float(
            "HYBRID_SUBSEQUENT_SEGMENT_SECONDS", 20.0
        ),
        encode_preset=os.getenv("ENCODE_PRESET", "veryfast"),
        encode_crf=int(crf) if crf is not None else None,
        audio_bitrate_kbps=_env_int("AUDIO_BITRATE_KBPS", 128),
        ffmpeg_binary=os.getenv("FFMPEG_BINARY", "ffmpeg"),
        ffprobe_binary=os.getenv("FFPROBE_BINARY", "ffprobe"),
        ffmpeg_log_level=os.getenv("FFMPEG_LOG_LEVEL", "error"),
        thumbnail_max_width=_env_int("THUMBNAIL_MAX_WIDTH", 1280),
        sprite_columns=_env_int("SPRITE_COLUMNS", 10),
        sprite_rows=_env_int("SPRITE_ROWS", 10),
        sprite_tile_width=_env_int("SPRITE_TILE_WIDTH", 160),
        sprite_tile_height=_env_int("SPRITE_TILE_HEIGHT", 90),
        work_dir=_env_optional("TRANSCODE_WORK_DIR"),
        publish_status=_env_bool("PUBLISH_STATUS", True),
    )
