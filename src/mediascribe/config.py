from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Settings:
    host: str
    port: int
    data_dir: Path
    upload_dir: Path
    database_path: Path
    deepgram_api_key: str | None
    gemini_api_key: str | None
    default_model: str = "nova-2"
    summary_model: str = "gemini-2.5-pro"
    default_segment_size_mb: int = 10
    max_upload_mb: int = 500
    direct_threshold_seconds: float = 30.0
    probe_timeout_seconds: float = 60.0
    segment_timeout_seconds: float = 1800.0
    provider_timeout_seconds: float = 120.0
    provider_timeout_per_mb_seconds: float = 20.0
    close_grace_seconds: float = 1.5
    abort_on_disconnect: bool = False
    progress_queue_size: int = 256
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    cors_origins: tuple[str, ...] = ("*",)

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


def _as_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    return int(raw)


def _as_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    return float(raw)


def _as_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def load_settings() -> Settings:
    load_dotenv()
    data_dir = Path(os.getenv("DATA_DIR", "./data")).resolve()
    upload_dir = Path(os.getenv("UPLOAD_DIR", str(data_dir / "uploads"))).resolve()
    database_path = Path(os.getenv("DATABASE_PATH", str(data_dir / "mediascribe.sqlite3"))).resolve()

    deepgram_api_key = os.getenv("DEEPGRAM_API_KEY", "").strip() or None
    gemini_api_key = os.getenv("GEMINI_API_KEY", "").strip() or None
    if deepgram_api_key is None:
        logger.warning("DEEPGRAM_API_KEY not found. Deepgram models disabled.")
    if gemini_api_key is None:
        logger.warning("GEMINI_API_KEY not found. Gemini transcription and summaries disabled.")

    return Settings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=_as_int("PORT", 5000),
        data_dir=data_dir,
        upload_dir=upload_dir,
        database_path=database_path,
        deepgram_api_key=deepgram_api_key,
        gemini_api_key=gemini_api_key,
        default_model=os.getenv("DEFAULT_MODEL", "nova-2"),
        summary_model=os.getenv("SUMMARY_MODEL", "gemini-2.5-pro"),
        default_segment_size_mb=_as_int("DEFAULT_SEGMENT_SIZE_MB", 10),
        max_upload_mb=_as_int("MAX_UPLOAD_MB", 500),
        direct_threshold_seconds=_as_float("DIRECT_THRESHOLD_SECONDS", 30.0),
        probe_timeout_seconds=_as_float("PROBE_TIMEOUT_SECONDS", 60.0),
        segment_timeout_seconds=_as_float("SEGMENT_TIMEOUT_SECONDS", 1800.0),
        provider_timeout_seconds=_as_float("PROVIDER_TIMEOUT_SECONDS", 120.0),
        provider_timeout_per_mb_seconds=_as_float("PROVIDER_TIMEOUT_PER_MB_SECONDS", 20.0),
        close_grace_seconds=_as_float("CLOSE_GRACE_SECONDS", 1.5),
        abort_on_disconnect=_as_bool("ABORT_ON_DISCONNECT", False),
        progress_queue_size=_as_int("PROGRESS_QUEUE_SIZE", 256),
        ffmpeg_path=os.getenv("FFMPEG_PATH", "ffmpeg"),
        ffprobe_path=os.getenv("FFPROBE_PATH", "ffprobe"),
        cors_origins=tuple(origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()),
    )
