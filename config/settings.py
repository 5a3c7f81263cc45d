"""Application settings constants."""

from __future__ import annotations

import os


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


def _env_tiers(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if not raw:
        return default
    tiers = []
    for part in raw.split(","):
        part = part.strip().lower().rstrip("p")
        if part.isdigit():
            tiers.append(int(part))
    return tuple(tiers) or default


APP_VERSION = os.getenv("MEDIA_MERGE_VERSION", "0.1.0")

# Public base URL used when building merge links; request base URL when unset.
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")
TRUST_PROXY = os.getenv("TRUST_PROXY", "").strip().lower() in {"1", "true", "yes", "on"}

# Resolver chain retry policy.
RESOLVER_MAX_RETRIES = _env_int("RESOLVER_MAX_RETRIES", 3)
RESOLVER_BACKOFF_BASE_MS = _env_int("RESOLVER_BACKOFF_BASE_MS", 1000)
RESOLVER_BACKOFF_CAP_MS = _env_int("RESOLVER_BACKOFF_CAP_MS", 8000)
RESOLVER_SOCKET_TIMEOUT_SECONDS = _env_float("RESOLVER_SOCKET_TIMEOUT_SECONDS", 30.0)

# Optional JSON downloader API used as a secondary YouTube resolver.
DOWNLOADER_API_URL = os.getenv(
    "DOWNLOADER_API_URL",
    "https://api.vidfly.ai/api/media/youtube/download",
)
DOWNLOADER_API_ENABLED = os.getenv("DOWNLOADER_API_ENABLED", "1").strip().lower() in {"1", "true", "yes", "on"}

# Default-format selection policy. Tier lists are product policy.
SHORT_FORM_PREFERRED_TIER = _env_int("SHORT_FORM_PREFERRED_TIER", 360)
SHORT_FORM_FALLBACK_TIERS = _env_tiers("SHORT_FORM_FALLBACK_TIERS", (240, 480))
SHORT_FORM_FREE_CEILING = _env_int("SHORT_FORM_FREE_CEILING", 480)
LONG_FORM_PREFERRED_TIER = _env_int("LONG_FORM_PREFERRED_TIER", 720)
LONG_FORM_FREE_CEILING = _env_int("LONG_FORM_FREE_CEILING", 1080)

# Merge tokens.
MERGE_TOKEN_TTL_SECONDS = _env_int("MERGE_TOKEN_TTL_SECONDS", 600)
MERGE_TOKEN_PURGE_INTERVAL_SECONDS = _env_int("MERGE_TOKEN_PURGE_INTERVAL_SECONDS", 300)

# Merge engine.
FFMPEG_PATH = os.getenv("FFMPEG_PATH", "ffmpeg")
MERGE_TIMEOUT_SECONDS = _env_float("MERGE_TIMEOUT_SECONDS", 300.0)
MERGE_AUDIO_CODEC = os.getenv("MERGE_AUDIO_CODEC", "aac")
MERGE_AUDIO_BITRATE = os.getenv("MERGE_AUDIO_BITRATE", "192k")
MERGE_FETCH_CONNECT_TIMEOUT_SECONDS = _env_float("MERGE_FETCH_CONNECT_TIMEOUT_SECONDS", 30.0)
MERGE_FETCH_READ_TIMEOUT_SECONDS = _env_float("MERGE_FETCH_READ_TIMEOUT_SECONDS", 120.0)
MERGE_CHUNK_SIZE = _env_int("MERGE_CHUNK_SIZE", 64 * 1024)

# Temp file janitor.
ARTIFACT_MAX_AGE_SECONDS = _env_int("ARTIFACT_MAX_AGE_SECONDS", 60 * 60)
ARTIFACT_SWEEP_INTERVAL_SECONDS = _env_int("ARTIFACT_SWEEP_INTERVAL_SECONDS", 60 * 60)
ARTIFACT_CLEANUP_DELAY_SECONDS = _env_float("ARTIFACT_CLEANUP_DELAY_SECONDS", 5.0)

UPSTREAM_USER_AGENT = os.getenv(
    "UPSTREAM_USER_AGENT",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/123.0 Safari/537.36",
)
