"""Platform routing helpers for raw media URLs."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs, urlparse

from engine.errors import InvalidMediaReference, UnsupportedPlatform


class Platform(Enum):
    YOUTUBE = "youtube"
    TIKTOK = "tiktok"
    INSTAGRAM = "instagram"
    FACEBOOK = "facebook"
    TWITTER = "twitter"
    PINTEREST = "pinterest"
    THREADS = "threads"
    LINKEDIN = "linkedin"


_PLATFORM_DOMAINS = (
    ("instagram.com", Platform.INSTAGRAM),
    ("tiktok.com", Platform.TIKTOK),
    ("facebook.com", Platform.FACEBOOK),
    ("fb.watch", Platform.FACEBOOK),
    ("x.com", Platform.TWITTER),
    ("twitter.com", Platform.TWITTER),
    ("youtube.com", Platform.YOUTUBE),
    ("youtu.be", Platform.YOUTUBE),
    ("pinterest.com", Platform.PINTEREST),
    ("pin.it", Platform.PINTEREST),
    ("threads.net", Platform.THREADS),
    ("threads.com", Platform.THREADS),
    ("linkedin.com", Platform.LINKEDIN),
)

SUPPORTED_PLATFORMS = [platform.value for platform in Platform]

_SHORT_FORM_SEGMENTS = {"shorts", "reel", "reels"}
_YOUTUBE_ID = re.compile(r"^[0-9A-Za-z_-]{11}$")


@dataclass(frozen=True)
class MediaReference:
    url: str
    original_url: str
    platform: Platform
    is_short_form: bool


def classify_reference(raw_url: str) -> MediaReference:
    """Classify a user-supplied URL without network calls.

    Rules:
    - Input must be a non-empty http(s) URL.
    - The platform is picked from the host (subdomains included).
    - YouTube URLs are normalized to ``watch?v=`` form, except ``/shorts/``
      which keeps its path so short-form detection survives.
    - Short-form means a ``shorts``, ``reel`` or ``reels`` path segment.
    """
    raw = (raw_url or "").strip() if isinstance(raw_url, str) else ""
    if not raw:
        raise InvalidMediaReference("No URL provided")
    parsed = urlparse(raw)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidMediaReference("Invalid URL format")

    platform = detect_platform(raw)
    if platform is None:
        raise UnsupportedPlatform(
            f"Unsupported platform: {parsed.netloc}",
            details={"supportedPlatforms": SUPPORTED_PLATFORMS},
        )

    url = raw.split("#", 1)[0]
    if platform is Platform.YOUTUBE:
        url = normalize_youtube_url(url)
    return MediaReference(
        url=url,
        original_url=raw,
        platform=platform,
        is_short_form=_has_short_form_segment(url),
    )


def detect_platform(url: str) -> Platform | None:
    host = (urlparse(url).netloc or "").lower().split(":", 1)[0]
    for domain, platform in _PLATFORM_DOMAINS:
        if host == domain or host.endswith("." + domain):
            return platform
    return None


def normalize_youtube_url(url: str) -> str:
    parsed = urlparse(url)
    host = (parsed.netloc or "").lower()
    segments = [segment for segment in (parsed.path or "").split("/") if segment]

    if host.endswith("youtu.be") and segments:
        video_id = segments[0]
        if _YOUTUBE_ID.match(video_id):
            return f"https://www.youtube.com/watch?v={video_id}"

    if len(segments) >= 2 and segments[0] == "shorts" and _YOUTUBE_ID.match(segments[1]):
        return f"https://www.youtube.com/shorts/{segments[1]}"

    if len(segments) >= 2 and segments[0] in {"embed", "live"} and _YOUTUBE_ID.match(segments[1]):
        return f"https://www.youtube.com/watch?v={segments[1]}"

    values = parse_qs(parsed.query).get("v")
    if values and _YOUTUBE_ID.match(values[0]):
        return f"https://www.youtube.com/watch?v={values[0]}"

    if host.startswith("m."):
        return url.replace("://m.", "://www.", 1)
    return url


def _has_short_form_segment(url: str) -> bool:
    segments = [segment.lower() for segment in (urlparse(url).path or "").split("/") if segment]
    return any(segment in _SHORT_FORM_SEGMENTS for segment in segments)
