"""Format normalization and default-variant selection.

Raw provider payloads are mapped to :class:`ResolvedFormat` entries, entries
without a usable source are dropped, duplicate video tiers are collapsed,
video-only entries are paired with an audio-only source (or dropped when none
exists) and the remainder is ranked by :class:`SelectionPolicy`.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Optional
from urllib.parse import urlparse

from config.settings import (
    LONG_FORM_FREE_CEILING,
    LONG_FORM_PREFERRED_TIER,
    SHORT_FORM_FALLBACK_TIERS,
    SHORT_FORM_FREE_CEILING,
    SHORT_FORM_PREFERRED_TIER,
)
from engine.errors import NoSuitableFormat, NoValidFormats
from engine.resolvers import PAYLOAD_KIND_ITEMS, PAYLOAD_KIND_YTDLP

logger = logging.getLogger(__name__)

DEFAULT_QUALITY = 360

_RESOLUTION_PATTERN = re.compile(r"(\d{2,4})[pP]")
_BITRATE_PATTERN = re.compile(r"(\d{2,4})\s*(?:kb/s|kbps|k)\b", re.IGNORECASE)
_TEXT_TIERS = (
    (re.compile(r"\b8k\b"), 4320),
    (re.compile(r"\b4k\b"), 2160),
    (re.compile(r"\buhd\b"), 2160),
    (re.compile(r"\b2k\b"), 1440),
    (re.compile(r"\bqhd\b"), 1440),
    (re.compile(r"\bfull\s*hd\b"), 1080),
    (re.compile(r"\bfhd\b"), 1080),
    (re.compile(r"\bhd\b"), 720),
    (re.compile(r"\bsd\b"), 480),
)
_VIDEO_ONLY_TOKENS = ("video only", "vid only", "without audio", "no audio")
_MP4_FAMILY = {"mp4", "m4a", "m4v", "aac", "mov"}
_WEBM_FAMILY = {"webm", "opus", "ogg", "weba"}
_AUDIO_MIME_BY_EXT = {"m4a": "audio/mp4", "mp4": "audio/mp4", "mp3": "audio/mpeg", "aac": "audio/aac"}


@dataclass(frozen=True)
class ResolvedFormat:
    label: str
    quality_rank: int
    mime_type: str
    container_extension: str
    source_uri: str
    has_video: bool
    has_audio: bool
    approx_size_bytes: Optional[int] = None
    is_premium_tier: bool = False
    needs_merge: bool = False
    audio_source_uri: Optional[str] = None
    bitrate_kbps: Optional[int] = None
    format_id: Optional[str] = None

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    def as_dict(self) -> dict[str, Any]:
        return {
            "formatId": self.format_id,
            "quality": self.label,
            "qualityNum": self.quality_rank,
            "type": self.mime_type,
            "extension": self.container_extension,
            "url": self.source_uri,
            "hasVideo": self.has_video,
            "hasAudio": self.has_audio,
            "filesize": self.approx_size_bytes,
            "bitrate": self.bitrate_kbps,
            "isPremium": self.is_premium_tier,
            "needsMerge": self.needs_merge,
            "audioUrl": self.audio_source_uri,
        }


@dataclass(frozen=True)
class FormatSet:
    formats: tuple[ResolvedFormat, ...]
    default_format: ResolvedFormat
    title: str
    thumbnail: Optional[str] = None
    duration_seconds: Optional[float] = None
    is_short_form: bool = False
    provider: Optional[str] = None

    @property
    def video_formats(self) -> tuple[ResolvedFormat, ...]:
        return tuple(fmt for fmt in self.formats if fmt.has_video)

    @property
    def audio_formats(self) -> tuple[ResolvedFormat, ...]:
        return tuple(fmt for fmt in self.formats if fmt.is_audio_only)


@dataclass(frozen=True)
class SelectionPolicy:
    short_form_preferred: int = SHORT_FORM_PREFERRED_TIER
    short_form_fallbacks: tuple[int, ...] = SHORT_FORM_FALLBACK_TIERS
    short_form_ceiling: int = SHORT_FORM_FREE_CEILING
    long_form_preferred: int = LONG_FORM_PREFERRED_TIER
    long_form_ceiling: int = LONG_FORM_FREE_CEILING

    def ceiling(self, is_short_form: bool) -> int:
        return self.short_form_ceiling if is_short_form else self.long_form_ceiling

    def is_premium(self, quality: int, is_short_form: bool) -> bool:
        return quality > self.ceiling(is_short_form)

    def rank_key(self, quality: int, is_short_form: bool) -> tuple:
        if is_short_form:
            if quality == self.short_form_preferred:
                return (0, 0, quality)
            if quality in self.short_form_fallbacks:
                return (1, abs(quality - self.short_form_preferred), quality)
            if quality <= self.short_form_ceiling:
                return (2, 0, quality)
            return (3, 0, quality)
        if quality == self.long_form_preferred:
            return (0, 0)
        if quality <= self.long_form_ceiling:
            return (1, -quality)
        return (2, -quality)


def parse_quality(label: str | None) -> int:
    """Numeric tier from a label: ``"1080p60"`` -> 1080, ``"4K"`` -> 2160, else 360."""
    text = (label or "").strip().lower()
    if not text:
        return DEFAULT_QUALITY
    match = _RESOLUTION_PATTERN.search(text)
    if match:
        return int(match.group(1))
    for pattern, value in _TEXT_TIERS:
        if pattern.search(text):
            return value
    return DEFAULT_QUALITY


def classify_stream(label, mime_type, *, has_video=None, has_audio=None):
    """Return ``(has_video, has_audio)``; provider flags win over label heuristics."""
    text = f"{label or ''} {mime_type or ''}".lower()
    if has_video is None or has_audio is None:
        if any(token in text for token in _VIDEO_ONLY_TOKENS):
            guess = (True, False)
        elif "audio" in text:
            guess = (False, True)
        else:
            guess = (True, True)
        if has_video is None:
            has_video = guess[0]
        if has_audio is None:
            has_audio = guess[1]
    return bool(has_video), bool(has_audio)


def normalize(payload, is_short_form: bool, policy: SelectionPolicy | None = None) -> FormatSet:
    policy = policy or SelectionPolicy()
    mapper = _MAPPERS.get(payload.kind)
    if mapper is None:
        raise NoValidFormats(f"unsupported payload kind: {payload.kind}")
    entries, meta = mapper(payload.data or {})

    usable = [entry for entry in entries if _is_http_url(entry.source_uri)]
    if not usable:
        raise NoValidFormats(f"{payload.provider} returned no formats with a usable source")

    audio = sorted(
        (entry for entry in usable if entry.is_audio_only),
        key=lambda f: (f.quality_rank, f.approx_size_bytes or 0),
        reverse=True,
    )
    video = []
    for entry in _collapse_tiers([entry for entry in usable if entry.has_video]):
        if not entry.has_audio:
            partner = _pick_audio(entry, audio)
            if partner is None:
                logger.info(
                    f"Dropping video-only format without audio source "
                    f"label={entry.label} provider={payload.provider}"
                )
                continue
            entry = replace(entry, needs_merge=True, audio_source_uri=partner.source_uri)
        video.append(replace(entry, is_premium_tier=policy.is_premium(entry.quality_rank, is_short_form)))

    video.sort(key=lambda f: _selection_key(f, policy, is_short_form))
    if video:
        default = video[0]
    elif audio:
        default = audio[0]
    else:
        raise NoSuitableFormat(f"{payload.provider} returned no playable video or audio format")

    logger.info(
        f"Normalized formats provider={payload.provider} video={len(video)} audio={len(audio)} "
        f"default={default.label} short_form={is_short_form}"
    )
    return FormatSet(
        formats=tuple(video + audio),
        default_format=default,
        title=meta.get("title") or "Untitled Media",
        thumbnail=meta.get("thumbnail"),
        duration_seconds=meta.get("duration"),
        is_short_form=is_short_form,
        provider=payload.provider,
    )


def _selection_key(fmt, policy, is_short_form):
    return (
        policy.rank_key(fmt.quality_rank, is_short_form),
        fmt.needs_merge,
        fmt.container_extension != "mp4",
    )


def _collapse_tiers(video):
    best = {}
    order = []
    for fmt in video:
        current = best.get(fmt.quality_rank)
        if current is None:
            best[fmt.quality_rank] = fmt
            order.append(fmt.quality_rank)
        elif _tier_preference(fmt) < _tier_preference(current):
            best[fmt.quality_rank] = fmt
    return [best[rank] for rank in order]


def _tier_preference(fmt):
    return (not fmt.has_audio, fmt.container_extension != "mp4", -(fmt.bitrate_kbps or 0))


def _container_family(ext):
    ext = (ext or "").lower()
    if ext in _MP4_FAMILY:
        return "mp4"
    if ext in _WEBM_FAMILY:
        return "webm"
    return ext


def _pick_audio(video_format, audio):
    if not audio:
        return None
    family = _container_family(video_format.container_extension)
    for candidate in audio:
        if _container_family(candidate.container_extension) == family:
            return candidate
    return audio[0]


def _is_http_url(value):
    if not value or not isinstance(value, str):
        return False
    try:
        return urlparse(value).scheme in ("http", "https")
    except Exception:
        return False


def _positive_int(value):
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def _mime_for(ext, has_video):
    if has_video:
        return f"video/{ext}"
    return _AUDIO_MIME_BY_EXT.get(ext, f"audio/{ext}")


def _map_ytdlp(data):
    formats = data.get("formats")
    if not isinstance(formats, list) or not formats:
        formats = [data] if data.get("url") else []

    entries = []
    for raw in formats:
        if not isinstance(raw, dict):
            continue
        protocol = str(raw.get("protocol") or "https").lower()
        # Manifest and fragment protocols cannot be fetched as a single body.
        if protocol not in ("http", "https"):
            continue
        vcodec = raw.get("vcodec")
        acodec = raw.get("acodec")
        flag_video = None if vcodec is None else str(vcodec).lower() != "none"
        flag_audio = None if acodec is None else str(acodec).lower() != "none"
        if flag_video is False and flag_audio is False:
            continue
        ext = str(raw.get("ext") or "mp4").lower()
        height = _positive_int(raw.get("height"))
        note = raw.get("format_note") or raw.get("format") or ""
        label = f"{height}p" if height else str(note or "unknown")
        has_video, has_audio = classify_stream(
            label,
            f"{'audio' if flag_video is False else 'video'}/{ext}",
            has_video=flag_video,
            has_audio=flag_audio,
        )
        bitrate = _positive_int(raw.get("abr") if not has_video else raw.get("tbr") or raw.get("vbr"))
        if has_video:
            quality = height or parse_quality(label)
        else:
            bitrate = bitrate or _positive_int(raw.get("tbr"))
            quality = bitrate or 0
            label = f"audio ({bitrate}kb/s)" if bitrate else "audio"
        entries.append(
            ResolvedFormat(
                label=label,
                quality_rank=quality,
                mime_type=_mime_for(ext, has_video),
                container_extension=ext,
                source_uri=raw.get("url") or "",
                has_video=has_video,
                has_audio=has_audio,
                approx_size_bytes=_positive_int(raw.get("filesize") or raw.get("filesize_approx")),
                bitrate_kbps=bitrate,
                format_id=str(raw["format_id"]) if raw.get("format_id") is not None else None,
            )
        )

    meta = {
        "title": data.get("title"),
        "thumbnail": data.get("thumbnail"),
        "duration": data.get("duration"),
    }
    return entries, meta


def _map_items(data):
    entries = []
    for index, item in enumerate(data.get("items") or []):
        if not isinstance(item, dict):
            continue
        label = str(item.get("label") or item.get("quality") or "")
        mime = str(item.get("type") or "")
        has_video, has_audio = classify_stream(label, mime)
        ext = str(item.get("ext") or item.get("extension") or ("mp4" if has_video else "m4a")).lower()
        if has_video:
            quality = parse_quality(label)
            bitrate = None
        else:
            match = _BITRATE_PATTERN.search(label)
            bitrate = int(match.group(1)) if match else None
            quality = bitrate or 0
        entries.append(
            ResolvedFormat(
                label=label or (f"{quality}p" if has_video else "audio"),
                quality_rank=quality,
                mime_type=mime or _mime_for(ext, has_video),
                container_extension=ext,
                source_uri=item.get("url") or "",
                has_video=has_video,
                has_audio=has_audio,
                approx_size_bytes=_positive_int(item.get("filesize")),
                bitrate_kbps=bitrate,
                format_id=str(item.get("id") or index),
            )
        )

    meta = {
        "title": data.get("title"),
        "thumbnail": data.get("cover") or data.get("thumbnail"),
        "duration": data.get("duration"),
    }
    return entries, meta


_MAPPERS = {
    PAYLOAD_KIND_YTDLP: _map_ytdlp,
    PAYLOAD_KIND_ITEMS: _map_items,
}
