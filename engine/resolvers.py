import logging
import random
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlparse

import requests
from yt_dlp import YoutubeDL

from config.settings import (
    DOWNLOADER_API_URL,
    RESOLVER_SOCKET_TIMEOUT_SECONDS,
)
from engine.errors import ResolverAttemptFailed

logger = logging.getLogger(__name__)

PAYLOAD_KIND_YTDLP = "ytdlp"
PAYLOAD_KIND_ITEMS = "items"

_API_USER_AGENTS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/100.0.4896.75 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/16.4 Safari/605.1.15",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:109.0) Gecko/20100101 Firefox/112.0",
)


def _is_http_url(value):
    if not value or not isinstance(value, str):
        return False
    try:
        return urlparse(value).scheme in ("http", "https")
    except Exception:
        return False


@dataclass(frozen=True)
class RawProviderPayload:
    provider: str
    kind: str
    data: dict[str, Any] = field(default_factory=dict)


class Resolver:
    """One upstream provider. ``fetch`` either raises or returns a raw payload."""

    name = ""

    def fetch(self, reference):
        raise NotImplementedError

    def is_valid(self, payload):
        return isinstance(payload, RawProviderPayload) and bool(payload.data)


class YtDlpResolver(Resolver):
    name = "yt-dlp"

    def __init__(self, *, socket_timeout=None, extra_opts=None):
        self._socket_timeout = socket_timeout or RESOLVER_SOCKET_TIMEOUT_SECONDS
        self._extra_opts = dict(extra_opts or {})

    def _opts(self):
        opts = {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "cachedir": False,
            "socket_timeout": self._socket_timeout,
        }
        opts.update(self._extra_opts)
        return opts

    def fetch(self, reference):
        with YoutubeDL(self._opts()) as ydl:
            info = ydl.extract_info(reference.url, download=False)
        if not isinstance(info, dict):
            raise ResolverAttemptFailed(f"yt-dlp returned no info for {reference.url}")
        # Single-entry playlists (some reels/posts) wrap the real info.
        entries = info.get("entries")
        if not info.get("formats") and not info.get("url") and isinstance(entries, list) and entries:
            first = entries[0]
            if isinstance(first, dict):
                info = first
        return RawProviderPayload(provider=self.name, kind=PAYLOAD_KIND_YTDLP, data=info)

    def is_valid(self, payload):
        if not super().is_valid(payload):
            return False
        data = payload.data
        if not data.get("title"):
            return False
        formats = data.get("formats")
        if isinstance(formats, list) and any(isinstance(f, dict) and _is_http_url(f.get("url")) for f in formats):
            return True
        return _is_http_url(data.get("url"))


class DownloaderApiResolver(Resolver):
    """JSON downloader API returning ``{"data": {"title", "cover", "items": [...]}}``."""

    name = "downloader-api"

    def __init__(self, *, endpoint=None, session=None, timeout_seconds=None):
        self.endpoint = endpoint or DOWNLOADER_API_URL
        self._session = session or requests.Session()
        self._timeout_seconds = timeout_seconds or RESOLVER_SOCKET_TIMEOUT_SECONDS

    def fetch(self, reference):
        headers = {
            "Accept": "*/*",
            "User-Agent": random.choice(_API_USER_AGENTS),
        }
        resp = self._session.get(
            self.endpoint,
            params={"url": reference.url},
            headers=headers,
            timeout=self._timeout_seconds,
        )
        status = int(resp.status_code)
        logger.info(f"[RESOLVER] provider={self.name} status={status}")
        if status != 200:
            raise ResolverAttemptFailed(f"{self.name} HTTP {status}")
        payload = resp.json() if resp.content else {}
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, dict):
            raise ResolverAttemptFailed(f"{self.name} returned an empty response")
        return RawProviderPayload(provider=self.name, kind=PAYLOAD_KIND_ITEMS, data=data)

    def is_valid(self, payload):
        if not super().is_valid(payload):
            return False
        items = payload.data.get("items")
        return bool(payload.data.get("title")) and isinstance(items, list) and bool(items)
