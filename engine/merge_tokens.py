"""In-memory merge tokens mapping an opaque id to a (video, audio) source pair."""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable

from config.settings import MERGE_TOKEN_TTL_SECONDS
from engine.errors import MergeInProgress

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergePair:
    video_uri: str
    audio_uri: str


@dataclass(frozen=True)
class _TokenEntry:
    pair: MergePair
    created_at: float


class MergeTokenStore:
    """Thread-safe token map with a TTL enforced on read.

    ``get`` and ``claim`` decide expiry; ``purge_expired`` just bounds memory
    for tokens nobody asks for again. A claimed token belongs to one merge
    until it is deleted.
    """

    def __init__(self, ttl_seconds: float = MERGE_TOKEN_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _TokenEntry] = {}
        self._claimed: set[str] = set()

    def create(self, pair: MergePair) -> str:
        with self._lock:
            token = secrets.token_hex(16)
            while token in self._entries:
                token = secrets.token_hex(16)
            self._entries[token] = _TokenEntry(pair=pair, created_at=self._clock())
        return token

    def get(self, token: str) -> MergePair | None:
        if not token:
            return None
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return None
            if self._clock() - entry.created_at > self.ttl_seconds:
                self._entries.pop(token, None)
                return None
            return entry.pair

    def claim(self, token: str) -> MergePair | None:
        """Hand the pair to a single merge; later callers get ``MergeInProgress``."""
        if not token:
            return None
        with self._lock:
            if token in self._claimed:
                raise MergeInProgress(f"merge already running for token {token}")
            entry = self._entries.get(token)
            if entry is None:
                return None
            if self._clock() - entry.created_at > self.ttl_seconds:
                self._entries.pop(token, None)
                return None
            self._claimed.add(token)
            return entry.pair

    def delete(self, token: str) -> None:
        with self._lock:
            self._entries.pop(token, None)
            self._claimed.discard(token)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [
                token for token, entry in self._entries.items()
                if now - entry.created_at > self.ttl_seconds and token not in self._claimed
            ]
            for token in expired:
                del self._entries[token]
        if expired:
            logger.info(f"Purged {len(expired)} expired merge tokens")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
