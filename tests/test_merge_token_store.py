from __future__ import annotations

import re
import threading

import pytest

from engine.errors import MergeInProgress
from engine.merge_tokens import MergePair, MergeTokenStore


class _Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_create_returns_32_hex_token_and_get_returns_pair() -> None:
    store = MergeTokenStore(ttl_seconds=600)
    pair = MergePair(video_uri="https://cdn.example/v.mp4", audio_uri="https://cdn.example/a.m4a")

    token = store.create(pair)

    assert re.fullmatch(r"[0-9a-f]{32}", token)
    assert store.get(token) == pair
    assert len(store) == 1


def test_token_expires_after_ttl_and_is_evicted_on_read() -> None:
    clock = _Clock()
    store = MergeTokenStore(ttl_seconds=600, clock=clock)
    token = store.create(MergePair("https://v", "https://a"))

    clock.now += 600
    assert store.get(token) is not None
    clock.now += 1
    assert store.get(token) is None
    assert len(store) == 0


def test_delete_and_unknown_tokens() -> None:
    store = MergeTokenStore()
    token = store.create(MergePair("https://v", "https://a"))
    store.delete(token)
    store.delete("does-not-exist")
    assert store.get(token) is None
    assert store.get("") is None


def test_purge_expired_only_removes_stale_entries() -> None:
    clock = _Clock()
    store = MergeTokenStore(ttl_seconds=10, clock=clock)
    old = store.create(MergePair("https://v1", "https://a1"))
    clock.now += 8
    fresh = store.create(MergePair("https://v2", "https://a2"))
    clock.now += 5

    assert store.purge_expired() == 1
    assert store.get(old) is None
    assert store.get(fresh) == MergePair("https://v2", "https://a2")


def test_concurrent_creates_yield_distinct_tokens() -> None:
    store = MergeTokenStore()
    tokens = []
    lock = threading.Lock()

    def _worker():
        for i in range(200):
            token = store.create(MergePair(f"https://v/{i}", f"https://a/{i}"))
            with lock:
                tokens.append(token)

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(tokens) == 1600
    assert len(set(tokens)) == 1600
    assert len(store) == 1600


def test_claim_hands_pair_to_one_merge_until_deleted() -> None:
    store = MergeTokenStore()
    pair = MergePair("https://v", "https://a")
    token = store.create(pair)

    assert store.claim(token) == pair
    with pytest.raises(MergeInProgress):
        store.claim(token)

    store.delete(token)
    assert store.claim(token) is None


def test_claim_of_expired_or_unknown_token_is_none() -> None:
    clock = _Clock()
    store = MergeTokenStore(ttl_seconds=10, clock=clock)
    token = store.create(MergePair("https://v", "https://a"))
    clock.now += 11

    assert store.claim(token) is None
    assert store.claim("missing") is None
    assert len(store) == 0


def test_purge_skips_claimed_tokens() -> None:
    clock = _Clock()
    store = MergeTokenStore(ttl_seconds=10, clock=clock)
    token = store.create(MergePair("https://v", "https://a"))
    store.claim(token)
    clock.now += 60

    assert store.purge_expired() == 0
    assert len(store) == 1
