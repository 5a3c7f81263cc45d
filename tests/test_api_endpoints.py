from __future__ import annotations

import asyncio
import importlib
import sys

import pytest

fastapi = pytest.importorskip("fastapi")
from fastapi.testclient import TestClient
import httpx

from engine.errors import MuxerProcessError, UpstreamFetchError
from engine.merge_tokens import MergePair, MergeTokenStore
from engine.paths import build_storage_paths
from engine.resolution import ResolutionService, ResolverRegistry
from engine.resolver_chain import ResolverChain, RetryPolicy
from engine.resolvers import RawProviderPayload, Resolver
from input.platform_router import Platform
from media.janitor import TempFileJanitor


class _StaticResolver(Resolver):
    name = "static"

    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error

    def fetch(self, reference):
        if self.error is not None:
            raise self.error
        return self.payload


class _FakeMergeEngine:
    def __init__(self, artifact_dir, *, error=None, chunks=(b"chunk-1", b"chunk-2"), delay=0.0):
        self.artifact_dir = artifact_dir
        self.delay = delay
        self.error = error
        self.chunks = chunks
        self.calls = []

    async def merge_to_file(self, video_uri, audio_uri):
        self.calls.append((video_uri, audio_uri))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        path = self.artifact_dir / "merged_fake.mp4"
        path.write_bytes(b"merged-bytes")
        return path

    async def merge_to_sink(self, video_uri, audio_uri, sink):
        self.calls.append((video_uri, audio_uri))
        if self.error is not None:
            raise self.error
        total = 0
        for chunk in self.chunks:
            await sink(chunk)
            total += len(chunk)
        return total


def _ytdlp_payload():
    return RawProviderPayload(
        provider="static",
        kind="ytdlp",
        data={
            "title": "Demo",
            "thumbnail": "https://i.example/t.jpg",
            "duration": 30,
            "formats": [
                {"url": "https://cdn.example/360.mp4", "ext": "mp4", "height": 360, "vcodec": "avc1", "acodec": "mp4a"},
                {"url": "https://cdn.example/v1080.mp4", "ext": "mp4", "height": 1080, "vcodec": "avc1", "acodec": "none"},
                {"url": "https://cdn.example/a.m4a", "ext": "m4a", "vcodec": "none", "acodec": "mp4a", "abr": 128},
            ],
        },
    )


def _registry(resolver):
    chain = ResolverChain([resolver], policy=RetryPolicy(max_retries=1))
    return ResolverRegistry({platform: chain for platform in Platform})


def _build_client(monkeypatch, tmp_path, *, resolver=None, merge_error=None):
    sys.modules.pop("api.main", None)
    module = importlib.import_module("api.main")
    module.app.router.on_startup.clear()
    module.app.router.on_shutdown.clear()

    paths = build_storage_paths(artifact_dir=tmp_path / "artifacts", log_dir=tmp_path / "logs")
    artifact_dir = tmp_path / "artifacts"
    module.app.state.paths = paths
    module.app.state.token_store = MergeTokenStore()
    module.app.state.resolution_service = ResolutionService(
        registry=_registry(resolver or _StaticResolver(_ytdlp_payload()))
    )
    module.app.state.merge_engine = _FakeMergeEngine(artifact_dir, error=merge_error)
    module.app.state.janitor = TempFileJanitor(artifact_dir, cleanup_delay_seconds=0)
    monkeypatch.setattr(
        module,
        "ffmpeg_status",
        lambda: {"installed": True, "version": "ffmpeg version 6.1", "path": "/usr/bin/ffmpeg"},
    )
    return module, TestClient(module.app)


def test_download_returns_formats_with_merge_links(monkeypatch, tmp_path) -> None:
    module, client = _build_client(monkeypatch, tmp_path)

    response = client.post("/download", json={"url": "https://youtu.be/dQw4w9WgXcQ"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["platform"] == "youtube"
    data = body["data"]
    assert data["title"] == "Demo"
    assert data["isShortForm"] is False
    assert [f["qualityNum"] for f in data["formats"]] == [1080, 360, 128]
    merged = data["formats"][0]
    assert merged["needsMerge"] is True
    assert merged["url"].startswith("http://testserver/merge/")
    assert merged["url"].endswith(".mp4")
    assert data["selectedQuality"]["qualityNum"] == 1080
    assert data["url"] == merged["url"]
    pair = module.app.state.token_store.get(merged["mergeToken"])
    assert pair == MergePair("https://cdn.example/v1080.mp4", "https://cdn.example/a.m4a")
    assert "timestamp" in body


def test_download_uses_public_base_url(monkeypatch, tmp_path) -> None:
    module, client = _build_client(monkeypatch, tmp_path)
    monkeypatch.setattr(module, "PUBLIC_BASE_URL", "https://media.example.com")

    body = client.post("/download", json={"url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ"}).json()

    assert body["data"]["formats"][0]["url"].startswith("https://media.example.com/merge/")


@pytest.mark.parametrize(
    "payload,error",
    [
        ({"url": "not-a-url"}, "Invalid URL format"),
        ({}, "Invalid URL format"),
        ({"url": "https://vimeo.com/1"}, "Unsupported platform"),
    ],
)
def test_download_rejects_bad_input(monkeypatch, tmp_path, payload, error) -> None:
    _, client = _build_client(monkeypatch, tmp_path)

    response = client.post("/download", json=payload)

    assert response.status_code == 400
    assert response.json()["success"] is False
    assert response.json()["error"] == error


def test_download_all_providers_failing_is_502(monkeypatch, tmp_path) -> None:
    _, client = _build_client(monkeypatch, tmp_path, resolver=_StaticResolver(error=RuntimeError("blocked")))

    response = client.post("/download", json={"url": "https://www.tiktok.com/@u/video/1"})

    assert response.status_code == 502
    body = response.json()
    assert body["error"] == "Failed to fetch media"
    assert body["details"] == [{"resolver": "static", "error": "blocked"}]


def test_download_without_playable_formats_is_404(monkeypatch, tmp_path) -> None:
    payload = RawProviderPayload(
        provider="static",
        kind="ytdlp",
        data={"title": "Nothing", "formats": [{"url": "https://cdn.example/x.m3u8", "protocol": "m3u8_native"}]},
    )
    _, client = _build_client(monkeypatch, tmp_path, resolver=_StaticResolver(payload))

    response = client.post("/download", json={"url": "https://www.instagram.com/reel/abc/"})

    assert response.status_code == 404
    assert response.json()["error"] == "No downloadable formats found"


def test_merge_token_serves_file_once_and_cleans_up(monkeypatch, tmp_path) -> None:
    module, client = _build_client(monkeypatch, tmp_path)
    token = module.app.state.token_store.create(MergePair("https://cdn/v.mp4", "https://cdn/a.m4a"))

    response = client.get(f"/merge/{token}.mp4")

    assert response.status_code == 200
    assert response.content == b"merged-bytes"
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["content-length"] == str(len(b"merged-bytes"))
    assert response.headers["content-disposition"].startswith("attachment")
    assert module.app.state.merge_engine.calls == [("https://cdn/v.mp4", "https://cdn/a.m4a")]
    assert not (tmp_path / "artifacts" / "merged_fake.mp4").exists()

    again = client.get(f"/merge/{token}.mp4")
    assert again.status_code == 404
    assert again.json() == {"success": False, "error": "Invalid or expired merge token", "details": None}


def test_overlapping_requests_for_one_token_merge_once(monkeypatch, tmp_path) -> None:
    module, _ = _build_client(monkeypatch, tmp_path)
    engine = module.app.state.merge_engine
    engine.delay = 0.3
    token = module.app.state.token_store.create(MergePair("https://cdn/v.mp4", "https://cdn/a.m4a"))

    async def scenario():
        transport = httpx.ASGITransport(app=module.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await asyncio.gather(
                client.get(f"/merge/{token}.mp4"),
                client.get(f"/merge/{token}.mp4"),
            )

    first, second = asyncio.run(scenario())

    assert sorted([first.status_code, second.status_code]) == [200, 202]
    waiting = first if first.status_code == 202 else second
    assert waiting.json() == {"success": False, "status": "merging", "token": token}
    assert len(engine.calls) == 1
    assert module.app.state.token_store.get(token) is None


def test_unknown_merge_token_is_404(monkeypatch, tmp_path) -> None:
    module, client = _build_client(monkeypatch, tmp_path)

    response = client.get("/merge/0123456789abcdef0123456789abcdef.mp4")

    assert response.status_code == 404
    assert module.app.state.merge_engine.calls == []


def test_failed_merge_returns_500_and_consumes_token(monkeypatch, tmp_path) -> None:
    module, client = _build_client(
        monkeypatch,
        tmp_path,
        merge_error=MuxerProcessError("muxer exited with status 1", returncode=1, stderr_tail="bad input"),
    )
    token = module.app.state.token_store.create(MergePair("https://cdn/v.mp4", "https://cdn/a.m4a"))

    response = client.get(f"/merge/{token}.mp4")

    assert response.status_code == 500
    assert response.json()["error"] == "Merge failed"
    assert "bad input" in response.json()["details"]
    assert module.app.state.token_store.get(token) is None


def test_merge_audio_streams_merged_bytes(monkeypatch, tmp_path) -> None:
    module, client = _build_client(monkeypatch, tmp_path)

    response = client.get("/merge-audio", params={"videoUrl": "https://cdn/v.mp4", "audioUrl": "https://cdn/a.m4a"})

    assert response.status_code == 200
    assert response.headers["content-type"] == "video/mp4"
    assert response.content == b"chunk-1chunk-2"

    posted = client.post("/merge-audio", json={"videoUrl": "https://cdn/v2.mp4", "audioUrl": "https://cdn/a2.m4a"})
    assert posted.content == b"chunk-1chunk-2"
    assert module.app.state.merge_engine.calls[-1] == ("https://cdn/v2.mp4", "https://cdn/a2.m4a")


def test_merge_audio_requires_both_urls(monkeypatch, tmp_path) -> None:
    _, client = _build_client(monkeypatch, tmp_path)

    response = client.get("/merge-audio", params={"videoUrl": "https://cdn/v.mp4"})

    assert response.status_code == 400
    assert response.json()["error"] == "Both videoUrl and audioUrl are required"


def test_merge_audio_failure_before_first_byte_is_json_500(monkeypatch, tmp_path) -> None:
    _, client = _build_client(monkeypatch, tmp_path, merge_error=UpstreamFetchError("audio source returned HTTP 403"))

    response = client.post("/merge-audio", json={"videoUrl": "https://cdn/v.mp4", "audioUrl": "https://cdn/a.m4a"})

    assert response.status_code == 500
    assert response.json()["details"] == "audio source returned HTTP 403"


def test_status_endpoints(monkeypatch, tmp_path) -> None:
    module, client = _build_client(monkeypatch, tmp_path)
    module.app.state.token_store.create(MergePair("https://v", "https://a"))

    assert client.get("/health").json()["healthy"] is True
    assert client.get("/ffmpeg-status").json()["installed"] is True

    diagnostics = client.get("/diagnostics").json()
    assert diagnostics["healthy"] is True
    assert diagnostics["activeMergeTokens"] == 1
    assert diagnostics["artifactDir"]["writable"] is True
    assert "python_version" in diagnostics["runtime"]

    info = client.get("/system-info").json()
    assert "youtube" in info["supported_platforms"]
    assert info["resolvers"]["youtube"] == ["static"]
