#!/usr/bin/env python3
import asyncio
import json
import logging
import math
import os
from datetime import datetime, timezone
from pathlib import Path

import anyio
from fastapi import Body, FastAPI, Query, Request
from fastapi.responses import FileResponse, JSONResponse, StreamingResponse
from pydantic import BaseModel
from starlette.background import BackgroundTask
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import APP_VERSION, PUBLIC_BASE_URL, TRUST_PROXY
from engine.errors import InvalidOrExpiredToken, MediaServiceError, MergeError, MergeInProgress
from engine.merge_tokens import MergePair, MergeTokenStore
from engine.paths import build_storage_paths, ensure_dir
from engine.resolution import ResolutionService
from engine.runtime import get_runtime_info
from input.platform_router import SUPPORTED_PLATFORMS
from media.ffmpeg import ffmpeg_status
from media.janitor import TempFileJanitor
from media.merge_engine import StreamMergeEngine, build_http_client

APP_NAME = "Media Merge API"
MERGED_FILENAME = "merged_video.mp4"
STREAM_QUEUE_CHUNKS = 8


def _env_or_default(name, default):
    value = os.environ.get(name)
    return value if value not in (None, "") else default


def _utc_now_iso():
    return datetime.now(timezone.utc).isoformat()


def _safe_json(obj):
    if isinstance(obj, dict):
        return {str(key): _safe_json(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_safe_json(value) for value in obj]
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    if isinstance(obj, Path):
        return str(obj)
    return obj


def _setup_logging(log_dir):
    ensure_dir(log_dir)
    root = logging.getLogger("")
    log_path = os.path.join(log_dir, "media_merge.log")
    root.setLevel(logging.INFO)
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler):
            if os.path.abspath(getattr(handler, "baseFilename", "")) == os.path.abspath(log_path):
                return
    file_handler = logging.FileHandler(log_path)
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.INFO)
    root.addHandler(file_handler)


class DownloadRequest(BaseModel):
    url: str | None = None


class MergeAudioRequest(BaseModel):
    videoUrl: str | None = None
    audioUrl: str | None = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return json.dumps(
            _safe_json(content),
            ensure_ascii=False,
            allow_nan=False,
            separators=(",", ":"),
        ).encode("utf-8")


def _error_response(status_code, error, details=None):
    return SafeJSONResponse(
        {"success": False, "error": error, "details": details},
        status_code=status_code,
    )


app = FastAPI(
    title=APP_NAME,
    description="Resolve hosted media into downloadable formats and merge split video/audio streams.",
    version=APP_VERSION,
    default_response_class=SafeJSONResponse,
)

if TRUST_PROXY:
    app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")


@app.exception_handler(MediaServiceError)
async def media_service_error_handler(request: Request, exc: MediaServiceError):
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logging.log(level, f"{request.method} {request.url.path} -> {exc.status_code} {exc}")
    return _error_response(exc.status_code, exc.public_message, exc.details)


@app.on_event("startup")
async def startup():
    app.state.paths = build_storage_paths()
    _setup_logging(app.state.paths.log_dir)
    app.state.http_client = build_http_client()
    app.state.resolution_service = ResolutionService()
    app.state.token_store = MergeTokenStore()
    app.state.merge_engine = StreamMergeEngine(
        app.state.paths.artifact_dir,
        client=app.state.http_client,
    )
    app.state.janitor = TempFileJanitor(app.state.paths.artifact_dir)
    app.state.janitor.start(token_store=app.state.token_store)
    logging.info(
        f"{APP_NAME} {APP_VERSION} started "
        f"artifact_dir={app.state.paths.artifact_dir} trust_proxy={TRUST_PROXY}"
    )


@app.on_event("shutdown")
async def shutdown():
    janitor = getattr(app.state, "janitor", None)
    if janitor:
        janitor.shutdown()
    client = getattr(app.state, "http_client", None)
    if client is not None:
        await client.aclose()
    logging.shutdown()


def _public_base_url(request: Request) -> str:
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL
    return str(request.base_url).rstrip("/")


@app.post("/download")
async def download(request: Request, payload: DownloadRequest = Body(default=DownloadRequest())):
    reference, format_set = await app.state.resolution_service.resolve(payload.url)
    base_url = _public_base_url(request)
    token_store = app.state.token_store

    formats = []
    for fmt in format_set.formats:
        entry = fmt.as_dict()
        if fmt.needs_merge:
            token = token_store.create(MergePair(video_uri=fmt.source_uri, audio_uri=fmt.audio_source_uri))
            entry["videoUrl"] = fmt.source_uri
            entry["mergeToken"] = token
            entry["url"] = f"{base_url}/merge/{token}.mp4"
        formats.append(entry)

    selected = formats[format_set.formats.index(format_set.default_format)]
    merge_count = sum(1 for fmt in format_set.formats if fmt.needs_merge)
    logging.info(
        f"Resolved {reference.url} platform={reference.platform.value} formats={len(formats)} "
        f"selected={selected['quality']} merge_tokens={merge_count}"
    )
    return {
        "success": True,
        "platform": reference.platform.value,
        "data": {
            "title": format_set.title,
            "thumbnail": format_set.thumbnail,
            "duration": format_set.duration_seconds,
            "isShortForm": reference.is_short_form,
            "url": selected["url"],
            "selectedQuality": selected,
            "formats": formats,
        },
        "timestamp": _utc_now_iso(),
    }


@app.get("/merge/{token}.{ext}")
async def merge_download(token: str, ext: str):
    token_store = app.state.token_store
    try:
        pair = token_store.claim(token)
    except MergeInProgress:
        logging.info(f"Merge already running token={token}")
        return SafeJSONResponse({"success": False, "status": "merging", "token": token}, status_code=202)
    if pair is None:
        raise InvalidOrExpiredToken()
    logging.info(f"Merge requested token={token}")
    try:
        output_path = await app.state.merge_engine.merge_to_file(pair.video_uri, pair.audio_uri)
    finally:
        # Tokens are single-use whether or not the merge succeeds.
        token_store.delete(token)
    return FileResponse(
        output_path,
        media_type="video/mp4",
        filename=MERGED_FILENAME,
        background=BackgroundTask(app.state.janitor.schedule_cleanup, str(output_path)),
    )


def _discard_task_result(task):
    if not task.cancelled():
        task.exception()


async def _next_chunk(queue, task):
    """Next merged chunk, or None once the merge finished and the queue is drained."""
    getter = asyncio.ensure_future(queue.get())
    try:
        done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        getter.cancel()
        raise
    if getter in done:
        return getter.result()
    getter.cancel()
    if not queue.empty():
        return queue.get_nowait()
    task.result()
    return None


async def _stream_merge(video_url, audio_url):
    if not video_url or not audio_url:
        return _error_response(400, "Both videoUrl and audioUrl are required")

    queue = asyncio.Queue(maxsize=STREAM_QUEUE_CHUNKS)
    task = asyncio.create_task(app.state.merge_engine.merge_to_sink(video_url, audio_url, queue.put))
    task.add_done_callback(_discard_task_result)
    try:
        first = await _next_chunk(queue, task)
    except BaseException:
        task.cancel()
        raise

    async def body():
        try:
            if first is None:
                return
            yield first
            while True:
                chunk = await _next_chunk(queue, task)
                if chunk is None:
                    return
                yield chunk
        except MergeError as exc:
            logging.error(f"Streaming merge aborted after first byte: {exc}")
            raise
        finally:
            if not task.done():
                logging.info("Streaming merge client went away; cancelling merge")
                task.cancel()

    return StreamingResponse(
        body(),
        media_type="video/mp4",
        headers={"Content-Disposition": f'attachment; filename="{MERGED_FILENAME}"'},
    )


@app.get("/merge-audio")
async def merge_audio_get(
    videoUrl: str | None = Query(default=None),
    audioUrl: str | None = Query(default=None),
):
    return await _stream_merge(videoUrl, audioUrl)


@app.post("/merge-audio")
async def merge_audio_post(payload: MergeAudioRequest = Body(default=MergeAudioRequest())):
    return await _stream_merge(payload.videoUrl, payload.audioUrl)


@app.get("/ffmpeg-status")
async def api_ffmpeg_status():
    return await anyio.to_thread.run_sync(ffmpeg_status)


@app.get("/diagnostics")
async def diagnostics():
    ffmpeg = await anyio.to_thread.run_sync(ffmpeg_status)
    artifact_dir = app.state.paths.artifact_dir
    artifact_writable = os.path.isdir(artifact_dir) and os.access(artifact_dir, os.W_OK)
    return {
        "healthy": bool(ffmpeg.get("installed")) and artifact_writable,
        "ffmpeg": ffmpeg,
        "artifactDir": {"path": artifact_dir, "writable": artifact_writable},
        "activeMergeTokens": len(app.state.token_store),
        "runtime": get_runtime_info(),
        "timestamp": _utc_now_iso(),
    }


@app.get("/system-info")
async def system_info():
    info = get_runtime_info()
    info["supported_platforms"] = SUPPORTED_PLATFORMS
    registry = getattr(app.state.resolution_service, "registry", None)
    info["resolvers"] = registry.describe() if registry is not None else {}
    return info


@app.get("/health")
async def health():
    return {"status": "ok", "healthy": True, "timestamp": _utc_now_iso()}


def run():
    import uvicorn

    host = _env_or_default("MEDIA_MERGE_HOST", "127.0.0.1")
    port = int(_env_or_default("MEDIA_MERGE_PORT", "8000"))
    uvicorn.run("api.main:app", host=host, port=port, reload=False, proxy_headers=TRUST_PROXY)


if __name__ == "__main__":
    run()
