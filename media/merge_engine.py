"""Concurrent two-source merge through an external muxer process.

Both sources are fetched with ``httpx`` and written into their own OS pipe,
which the muxer reads as ``pipe:<fd>``. The video feed, the audio feed and the
muxer itself run as sibling tasks under a single deadline; whichever way the
merge ends, the process is reaped, pipes are closed and partial output is
removed.
"""

from __future__ import annotations

import asyncio
import collections
import contextlib
import json
import logging
import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional
from uuid import uuid4

import httpx

from config.settings import (
    MERGE_CHUNK_SIZE,
    MERGE_FETCH_CONNECT_TIMEOUT_SECONDS,
    MERGE_FETCH_READ_TIMEOUT_SECONDS,
    MERGE_TIMEOUT_SECONDS,
    UPSTREAM_USER_AGENT,
)
from engine.errors import MergeError, MergeTimeout, MuxerProcessError, UpstreamFetchError
from media.ffmpeg import STREAM_OUTPUT, build_merge_command

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 20
TERMINATE_GRACE_SECONDS = 3.0
_STDERR_SPLIT = re.compile(rb"[\r\n]")

Sink = Callable[[bytes], Awaitable[None]]


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


def build_http_client() -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        MERGE_FETCH_READ_TIMEOUT_SECONDS,
        connect=MERGE_FETCH_CONNECT_TIMEOUT_SECONDS,
    )
    return httpx.AsyncClient(
        timeout=timeout,
        follow_redirects=True,
        headers={"User-Agent": UPSTREAM_USER_AGENT},
    )


@dataclass
class MergeJob:
    video_uri: str
    audio_uri: str
    output_path: Optional[Path] = None
    job_id: str = field(default_factory=lambda: uuid4().hex)
    process: Optional[asyncio.subprocess.Process] = None
    deadline: Optional[float] = None
    bytes_out: int = 0
    stderr_tail: collections.deque = field(
        default_factory=lambda: collections.deque(maxlen=STDERR_TAIL_LINES)
    )

    @property
    def streaming(self) -> bool:
        return self.output_path is None

    def stderr_text(self) -> str:
        return "\n".join(self.stderr_tail)


class _PipeWriterProtocol(asyncio.BaseProtocol):
    """Flow control for a write-only pipe transport."""

    def __init__(self):
        self._loop = asyncio.get_running_loop()
        self._paused = False
        self._waiter = None
        self.lost = False
        self.lost_exc = None

    def pause_writing(self):
        self._paused = True

    def resume_writing(self):
        self._paused = False
        self._wake()

    def connection_lost(self, exc):
        self.lost = True
        self.lost_exc = exc
        self._wake()

    def _wake(self):
        waiter, self._waiter = self._waiter, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    def ensure_open(self):
        if self.lost:
            raise BrokenPipeError("muxer input pipe closed") from self.lost_exc

    async def drain(self):
        self.ensure_open()
        if not self._paused:
            return
        self._waiter = self._loop.create_future()
        await self._waiter
        self.ensure_open()


async def terminate_process(process, *, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> None:
    """Terminate ``process``, escalate to kill after ``grace_seconds`` and reap it."""
    if process is None or process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), grace_seconds)
    except asyncio.TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


def _first_error(exc):
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


class StreamMergeEngine:
    def __init__(
        self,
        artifact_dir,
        *,
        client: httpx.AsyncClient | None = None,
        command_builder=None,
        timeout_seconds: float = MERGE_TIMEOUT_SECONDS,
        chunk_size: int = MERGE_CHUNK_SIZE,
    ):
        self.artifact_dir = Path(artifact_dir)
        self._owns_client = client is None
        self._client = client or build_http_client()
        self._command_builder = command_builder or build_merge_command
        self.timeout_seconds = float(timeout_seconds)
        self.chunk_size = int(chunk_size)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def new_output_path(self, job_id: str) -> Path:
        return self.artifact_dir / f"merged_{job_id}.mp4"

    async def merge_to_file(self, video_uri: str, audio_uri: str) -> Path:
        """Merge into a fresh file under ``artifact_dir`` and return its path."""
        job = MergeJob(video_uri=video_uri, audio_uri=audio_uri)
        job.output_path = self.new_output_path(job.job_id)
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        await self._run(job, sink=None)
        try:
            size = job.output_path.stat().st_size
        except OSError:
            size = 0
        if size <= 0:
            with contextlib.suppress(OSError):
                job.output_path.unlink()
            raise MuxerProcessError("muxer produced an empty output file", returncode=0, stderr_tail=job.stderr_text())
        return job.output_path

    async def merge_to_sink(self, video_uri: str, audio_uri: str, sink: Sink) -> int:
        """Merge into fragmented mp4 delivered chunk by chunk to ``sink``.

        Returns the number of bytes handed to the sink.
        """
        job = MergeJob(video_uri=video_uri, audio_uri=audio_uri)
        await self._run(job, sink=sink)
        if job.bytes_out <= 0:
            raise MuxerProcessError("muxer produced no output", returncode=0, stderr_tail=job.stderr_text())
        return job.bytes_out

    async def _run(self, job: MergeJob, sink: Sink | None) -> None:
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        # Loop-clock deadline shared by both feeds and the muxer.
        job.deadline = loop.time() + self.timeout_seconds
        mode = "stream" if job.streaming else "file"
        _log_event(logging.INFO, "merge_started", job_id=job.job_id, mode=mode)

        transports = []
        read_fds = []
        write_files = []
        succeeded = False
        try:
            video_r, video_w = os.pipe()
            read_fds.append(video_r)
            write_files.append(os.fdopen(video_w, "wb", buffering=0))
            audio_r, audio_w = os.pipe()
            read_fds.append(audio_r)
            write_files.append(os.fdopen(audio_w, "wb", buffering=0))

            output = STREAM_OUTPUT if job.streaming else str(job.output_path)
            command = self._command_builder(f"pipe:{video_r}", f"pipe:{audio_r}", output)
            try:
                job.process = await asyncio.create_subprocess_exec(
                    *command,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE if job.streaming else asyncio.subprocess.DEVNULL,
                    stderr=asyncio.subprocess.PIPE,
                    pass_fds=(video_r, audio_r),
                )
            except OSError as exc:
                raise MuxerProcessError(f"failed to start muxer: {exc}") from exc
            finally:
                # The child holds its own copies of the read ends.
                while read_fds:
                    os.close(read_fds.pop())

            pipes = []
            while write_files:
                pipe_file = write_files.pop(0)
                try:
                    transport, protocol = await loop.connect_write_pipe(_PipeWriterProtocol, pipe_file)
                except Exception:
                    pipe_file.close()
                    raise
                transports.append(transport)
                pipes.append((transport, protocol))

            try:
                async with asyncio.timeout_at(job.deadline):
                    async with asyncio.TaskGroup() as tg:
                        tg.create_task(self._feed(job, "video", job.video_uri, *pipes[0]))
                        tg.create_task(self._feed(job, "audio", job.audio_uri, *pipes[1]))
                        tg.create_task(self._muxer_leg(job, sink))
            except TimeoutError:
                raise MergeTimeout(f"merge exceeded {self.timeout_seconds:g}s") from None
            except BaseExceptionGroup as group:
                first = _first_error(group)
                if isinstance(first, MergeError):
                    raise first from None
                if isinstance(first, Exception):
                    raise MergeError(f"merge failed: {first}") from first
                raise
            succeeded = True
        except BaseException as exc:
            _log_event(
                logging.ERROR if isinstance(exc, Exception) else logging.INFO,
                "merge_failed" if isinstance(exc, Exception) else "merge_cancelled",
                job_id=job.job_id,
                mode=mode,
                error=str(exc) or type(exc).__name__,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            raise
        finally:
            for pipe_file in write_files:
                pipe_file.close()
            for fd in read_fds:
                os.close(fd)
            for transport in transports:
                if not transport.is_closing() or transport.get_write_buffer_size():
                    transport.abort()
            await terminate_process(job.process)
            if not succeeded and job.output_path is not None:
                with contextlib.suppress(OSError):
                    job.output_path.unlink()

        _log_event(
            logging.INFO,
            "merge_completed",
            job_id=job.job_id,
            mode=mode,
            bytes_out=job.bytes_out if job.streaming else None,
            elapsed_ms=int((time.monotonic() - started) * 1000),
        )

    async def _feed(self, job, label, uri, transport, protocol):
        try:
            async with self._client.stream("GET", uri) as response:
                status = response.status_code
                if status < 200 or status >= 300:
                    raise UpstreamFetchError(f"{label} source returned HTTP {status}")
                async for chunk in response.aiter_bytes(self.chunk_size):
                    if not chunk:
                        continue
                    protocol.ensure_open()
                    transport.write(chunk)
                    await protocol.drain()
        except (httpx.HTTPError, httpx.StreamError) as exc:
            raise UpstreamFetchError(f"{label} source fetch failed: {exc}") from exc
        except (BrokenPipeError, ConnectionResetError):
            # The muxer stopped reading (e.g. -shortest); its exit status decides the outcome.
            logger.debug(f"Muxer closed {label} input early job_id={job.job_id}")
        finally:
            if not transport.is_closing():
                transport.close()

    async def _muxer_leg(self, job, sink):
        process = job.process
        async with asyncio.TaskGroup() as tg:
            tg.create_task(self._drain_stderr(job, process.stderr))
            if sink is not None:
                tg.create_task(self._pump_stdout(job, process.stdout, sink))
        returncode = await process.wait()
        if returncode != 0:
            raise MuxerProcessError(
                f"muxer exited with status {returncode}",
                returncode=returncode,
                stderr_tail=job.stderr_text(),
            )

    async def _pump_stdout(self, job, stream, sink):
        while True:
            chunk = await stream.read(self.chunk_size)
            if not chunk:
                return
            job.bytes_out += len(chunk)
            await sink(chunk)

    async def _drain_stderr(self, job, stream):
        # ffmpeg separates progress updates with carriage returns.
        pending = b""
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            parts = _STDERR_SPLIT.split(pending + chunk)
            pending = parts.pop()
            for part in parts:
                self._record_stderr(job, part)
        if pending:
            self._record_stderr(job, pending)

    def _record_stderr(self, job, raw):
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return
        if "time=" in line:
            logger.debug(f"[MERGE] job_id={job.job_id} progress {line}")
        job.stderr_tail.append(line)
