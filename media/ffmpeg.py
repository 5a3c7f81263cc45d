"""ffmpeg command construction and installation probing."""

from __future__ import annotations

import os
import shutil
import subprocess

from config.settings import FFMPEG_PATH, MERGE_AUDIO_BITRATE, MERGE_AUDIO_CODEC

STREAM_OUTPUT = "pipe:1"


def build_merge_command(
    video_input: str,
    audio_input: str,
    output: str,
    *,
    ffmpeg_path: str | None = None,
    audio_codec: str | None = None,
    audio_bitrate: str | None = None,
) -> list[str]:
    """Return the argv that muxes ``video_input`` and ``audio_input`` into mp4.

    The video stream is copied and audio is re-encoded. ``output`` is either a
    filesystem path (seekable, ``+faststart``) or :data:`STREAM_OUTPUT`, which
    produces fragmented mp4 so the result can be sent before ffmpeg finishes.
    """
    command = [
        ffmpeg_path or FFMPEG_PATH,
        "-hide_banner",
        "-nostdin",
        "-loglevel",
        "info",
        "-i",
        video_input,
        "-i",
        audio_input,
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
        "-c:v",
        "copy",
        "-c:a",
        audio_codec or MERGE_AUDIO_CODEC,
        "-b:a",
        audio_bitrate or MERGE_AUDIO_BITRATE,
        "-shortest",
        "-f",
        "mp4",
    ]
    if output == STREAM_OUTPUT:
        command += ["-movflags", "frag_keyframe+empty_moov", STREAM_OUTPUT]
    else:
        command += ["-movflags", "+faststart", "-y", output]
    return command


def resolve_ffmpeg_path(ffmpeg_path: str | None = None) -> str | None:
    candidate = ffmpeg_path or FFMPEG_PATH
    if os.path.sep in candidate:
        return candidate if os.access(candidate, os.X_OK) else None
    return shutil.which(candidate)


def ffmpeg_status(ffmpeg_path: str | None = None) -> dict:
    """Report whether ffmpeg is runnable, with its version banner and path.

    Never raises; a missing or broken binary yields ``installed: False``.
    """
    path = resolve_ffmpeg_path(ffmpeg_path)
    status = {"installed": False, "version": None, "path": path}
    if not path:
        return status
    try:
        completed = subprocess.run(
            [path, "-version"],
            capture_output=True,
            text=True,
            check=True,
            timeout=10,
        )
    except (OSError, subprocess.TimeoutExpired, subprocess.CalledProcessError) as exc:
        status["error"] = str(exc)
        return status
    first_line = (completed.stdout or "").splitlines()[:1]
    status["installed"] = True
    status["version"] = first_line[0].strip() if first_line else None
    return status
