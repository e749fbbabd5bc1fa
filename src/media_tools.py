"""Wrappers around the external command-line tools used by the pipeline.

Every invocation runs with an argument list (never a shell) and an optional
deadline. Artifacts are written under a ``.partial`` name and renamed once the
tool succeeds, so a final artifact on disk is always complete.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path

from src.logging_utils import get_logger
from src.schema import VideoDetails
from src.state_store import PARTIAL_SUFFIX

YT_DLP = "yt-dlp"
FFMPEG = "ffmpeg"
WHISPER = "whisper-cli"

VIDEO_URL_PREFIX = "https://www.youtube.com/watch?v="
DETAILS_SEPARATOR = "|"
DETAILS_FORMAT = DETAILS_SEPARATOR.join(
    ("%(upload_date)s", "%(duration_string)s", "%(title)s")
)

# whisper.cpp only accepts 16 kHz mono 16-bit PCM
SAMPLE_RATE = 16000
CHANNELS = 1
CODEC = "pcm_s16le"

ERROR_OUTPUT_LIMIT = 500

logger = get_logger("tools")


class ToolError(RuntimeError):
    """An external tool failed, timed out, or could not be started."""

    def __init__(self, tool: str, message: str):
        super().__init__(f"{tool}: {message}")
        self.tool = tool


def video_url(video_id: str) -> str:
    return VIDEO_URL_PREFIX + video_id


def run_tool(args: list[str], timeout: float | None = None) -> str:
    """Run a tool to completion and return its stdout.

    ``subprocess.run`` kills the child when ``timeout`` expires, so a hung
    process cannot hold a worker forever.
    """
    if not isinstance(args, (list, tuple)):
        raise TypeError("Tool arguments must be a list/tuple, not a string")

    tool = str(args[0])
    logger.debug("Running %s", " ".join(str(arg) for arg in args))
    try:
        result = subprocess.run(
            [str(arg) for arg in args],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ToolError(tool, "executable not found") from exc
    except subprocess.TimeoutExpired as exc:
        raise ToolError(tool, f"timed out after {timeout:.0f}s") from exc
    except OSError as exc:
        raise ToolError(tool, str(exc)) from exc

    if result.returncode != 0:
        output = (result.stderr or result.stdout or "").strip()
        raise ToolError(
            tool, f"exit status {result.returncode}: {output[:ERROR_OUTPUT_LIMIT]}"
        )
    return result.stdout


def _finalize(partial: Path, final: Path, tool: str) -> Path:
    if not partial.exists():
        raise ToolError(tool, f"expected output {partial.name} was not created")
    os.replace(partial, final)
    return final


def list_channel_videos(channel_url: str, timeout: float | None = None) -> str:
    """Return the raw listing of video ids available on a channel."""
    return run_tool(
        [YT_DLP, "--flat-playlist", "--print", "%(id)s", channel_url],
        timeout=timeout,
    )


def parse_video_details(video_id: str, line: str) -> VideoDetails:
    """Parse ``upload_date|duration|title`` as printed by the metadata tool."""
    parts = line.strip().split(DETAILS_SEPARATOR, 2)
    if len(parts) != 3:
        raise ValueError(f"Unexpected metadata line for {video_id}: {line!r}")
    upload_date, duration, title = parts
    return VideoDetails(
        id=video_id, upload_date=upload_date, duration=duration, title=title
    )


def fetch_video_details(video_id: str, timeout: float | None = None) -> VideoDetails:
    output = run_tool(
        [
            YT_DLP,
            "--skip-download",
            "--no-playlist",
            "--print",
            DETAILS_FORMAT,
            video_url(video_id),
        ],
        timeout=timeout,
    )
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        raise ToolError(YT_DLP, f"no metadata printed for {video_id}")
    try:
        return parse_video_details(video_id, lines[-1])
    except ValueError as exc:
        raise ToolError(YT_DLP, str(exc)) from exc


def download_audio(
    video_id: str, output_path: Path, timeout: float | None = None
) -> Path:
    """Download the audio track of a video as mp3 to ``output_path``."""
    output_dir = output_path.parent
    output_dir.mkdir(parents=True, exist_ok=True)
    partial = output_dir / f"{video_id}{PARTIAL_SUFFIX}.mp3"
    run_tool(
        [
            YT_DLP,
            "-x",
            "--audio-format",
            "mp3",
            "--no-playlist",
            "-P",
            str(output_dir),
            "-o",
            f"%(id)s{PARTIAL_SUFFIX}.%(ext)s",
            video_url(video_id),
        ],
        timeout=timeout,
    )
    return _finalize(partial, output_path, YT_DLP)


def transcode_audio(
    input_path: Path, output_path: Path, timeout: float | None = None
) -> Path:
    """Convert downloaded audio to the wav format the transcriber expects."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    partial = output_path.with_name(
        f"{output_path.stem}{PARTIAL_SUFFIX}{output_path.suffix}"
    )
    run_tool(
        [
            FFMPEG,
            "-y",
            "-i",
            str(input_path),
            "-ar",
            str(SAMPLE_RATE),
            "-ac",
            str(CHANNELS),
            "-c:a",
            CODEC,
            str(partial),
        ],
        timeout=timeout,
    )
    return _finalize(partial, output_path, FFMPEG)


def transcribe_audio(
    input_path: Path,
    output_path: Path,
    model_path: Path,
    timeout: float | None = None,
) -> Path:
    """Produce an srt transcript at ``output_path`` from a wav file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    # whisper-cli appends the .srt extension to the -of base name
    partial_base = output_path.with_name(f"{output_path.stem}{PARTIAL_SUFFIX}")
    run_tool(
        [
            WHISPER,
            "-osrt",
            "-m",
            str(model_path),
            "-f",
            str(input_path),
            "-of",
            str(partial_base),
        ],
        timeout=timeout,
    )
    partial = partial_base.with_name(partial_base.name + output_path.suffix)
    return _finalize(partial, output_path, WHISPER)
