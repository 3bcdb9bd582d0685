"""Video metadata extraction with ffprobe."""

import asyncio
import json
import logging
import subprocess
from pathlib import Path
from typing import NamedTuple, Optional

from mediaflow.core.exceptions import ProbeError, ToolTimeoutError

logger = logging.getLogger(__name__)


class VideoMetadata(NamedTuple):
    """Metadata for one probed video file. Never cached across requests."""

    codec: str
    width: int
    height: int
    duration: float
    bitrate: int
    framerate: float
    format: str
    file_size: int = 0
    audio_codec: Optional[str] = None


def parse_frame_rate(value: Optional[str]) -> float:
    """Parse ffprobe's rational frame rate ("30000/1001") into fps."""
    if not value:
        return 0.0
    if "/" in value:
        numerator, _, denominator = value.partition("/")
        try:
            den = float(denominator)
            return round(float(numerator) / den, 3) if den else 0.0
        except ValueError:
            return 0.0
    try:
        return float(value)
    except ValueError:
        return 0.0


def build_probe_command(file_path: Path, ffprobe_path: str = "ffprobe") -> list[str]:
    return [
        ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(file_path),
    ]


def parse_probe_output(stdout: str) -> VideoMetadata:
    """Turn ffprobe JSON into VideoMetadata.

    Raises:
        ProbeError: If the output is not JSON or has no video stream
    """
    try:
        probe_data = json.loads(stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"Failed to parse ffprobe output: {e}") from e

    streams = probe_data.get("streams", [])
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video_stream is None:
        raise ProbeError("No video stream found in file")
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    fmt = probe_data.get("format", {})
    duration = float(fmt.get("duration") or video_stream.get("duration") or 0)
    bitrate = int(fmt.get("bit_rate") or video_stream.get("bit_rate") or 0)
    framerate = parse_frame_rate(video_stream.get("r_frame_rate") or video_stream.get("avg_frame_rate"))

    return VideoMetadata(
        codec=(video_stream.get("codec_name") or "unknown").lower(),
        width=int(video_stream.get("width") or 0),
        height=int(video_stream.get("height") or 0),
        duration=duration,
        bitrate=bitrate,
        framerate=framerate,
        format=fmt.get("format_name", "unknown"),
        file_size=int(fmt.get("size") or 0),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


def run_probe(file_path: Path, ffprobe_path: str = "ffprobe", timeout: int = 30) -> VideoMetadata:
    """Run ffprobe synchronously.

    Raises:
        ProbeError: If ffprobe fails or its output cannot be used
        ToolTimeoutError: If ffprobe runs longer than ``timeout`` seconds
    """
    cmd = build_probe_command(file_path, ffprobe_path)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        logger.error("ffprobe timeout", extra={"file_path": str(file_path), "timeout": timeout})
        raise ToolTimeoutError(f"ffprobe timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise ProbeError(f"ffprobe not found: {ffprobe_path}") from e

    if result.returncode != 0:
        message = result.stderr.strip() if result.stderr else f"exit code {result.returncode}"
        raise ProbeError(f"ffprobe failed: {message}")

    metadata = parse_probe_output(result.stdout)
    logger.info(
        "Video metadata extracted",
        extra={
            "file_path": str(file_path),
            "codec": metadata.codec,
            "resolution": f"{metadata.width}x{metadata.height}",
            "duration": metadata.duration,
        },
    )
    return metadata


async def probe_video(file_path: Path, ffprobe_path: str = "ffprobe", timeout: int = 30) -> VideoMetadata:
    """Probe without blocking the event loop."""
    return await asyncio.to_thread(run_probe, file_path, ffprobe_path, timeout)
