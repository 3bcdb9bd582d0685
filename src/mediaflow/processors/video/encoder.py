"""H.264 transcoding with ffmpeg."""

import asyncio
import logging
import re
import subprocess
import time
from pathlib import Path
from typing import NamedTuple, Optional

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import ProbeError, ToolTimeoutError, TranscodeError
from mediaflow.processors.video.probe import VideoMetadata, run_probe

logger = logging.getLogger(__name__)

_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+\w+/s|N/A)")
_TIME_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+x)")


class H264Config(NamedTuple):
    """Fixed transcode target."""

    video_codec: str = "libx264"
    preset: str = "medium"
    crf: int = 23
    max_bitrate_kbps: int = 5000
    buffer_size_kbps: int = 10000
    max_width: int = 1920
    max_height: int = 1080
    profile: str = "main"
    level: str = "4.0"
    pixel_format: str = "yuv420p"
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"

    @classmethod
    def from_settings(cls, settings: Settings) -> "H264Config":
        return cls(
            preset=settings.VIDEO_PRESET,
            crf=settings.VIDEO_CRF,
            max_bitrate_kbps=settings.VIDEO_MAX_BITRATE_KBPS,
            buffer_size_kbps=settings.VIDEO_BUFFER_SIZE_KBPS,
            max_width=settings.VIDEO_MAX_WIDTH,
            max_height=settings.VIDEO_MAX_HEIGHT,
            audio_bitrate=settings.VIDEO_AUDIO_BITRATE,
        )


class TranscodeProgress(NamedTuple):
    frame: int
    out_time: str
    out_time_ms: float
    fps: Optional[float] = None
    bitrate: Optional[str] = None
    speed: Optional[str] = None
    percent: Optional[float] = None


class TranscodeResult(NamedTuple):
    output_path: Path
    original_size: int
    output_size: int
    compression_ratio: float
    processing_time_ms: int
    metadata: VideoMetadata
    quality_score: float
    progress: Optional[TranscodeProgress] = None


def calculate_output_resolution(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Fit within the maximum keeping aspect ratio; H.264 needs even dimensions."""
    if width <= max_width and height <= max_height:
        return width, height

    ratio = min(max_width / width, max_height / height)
    out_width = int(width * ratio)
    out_height = int(height * ratio)
    return out_width - out_width % 2, out_height - out_height % 2


def build_transcode_command(
    input_path: Path,
    output_path: Path,
    source: VideoMetadata,
    config: H264Config,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    out_width, out_height = calculate_output_resolution(source.width, source.height, config.max_width, config.max_height)

    cmd = [
        ffmpeg_path,
        "-i", str(input_path),
        "-c:v", config.video_codec,
        "-preset", config.preset,
        "-crf", str(config.crf),
        "-maxrate", f"{config.max_bitrate_kbps}k",
        "-bufsize", f"{config.buffer_size_kbps}k",
        "-profile:v", config.profile,
        "-level", config.level,
        "-pix_fmt", config.pixel_format,
    ]
    if (out_width, out_height) != (source.width, source.height):
        cmd += ["-vf", f"scale={out_width}:{out_height}"]
    cmd += [
        "-c:a", config.audio_codec,
        "-b:a", config.audio_bitrate,
        "-movflags", "+faststart",  # moov atom first for progressive playback
        "-threads", "0",
        "-f", "mp4",
        "-y",
        str(output_path),
    ]
    return cmd


def parse_progress(output: str, total_duration: float = 0) -> Optional[TranscodeProgress]:
    """Parse ffmpeg status output; the last value of each field wins.

    Returns None unless both a frame count and a timestamp were seen.
    """
    frame = fps = bitrate = speed = out_time = None
    out_time_ms = 0.0
    percent = None

    for line in re.split(r"[\r\n]+", output):
        if match := _FRAME_RE.search(line):
            frame = int(match.group(1))
        if match := _FPS_RE.search(line):
            fps = float(match.group(1))
        if match := _BITRATE_RE.search(line):
            bitrate = match.group(1)
        if match := _TIME_RE.search(line):
            hours, minutes, seconds, centis = (int(g) for g in match.groups())
            current = hours * 3600 + minutes * 60 + seconds + centis / 100
            out_time = ":".join(match.groups()[:3]) + f".{match.group(4)}"
            out_time_ms = current * 1000
            if total_duration > 0:
                percent = min(current / total_duration * 100, 100.0)
        if match := _SPEED_RE.search(line):
            speed = match.group(1)

    if frame is None or out_time is None:
        return None
    return TranscodeProgress(
        frame=frame,
        out_time=out_time,
        out_time_ms=out_time_ms,
        fps=fps,
        bitrate=bitrate,
        speed=speed,
        percent=percent,
    )


def calculate_quality_score(source: VideoMetadata, output: VideoMetadata) -> float:
    """0-100 heuristic: resolution kept (30), bitrate kept (40), frame rate kept (20), size sane (10)."""
    score = 100.0

    if source.width and source.height:
        resolution_ratio = (output.width * output.height) / (source.width * source.height)
        if resolution_ratio < 1:
            score -= (1 - resolution_ratio) * 30

    if source.bitrate > 0 and output.bitrate > 0:
        bitrate_ratio = output.bitrate / source.bitrate
        if bitrate_ratio < 0.3:
            score -= 40
        elif bitrate_ratio < 0.5:
            score -= 20
        elif bitrate_ratio < 0.7:
            score -= 10

    if source.framerate > 0 and output.framerate > 0:
        score -= max(0.0, (1 - output.framerate / source.framerate) * 20)

    if source.file_size and output.file_size and output.file_size / source.file_size > 2:
        score -= 10

    return round(max(0.0, min(100.0, score)), 2)


def validate_output(output_path: Path, ffprobe_path: str = "ffprobe", timeout: int = 30) -> VideoMetadata:
    """The transcoded file must exist, be non-empty and probe as H.264."""
    if not output_path.exists():
        raise TranscodeError("Transcoded output file was not created")
    if output_path.stat().st_size == 0:
        raise TranscodeError("Transcoded output file is empty")

    try:
        metadata = run_probe(output_path, ffprobe_path, timeout)
    except ProbeError as e:
        raise TranscodeError(f"Transcoded output could not be probed: {e}") from e

    if "h264" not in metadata.codec.lower():
        raise TranscodeError(f"Transcoded output has codec {metadata.codec}, expected h264")
    return metadata


def run_transcode(
    input_path: Path,
    output_path: Path,
    source: VideoMetadata,
    config: H264Config,
    ffmpeg_path: str = "ffmpeg",
    ffprobe_path: str = "ffprobe",
    timeout: int = 300,
    probe_timeout: int = 30,
) -> TranscodeResult:
    """Transcode ``input_path`` to H.264/AAC MP4 and verify the output. Blocking.

    Raises:
        TranscodeError: If ffmpeg fails or the output is not H.264
        ToolTimeoutError: If ffmpeg runs longer than ``timeout`` seconds
    """
    cmd = build_transcode_command(input_path, output_path, source, config, ffmpeg_path)
    start = time.monotonic()

    logger.info(
        "Transcoding video to H.264",
        extra={"input": str(input_path), "output": str(output_path), "codec": source.codec},
    )

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        logger.error("ffmpeg transcode timeout", extra={"input": str(input_path), "timeout": timeout})
        raise ToolTimeoutError(f"Video transcoding timed out after {timeout} seconds") from e
    except FileNotFoundError as e:
        raise TranscodeError(f"ffmpeg not found: {ffmpeg_path}") from e

    if result.returncode != 0:
        error_msg = result.stderr.strip().split("\n")[-1] if result.stderr else "Unknown error"
        logger.error(
            "ffmpeg transcode failed",
            extra={"input": str(input_path), "returncode": result.returncode, "stderr_tail": error_msg},
        )
        raise TranscodeError(f"Video transcoding failed: {error_msg}")

    output_meta = validate_output(output_path, ffprobe_path, probe_timeout)
    output_size = output_path.stat().st_size
    original_size = source.file_size or input_path.stat().st_size

    transcode_result = TranscodeResult(
        output_path=output_path,
        original_size=original_size,
        output_size=output_size,
        compression_ratio=round(output_size / original_size, 4) if original_size else 0.0,
        processing_time_ms=int((time.monotonic() - start) * 1000),
        metadata=output_meta,
        quality_score=calculate_quality_score(source, output_meta),
        progress=parse_progress(result.stderr or "", source.duration),
    )
    logger.info(
        "Video transcoded",
        extra={
            "output": str(output_path),
            "metrics": {
                "originalBytes": original_size,
                "outputBytes": output_size,
                "durationMs": transcode_result.processing_time_ms,
                "qualityScore": transcode_result.quality_score,
            },
        },
    )
    return transcode_result


async def transcode_to_h264(
    input_path: Path,
    output_path: Path,
    source: VideoMetadata,
    config: H264Config,
    ffmpeg_path: str = "ffmpeg",
    ffprobe_path: str = "ffprobe",
    timeout: int = 300,
    probe_timeout: int = 30,
) -> TranscodeResult:
    return await asyncio.to_thread(
        run_transcode,
        input_path,
        output_path,
        source,
        config,
        ffmpeg_path,
        ffprobe_path,
        timeout,
        probe_timeout,
    )
