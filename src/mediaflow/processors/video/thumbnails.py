"""Video frame extraction with ffmpeg."""

import asyncio
import logging
import subprocess
from pathlib import Path
from typing import Optional

from mediaflow.core.exceptions import ThumbnailError, ToolTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_THUMBNAIL_OFFSET = 10.0
PREVIEW_MARGIN = 0.1


def thumbnail_offset(
    duration: float,
    preferred: Optional[float] = None,
    cap: float = DEFAULT_THUMBNAIL_OFFSET,
) -> float:
    """Frame time: ``preferred`` when given, else min(25% of duration, ``cap``)."""
    if preferred is not None:
        return max(0.0, min(preferred, duration)) if duration > 0 else max(0.0, preferred)
    return max(0.0, min(duration * 0.25, cap))


def calculate_thumbnail_size(width: int, height: int, target_width: int) -> tuple[int, int]:
    """Scale to ``target_width`` keeping aspect ratio, even height, never upscaling."""
    if width <= 0 or height <= 0:
        return target_width, -2
    out_width = min(target_width, width)
    out_height = max(2, round(height * out_width / width))
    return out_width, out_height - out_height % 2


def build_thumbnail_command(
    input_path: Path,
    output_path: Path,
    offset: float,
    size: tuple[int, int],
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    return [
        ffmpeg_path,
        "-ss", f"{offset:.3f}",
        "-i", str(input_path),
        "-vframes", "1",
        "-vf", f"scale={size[0]}:{size[1]}",
        "-q:v", "2",
        "-y",
        str(output_path),
    ]


def run_extract_frame(
    input_path: Path,
    output_path: Path,
    offset: float,
    size: tuple[int, int],
    ffmpeg_path: str = "ffmpeg",
    timeout: int = 60,
) -> Path:
    """Write one JPEG frame to ``output_path``. Blocking.

    Raises:
        ThumbnailError: If ffmpeg fails or writes nothing
        ToolTimeoutError: If ffmpeg runs longer than ``timeout`` seconds
    """
    cmd = build_thumbnail_command(input_path, output_path, offset, size, ffmpeg_path)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except subprocess.TimeoutExpired as e:
        raise ToolTimeoutError(f"Thumbnail extraction timed out after {timeout} seconds") from e
    except FileNotFoundError as e:
        raise ThumbnailError(f"ffmpeg not found: {ffmpeg_path}") from e

    if result.returncode != 0:
        error_msg = result.stderr.strip().split("\n")[-1] if result.stderr else "Unknown error"
        raise ThumbnailError(f"Thumbnail extraction failed: {error_msg}")
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise ThumbnailError("Thumbnail extraction produced no output")
    return output_path


async def extract_thumbnail(
    input_path: Path,
    output_path: Path,
    offset: float,
    size: tuple[int, int],
    ffmpeg_path: str = "ffmpeg",
    timeout: int = 60,
) -> Path:
    return await asyncio.to_thread(run_extract_frame, input_path, output_path, offset, size, ffmpeg_path, timeout)


def preview_offsets(duration: float, count: int) -> list[float]:
    """Evenly spaced times skipping the first and last 10% of the timeline."""
    if count <= 0 or duration <= 0:
        return []
    start = duration * PREVIEW_MARGIN
    span = duration * (1 - 2 * PREVIEW_MARGIN)
    if count == 1:
        return [round(start + span / 2, 3)]
    step = span / (count - 1)
    return [round(start + i * step, 3) for i in range(count)]


async def generate_preview_images(
    input_path: Path,
    output_dir: Path,
    duration: float,
    count: int,
    size: tuple[int, int],
    ffmpeg_path: str = "ffmpeg",
    timeout: int = 60,
) -> list[Path]:
    """Extract ``count`` preview frames; failed frames are skipped and logged."""
    frames: list[Path] = []
    for index, offset in enumerate(preview_offsets(duration, count)):
        output_path = output_dir / f"{input_path.stem}_preview_{index + 1}.jpg"
        try:
            frames.append(await extract_thumbnail(input_path, output_path, offset, size, ffmpeg_path, timeout))
        except (ThumbnailError, ToolTimeoutError) as e:
            logger.warning(
                "Preview frame extraction failed",
                extra={"input": str(input_path), "offset": offset, "error": {"message": str(e)}},
            )
    return frames
