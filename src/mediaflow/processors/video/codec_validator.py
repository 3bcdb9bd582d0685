"""Strict H.264 detection with a cascade of fallbacks.

Detection order: ffprobe (retried), MP4 box parsing, raw byte
signatures, and finally a "needs transcoding" default. Only an exact
H.264 codec name counts as compatible; anything unclear is transcoded.
"""

import logging
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple, Optional

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from mediaflow.core.exceptions import ProbeError, ToolTimeoutError
from mediaflow.processors.video.probe import probe_video
from mediaflow.storage.temp_files import TempFileManager

logger = logging.getLogger(__name__)

H264_CODECS = frozenset({"h264", "avc1", "x264"})

# Non-H.264 signatures are checked first so mixed matches resolve toward transcoding
BYTE_SIGNATURES = (
    (b"hvc1", "hevc"),
    (b"hev1", "hevc"),
    (b"hvcC", "hevc"),
    (b"vp09", "vp9"),
    (b"av01", "av1"),
    (b"mp4v", "mpeg4"),
    (b"avc1", "avc1"),
    (b"avcC", "avc1"),
)
HEURISTIC_SCAN_BYTES = 1024 * 1024


def is_codec_compatible(codec: Optional[str]) -> bool:
    """True iff ``codec`` is exactly one of the H.264 names, ignoring case."""
    return bool(codec) and codec.strip().lower() in H264_CODECS


class CodecDetection(NamedTuple):
    codec: Optional[str]
    method: str
    is_compatible: bool

    @property
    def needs_transcoding(self) -> bool:
        return not self.is_compatible


def _iter_boxes(data: bytes, start: int, end: int) -> Iterator[tuple[bytes, int, int]]:
    """Yield (type, body_start, body_end) for each ISO-BMFF box in [start, end)."""
    offset = start
    while offset + 8 <= end:
        size = int.from_bytes(data[offset:offset + 4], "big")
        box_type = data[offset + 4:offset + 8]
        header = 8
        if size == 1:
            if offset + 16 > end:
                return
            size = int.from_bytes(data[offset + 8:offset + 16], "big")
            header = 16
        elif size == 0:
            size = end - offset
        if size < header or offset + size > end:
            return
        yield box_type, offset + header, offset + size
        offset += size


def _children(data: bytes, ranges: Iterable[tuple[int, int]], box_type: bytes) -> Iterator[tuple[int, int]]:
    for start, end in ranges:
        for found_type, body_start, body_end in _iter_boxes(data, start, end):
            if found_type == box_type:
                yield body_start, body_end


def _handler_type(data: bytes, mdia: tuple[int, int]) -> Optional[bytes]:
    for start, end in _children(data, [mdia], b"hdlr"):
        # version/flags (4) + pre_defined (4) + handler_type (4)
        if start + 12 <= end:
            return data[start + 8:start + 12]
    return None


def find_mp4_video_codec(data: bytes) -> Optional[str]:
    """Sample entry fourcc of the first video track (moov/trak/mdia/minf/stbl/stsd)."""
    for trak in _children(data, _children(data, [(0, len(data))], b"moov"), b"trak"):
        for mdia in _children(data, [trak], b"mdia"):
            if _handler_type(data, mdia) != b"vide":
                continue
            stbls = _children(data, _children(data, [mdia], b"minf"), b"stbl")
            for start, end in _children(data, stbls, b"stsd"):
                # version/flags (4) + entry_count (4), then size (4) + format (4)
                entry = start + 8
                if entry + 8 <= end:
                    return data[entry + 4:entry + 8].decode("latin-1").strip() or None
    return None


def detect_codec_from_bytes(data: bytes) -> Optional[str]:
    """Last-resort signature scan over the head and tail of the buffer."""
    window = data[:HEURISTIC_SCAN_BYTES]
    if len(data) > HEURISTIC_SCAN_BYTES:
        window += data[-HEURISTIC_SCAN_BYTES:]
    for signature, codec in BYTE_SIGNATURES:
        if signature in window:
            return codec
    return None


class CodecValidator:
    """Decides whether a video buffer must be transcoded to H.264."""

    def __init__(
        self,
        temp_files: TempFileManager,
        ffprobe_path: str = "ffprobe",
        probe_timeout: int = 30,
        max_attempts: int = 3,
        retry_wait_seconds: float = 0.5,
    ):
        self.temp_files = temp_files
        self.ffprobe_path = ffprobe_path
        self.probe_timeout = probe_timeout
        self.max_attempts = max_attempts
        self.retry_wait_seconds = retry_wait_seconds

    async def detect(
        self,
        data: bytes,
        filename: str = "video.mp4",
        session_id: Optional[str] = None,
    ) -> CodecDetection:
        codec = await self._detect_with_ffprobe(data, filename, session_id)
        if codec:
            return CodecDetection(codec, "ffprobe", is_codec_compatible(codec))

        codec = find_mp4_video_codec(data)
        if codec:
            return CodecDetection(codec, "mp4_box", is_codec_compatible(codec))

        codec = detect_codec_from_bytes(data)
        if codec:
            return CodecDetection(codec, "byte_heuristic", is_codec_compatible(codec))

        logger.warning(
            "Video codec could not be determined, assuming transcoding is needed",
            extra={"session_id": session_id, "context": {"filename": filename}},
        )
        return CodecDetection(None, "default", False)

    async def _detect_with_ffprobe(self, data: bytes, filename: str, session_id: Optional[str]) -> Optional[str]:
        suffix = Path(filename).suffix or ".mp4"
        path = await self.temp_files.create_temp_file(
            prefix="codec_check", extension=suffix, purpose="codec_validation", session_id=session_id
        )
        try:
            await self.temp_files.write_temp_file(path, data, purpose="codec_validation", session_id=session_id)
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.retry_wait_seconds, max=4),
                retry=retry_if_exception_type((ProbeError, ToolTimeoutError)),
                reraise=True,
            ):
                with attempt:
                    metadata = await probe_video(path, self.ffprobe_path, self.probe_timeout)
            return metadata.codec
        except (ProbeError, ToolTimeoutError) as e:
            logger.warning(
                "ffprobe codec detection failed, falling back",
                extra={"session_id": session_id, "context": {"filename": filename}, "error": {"message": str(e)}},
            )
            return None
        finally:
            await self.temp_files.cleanup_file(path)
