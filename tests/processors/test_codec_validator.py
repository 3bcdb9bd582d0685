"""Tests for the strict H.264 detection cascade."""

import struct
from unittest.mock import AsyncMock, patch

import pytest

from mediaflow.core.exceptions import ProbeError, ToolTimeoutError
from mediaflow.processors.video.codec_validator import (
    CodecValidator,
    detect_codec_from_bytes,
    find_mp4_video_codec,
    is_codec_compatible,
)
from mediaflow.processors.video.probe import VideoMetadata

PROBE_TARGET = "mediaflow.processors.video.codec_validator.probe_video"


def box(box_type: bytes, body: bytes = b"") -> bytes:
    return struct.pack(">I", 8 + len(body)) + box_type + body


def track(handler: bytes, fourcc: bytes) -> bytes:
    hdlr = box(b"hdlr", b"\x00" * 8 + handler + b"\x00" * 12 + b"\x00")
    entry = struct.pack(">I", 16) + fourcc + b"\x00" * 8
    stsd = box(b"stsd", b"\x00" * 4 + struct.pack(">I", 1) + entry)
    minf = box(b"minf", box(b"stbl", stsd))
    return box(b"trak", box(b"mdia", hdlr + minf))


def mp4(*tracks: bytes) -> bytes:
    ftyp = box(b"ftyp", b"isom" + b"\x00\x00\x02\x00" + b"isomavc1")
    return ftyp + box(b"moov", box(b"mvhd", b"\x00" * 100) + b"".join(tracks)) + box(b"mdat", b"\x00" * 64)


def metadata(codec: str) -> VideoMetadata:
    return VideoMetadata(codec=codec, width=640, height=360, duration=5.0, bitrate=800_000, framerate=25.0, format="mp4")


@pytest.fixture
def validator(temp_files):
    return CodecValidator(temp_files, max_attempts=3, retry_wait_seconds=0)


@pytest.mark.parametrize(
    "codec,expected",
    [
        ("h264", True),
        ("AVC1", True),
        (" x264 ", True),
        ("hevc", False),
        ("h.264", False),
        ("avc", False),
        ("", False),
        (None, False),
    ],
)
def test_is_codec_compatible(codec, expected):
    assert is_codec_compatible(codec) is expected


def test_find_codec_in_video_track():
    assert find_mp4_video_codec(mp4(track(b"vide", b"hvc1"))) == "hvc1"
    assert find_mp4_video_codec(mp4(track(b"vide", b"avc1"))) == "avc1"


def test_audio_track_is_skipped():
    data = mp4(track(b"soun", b"mp4a"), track(b"vide", b"vp09"))

    assert find_mp4_video_codec(data) == "vp09"


def test_no_moov_or_truncated_box():
    assert find_mp4_video_codec(b"\x00\x00\x00\x18ftypisom") is None
    truncated = mp4(track(b"vide", b"avc1"))[:60]
    assert find_mp4_video_codec(truncated) is None
    assert find_mp4_video_codec(b"") is None


def test_byte_heuristic_prefers_non_h264():
    assert detect_codec_from_bytes(b"....avcC....hvcC....") == "hevc"
    assert detect_codec_from_bytes(b"....avcC....") == "avc1"
    assert detect_codec_from_bytes(b"\x00" * 64) is None


def test_byte_heuristic_scans_tail():
    data = b"\x00" * (2 * 1024 * 1024) + b"av01"

    assert detect_codec_from_bytes(data) == "av1"


@pytest.mark.asyncio
async def test_ffprobe_result_wins(validator, temp_files):
    with patch(PROBE_TARGET, AsyncMock(return_value=metadata("h264"))) as probe:
        detection = await validator.detect(mp4(track(b"vide", b"hvc1")), "clip.mp4")

    assert detection.codec == "h264"
    assert detection.method == "ffprobe"
    assert not detection.needs_transcoding
    probe.assert_awaited_once()
    assert temp_files.get_stats()["total_files"] == 0


@pytest.mark.asyncio
async def test_ffprobe_retried_then_box_parsing(validator, temp_files):
    with patch(PROBE_TARGET, AsyncMock(side_effect=ProbeError("invalid data"))) as probe:
        detection = await validator.detect(mp4(track(b"vide", b"hvc1")), "clip.mp4")

    assert probe.await_count == 3
    assert detection.method == "mp4_box"
    assert detection.codec == "hvc1"
    assert detection.needs_transcoding
    assert temp_files.get_stats()["total_files"] == 0


@pytest.mark.asyncio
async def test_ffprobe_recovers_on_retry(validator):
    probe = AsyncMock(side_effect=[ToolTimeoutError("slow"), metadata("hevc")])

    with patch(PROBE_TARGET, probe):
        detection = await validator.detect(b"\x00" * 32, "clip.mkv")

    assert probe.await_count == 2
    assert detection.method == "ffprobe"
    assert detection.needs_transcoding


@pytest.mark.asyncio
async def test_byte_heuristic_fallback(validator):
    with patch(PROBE_TARGET, AsyncMock(side_effect=ProbeError("no streams"))):
        detection = await validator.detect(b"\x1a\x45\xdf\xa3 ... avcC ...", "clip.webm")

    assert detection.method == "byte_heuristic"
    assert detection.codec == "avc1"
    assert detection.is_compatible


@pytest.mark.asyncio
async def test_unknown_codec_defaults_to_transcoding(validator):
    with patch(PROBE_TARGET, AsyncMock(side_effect=ProbeError("no streams"))):
        detection = await validator.detect(b"\x00" * 32, "clip.avi")

    assert detection.codec is None
    assert detection.method == "default"
    assert detection.needs_transcoding
