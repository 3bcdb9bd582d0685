"""Tests for the video processor with ffprobe and ffmpeg mocked out."""

import json
import subprocess
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mediaflow.core.exceptions import FileValidationError, UploadProcessingError
from mediaflow.models.media import MediaType, UploadOptions
from mediaflow.processors.video import CodecDetection, VideoProcessor

SUBPROCESS_RUN = "mediaflow.processors.video.probe.subprocess.run"


class FakeTools:
    """Stands in for ffprobe/ffmpeg.

    Files produced by the pipeline after transcoding probe as H.264;
    everything else probes as ``source_codec``.
    """

    def __init__(self, source_codec="hevc", duration="12.0", thumbnail_fails=False):
        self.source_codec = source_codec
        self.duration = duration
        self.thumbnail_fails = thumbnail_fails
        self.calls = []

    def probe_output(self, path):
        codec = "h264" if "video_transcoded" in path or "video_final" in path else self.source_codec
        if self.source_codec == "h264":
            codec = "h264"
        return json.dumps(
            {
                "streams": [
                    {"codec_type": "video", "codec_name": codec, "width": 1280, "height": 720, "r_frame_rate": "30/1"},
                    {"codec_type": "audio", "codec_name": "aac"},
                ],
                "format": {"duration": self.duration, "bit_rate": "2000000", "format_name": "mov,mp4"},
            }
        )

    def __call__(self, cmd, **kwargs):
        self.calls.append(cmd)
        if cmd[0] == "ffprobe":
            return subprocess.CompletedProcess(cmd, 0, stdout=self.probe_output(cmd[-1]), stderr="")
        if "-vframes" in cmd and self.thumbnail_fails:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="Output file is empty")
        Path(cmd[-1]).write_bytes(b"\x00\x00\x00\x18ftypisom" + b"\x01" * 500)
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="frame=  360 fps=90 time=00:00:12.00 speed=3x")

    @property
    def ffmpeg_calls(self):
        return [cmd for cmd in self.calls if cmd[0] == "ffmpeg"]


@pytest.fixture
def processor(mock_storage, repository, temp_files, test_settings):
    return VideoProcessor(mock_storage, repository, temp_files, test_settings)


def video_request(upload_request, **options):
    return upload_request(
        b"\x00\x00\x00\x18ftypqt  " + b"\x02" * 4000,
        filename="clip.mov",
        mime_type="video/quicktime",
        options=UploadOptions(**options),
    )


@pytest.mark.asyncio
async def test_hevc_transcoded_to_h264(processor, mock_storage, repository, temp_files, upload_request):
    tools = FakeTools(source_codec="hevc")

    with patch(SUBPROCESS_RUN, side_effect=tools):
        result = await processor.process_upload(video_request(upload_request))

    assert result.media_type == MediaType.VIDEO
    assert result.mime_type == "video/mp4"
    assert result.filename == "clip.mp4"
    assert result.storage_key.endswith("/clip.mp4")
    assert (result.width, result.height, result.duration) == (1280, 720, 12.0)
    assert result.metadata["original_codec"] == "hevc"
    assert result.metadata["codec"] == "h264"
    assert result.metadata["is_transcoded"] is True
    assert result.metadata["transcode_decision"] == "ffprobe"
    assert result.compression_applied is True
    assert result.thumbnail_url.endswith("/clip_thumbnail.jpg")

    transcode = tools.ffmpeg_calls[0]
    assert transcode[transcode.index("-c:v") + 1] == "libx264"

    record = await repository.get(result.file_id)
    assert record.original_codec == "hevc"
    assert record.video_codec == "h264"
    assert record.is_transcoded

    main_upload = mock_storage.upload_file.await_args_list[0].kwargs
    assert main_upload["content_type"] == "video/mp4"
    assert temp_files.get_stats()["total_files"] == 0


@pytest.mark.asyncio
async def test_h264_is_stored_as_is(processor, mock_storage, upload_request):
    tools = FakeTools(source_codec="h264")
    request = video_request(upload_request)

    with patch(SUBPROCESS_RUN, side_effect=tools):
        result = await processor.process_upload(request)

    assert result.metadata["is_transcoded"] is False
    assert result.mime_type == "video/quicktime"
    assert mock_storage.upload_file.await_args_list[0].kwargs["data"] == request.buffer
    # only the thumbnail frame went through ffmpeg
    assert len(tools.ffmpeg_calls) == 1
    assert "-vframes" in tools.ffmpeg_calls[0]


@pytest.mark.asyncio
async def test_force_transcode(processor, upload_request):
    tools = FakeTools(source_codec="h264")

    with patch(SUBPROCESS_RUN, side_effect=tools):
        result = await processor.process_upload(video_request(upload_request, force_transcode=True))

    assert result.metadata["is_transcoded"] is True
    assert result.metadata["transcode_decision"] == "forced"


@pytest.mark.asyncio
async def test_auto_transcode_disabled(processor, upload_request):
    tools = FakeTools(source_codec="vp9")

    with patch(SUBPROCESS_RUN, side_effect=tools):
        result = await processor.process_upload(video_request(upload_request, auto_transcode=False))

    assert result.metadata["is_transcoded"] is False
    assert result.metadata["transcode_decision"] == "disabled"


@pytest.mark.asyncio
async def test_codec_validator_decides(mock_storage, repository, temp_files, test_settings, upload_request):
    codec_validator = MagicMock()
    codec_validator.detect = AsyncMock(return_value=CodecDetection("avc1", "mp4_box", True))
    processor = VideoProcessor(mock_storage, repository, temp_files, test_settings, codec_validator=codec_validator)

    with patch(SUBPROCESS_RUN, side_effect=FakeTools(source_codec="hevc")):
        result = await processor.process_upload(video_request(upload_request))

    assert result.metadata["is_transcoded"] is False
    assert result.metadata["transcode_decision"] == "mp4_box"
    codec_validator.detect.assert_awaited_once()


@pytest.mark.asyncio
async def test_thumbnail_failure_is_not_fatal(processor, mock_storage, upload_request):
    with patch(SUBPROCESS_RUN, side_effect=FakeTools(source_codec="h264", thumbnail_fails=True)):
        result = await processor.process_upload(video_request(upload_request))

    assert result.success
    assert result.thumbnail_url is None
    assert result.thumbnail_sizes == {}
    assert mock_storage.upload_file.await_count == 1


@pytest.mark.asyncio
async def test_thumbnails_disabled(processor, mock_storage, upload_request):
    tools = FakeTools(source_codec="h264")

    with patch(SUBPROCESS_RUN, side_effect=tools):
        result = await processor.process_upload(video_request(upload_request, generate_thumbnails=False))

    assert result.thumbnail_url is None
    assert tools.ffmpeg_calls == []


@pytest.mark.asyncio
async def test_rejects_long_video(processor, mock_storage, upload_request):
    with patch(SUBPROCESS_RUN, side_effect=FakeTools(duration="7200")):
        with pytest.raises(UploadProcessingError, match="Video is too long: 7200s, maximum 3600s"):
            await processor.process_upload(video_request(upload_request))

    mock_storage.upload_file.assert_not_called()


@pytest.mark.asyncio
async def test_zero_duration_is_corrupt(processor, upload_request):
    with patch(SUBPROCESS_RUN, side_effect=FakeTools(duration="0")):
        with pytest.raises(FileValidationError, match="duration is zero"):
            await processor.validate_specific_file(video_request(upload_request))


@pytest.mark.asyncio
async def test_unreadable_video_is_a_validation_error(processor, temp_files, upload_request):
    failed = subprocess.CompletedProcess([], 1, stdout="", stderr="Invalid data found when processing input")

    with patch(SUBPROCESS_RUN, return_value=failed):
        with pytest.raises(FileValidationError, match="corrupt or unreadable"):
            await processor.validate_specific_file(video_request(upload_request))

    assert temp_files.get_stats()["total_files"] == 0


@pytest.mark.asyncio
async def test_rejects_oversized_video(mock_storage, repository, temp_files, test_settings, upload_request):
    test_settings.VIDEO_MAX_SIZE_MB = 0
    processor = VideoProcessor(mock_storage, repository, temp_files, test_settings)

    with patch(SUBPROCESS_RUN) as run:
        with pytest.raises(FileValidationError, match="Video file too large"):
            await processor.validate_specific_file(video_request(upload_request))

    run.assert_not_called()


@pytest.mark.asyncio
async def test_each_buffer_is_probed_once_per_upload(processor, upload_request):
    tools = FakeTools(source_codec="hevc")

    with patch(SUBPROCESS_RUN, side_effect=tools):
        await processor.process_upload(video_request(upload_request))

    probed = [cmd[-1] for cmd in tools.calls if cmd[0] == "ffprobe"]
    # the source once during validation, the transcoded output once after encoding
    assert len(probed) == 2
    assert "video_validate" in probed[0]
    assert "video_transcoded" in probed[1]


@pytest.mark.asyncio
async def test_compatible_video_is_not_respooled(processor, temp_files, upload_request):
    tools = FakeTools(source_codec="h264")
    spooled = []
    original_spool = processor._spool

    async def recording_spool(data, prefix, filename, session_id):
        spooled.append(prefix)
        return await original_spool(data, prefix, filename, session_id)

    with patch(SUBPROCESS_RUN, side_effect=tools), patch.object(processor, "_spool", side_effect=recording_spool):
        await processor.process_upload(video_request(upload_request, generate_thumbnails=False))

    assert spooled == ["video_validate"]
    assert len([cmd for cmd in tools.calls if cmd[0] == "ffprobe"]) == 1
    assert temp_files.get_stats()["total_files"] == 0
