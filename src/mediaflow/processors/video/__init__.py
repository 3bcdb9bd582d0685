"""
Video processing

Probing with ffprobe, H.264/AAC normalisation with ffmpeg, thumbnail and
preview extraction, and the strict codec compatibility cascade.
"""

from mediaflow.processors.video.codec_validator import CodecDetection, CodecValidator, is_codec_compatible
from mediaflow.processors.video.encoder import H264Config, calculate_output_resolution, parse_progress
from mediaflow.processors.video.probe import VideoMetadata, probe_video
from mediaflow.processors.video.processor import VideoProcessor
from mediaflow.processors.video.thumbnails import generate_preview_images

__all__ = [
    "CodecDetection",
    "CodecValidator",
    "is_codec_compatible",
    "H264Config",
    "calculate_output_resolution",
    "parse_progress",
    "VideoMetadata",
    "probe_video",
    "VideoProcessor",
    "generate_preview_images",
]
