"""Media processors and the manager that routes uploads to them."""

from mediaflow.processors.base import BaseProcessor, build_storage_key, compute_fingerprint
from mediaflow.processors.document import DocumentProcessor
from mediaflow.processors.image import ImageProcessor, choose_webp_options
from mediaflow.processors.manager import ProcessorManager
from mediaflow.processors.video import VideoProcessor

__all__ = [
    "BaseProcessor",
    "build_storage_key",
    "compute_fingerprint",
    "DocumentProcessor",
    "ImageProcessor",
    "choose_webp_options",
    "ProcessorManager",
    "VideoProcessor",
]
