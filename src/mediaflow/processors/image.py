"""Image processor: WebP normalisation, resize-to-fit and thumbnails (Pillow)."""

import asyncio
import io
import logging
from dataclasses import replace
from pathlib import PurePosixPath
from typing import NamedTuple, Optional

from PIL import Image, ImageOps, ImageSequence, UnidentifiedImageError

from mediaflow.core.config import Settings
from mediaflow.core.exceptions import FileValidationError
from mediaflow.models.media import MediaType, PostprocessResult, PreprocessResult, UploadRequest
from mediaflow.processors.base import BaseProcessor, StoredUpload, derive_key
from mediaflow.validators.mime_types import normalize_mime_type

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/bmp",
    "image/tiff",
)

# Pillow format names accepted after parsing; MPO is how Pillow reports some camera JPEGs
SUPPORTED_FORMATS = {"JPEG", "MPO", "PNG", "WEBP", "GIF", "BMP", "TIFF"}

ALPHA_MODES = ("RGBA", "LA", "PA", "RGBa", "La")


class ImageInfo(NamedTuple):
    format: str
    width: int
    height: int
    mode: str
    has_alpha: bool
    frame_count: int


class WebPOptions(NamedTuple):
    lossless: bool
    quality: int
    reason: str


def read_image_info(data: bytes) -> ImageInfo:
    """Parse the header only; pixel data is not decoded."""
    with Image.open(io.BytesIO(data)) as img:
        has_alpha = img.mode in ALPHA_MODES or (img.mode == "P" and "transparency" in img.info)
        return ImageInfo(
            format=img.format or "",
            width=img.width,
            height=img.height,
            mode=img.mode,
            has_alpha=has_alpha,
            frame_count=getattr(img, "n_frames", 1),
        )


def choose_webp_options(
    mime_type: str,
    has_alpha: bool,
    frame_count: int,
    byte_length: int,
    settings: Settings,
) -> WebPOptions:
    """WebP encoding decision table, first match wins."""
    if normalize_mime_type(mime_type) == "image/png" and has_alpha:
        return WebPOptions(lossless=True, quality=100, reason="png_alpha")
    if frame_count > 1:
        return WebPOptions(lossless=False, quality=settings.WEBP_ANIMATED_QUALITY, reason="animated")
    if byte_length > settings.webp_large_file_threshold_bytes:
        return WebPOptions(lossless=False, quality=settings.WEBP_LARGE_LOSSY_QUALITY, reason="large_file")
    return WebPOptions(lossless=False, quality=settings.WEBP_LOSSY_QUALITY, reason="standard")


def fit_within(width: int, height: int, max_width: int, max_height: int) -> tuple[int, int]:
    """Scale down to fit the box, keeping aspect ratio. Never upscales."""
    if width <= max_width and height <= max_height:
        return width, height
    ratio = min(max_width / width, max_height / height)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def _normalize_mode(img: Image.Image, keep_alpha: bool) -> Image.Image:
    if keep_alpha:
        return img if img.mode == "RGBA" else img.convert("RGBA")
    return img if img.mode == "RGB" else img.convert("RGB")


def encode_webp(data: bytes, options: WebPOptions, target: tuple[int, int], effort: int) -> bytes:
    """Re-encode ``data`` as WebP at ``target`` size. Blocking."""
    out = io.BytesIO()
    with Image.open(io.BytesIO(data)) as img:
        has_alpha = img.mode in ALPHA_MODES or (img.mode == "P" and "transparency" in img.info)
        frame_count = getattr(img, "n_frames", 1)

        if frame_count > 1:
            frames = []
            for frame in ImageSequence.Iterator(img):
                converted = frame.convert("RGBA")
                if converted.size != target:
                    converted = converted.resize(target, Image.Resampling.LANCZOS)
                frames.append(converted)
            frames[0].save(
                out,
                format="WEBP",
                save_all=True,
                append_images=frames[1:],
                quality=options.quality,
                lossless=options.lossless,
                method=effort,
                loop=img.info.get("loop", 0),
                duration=img.info.get("duration", 100),
            )
            return out.getvalue()

        processed = ImageOps.exif_transpose(img)
        processed = _normalize_mode(processed, has_alpha)
        if processed.size != target:
            processed = processed.resize(target, Image.Resampling.LANCZOS)
        processed.save(
            out,
            format="WEBP",
            quality=options.quality,
            lossless=options.lossless,
            method=effort,
        )
    return out.getvalue()


def make_thumbnail(data: bytes, size: int, output_format: str, quality: int) -> bytes:
    """Square cover-fit thumbnail, centre-cropped. Blocking."""
    out = io.BytesIO()
    with Image.open(io.BytesIO(data)) as img:
        thumb = ImageOps.exif_transpose(img)
        thumb = ImageOps.fit(thumb, (size, size), Image.Resampling.LANCZOS, centering=(0.5, 0.5))

        if output_format == "JPEG":
            # JPEG has no alpha: flatten onto white
            if thumb.mode in ("RGBA", "LA", "P"):
                if thumb.mode == "P":
                    thumb = thumb.convert("RGBA")
                background = Image.new("RGB", thumb.size, (255, 255, 255))
                background.paste(thumb, mask=thumb.split()[-1])
                thumb = background
            elif thumb.mode != "RGB":
                thumb = thumb.convert("RGB")
            thumb.save(out, format="JPEG", quality=quality, optimize=True)
        else:
            thumb = _normalize_mode(thumb, thumb.mode in ALPHA_MODES)
            thumb.save(out, format="WEBP", quality=quality)
    return out.getvalue()


def webp_filename(filename: str) -> str:
    return str(PurePosixPath(filename).with_suffix(".webp"))


class ImageProcessor(BaseProcessor):
    name = "image"
    media_type = MediaType.IMAGE
    default_mime_types = IMAGE_MIME_TYPES

    async def _read_info(self, data: bytes) -> ImageInfo:
        try:
            return await asyncio.to_thread(read_image_info, data)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise FileValidationError(f"Invalid image file: {e}") from e

    async def validate_specific_file(self, request: UploadRequest, session_id: Optional[str] = None) -> None:
        info = await self._read_info(request.buffer)

        if info.format.upper() not in SUPPORTED_FORMATS:
            raise FileValidationError(f"Unsupported image format: {info.format or 'unknown'}")

        if info.width <= 0 or info.height <= 0:
            raise FileValidationError("Unable to read image dimensions")

        max_dimension = self.settings.IMAGE_MAX_DIMENSION
        if info.width > max_dimension or info.height > max_dimension:
            raise FileValidationError(
                f"Image dimensions exceed limit: {info.width}x{info.height}, "
                f"maximum {max_dimension}x{max_dimension}px"
            )

    async def preprocess_file(self, request: UploadRequest, session_id: Optional[str] = None) -> PreprocessResult:
        info = await self._read_info(request.buffer)
        metadata = {
            "original_format": info.format,
            "original_width": info.width,
            "original_height": info.height,
            "original_size": request.size,
            "has_alpha": info.has_alpha,
            "frame_count": info.frame_count,
        }

        if not self.settings.ENABLE_COMPRESSION:
            metadata.update(width=info.width, height=info.height, processed_size=request.size, compression_applied=False)
            return PreprocessResult(request=request, metadata=metadata)

        max_width = request.options.max_width or self.settings.IMAGE_MAX_WIDTH
        max_height = request.options.max_height or self.settings.IMAGE_MAX_HEIGHT
        target = fit_within(info.width, info.height, max_width, max_height)
        resized = target != (info.width, info.height)

        is_webp = normalize_mime_type(request.mime_type) == "image/webp"
        if is_webp and not resized:
            metadata.update(width=info.width, height=info.height, processed_size=request.size, compression_applied=False)
            return PreprocessResult(request=request, metadata=metadata)

        options = choose_webp_options(request.mime_type, info.has_alpha, info.frame_count, request.size, self.settings)
        if request.options.quality and not options.lossless:
            options = options._replace(quality=request.options.quality)

        webp_bytes = await asyncio.to_thread(encode_webp, request.buffer, options, target, self.settings.WEBP_EFFORT)

        compression_ratio = round((request.size - len(webp_bytes)) / request.size * 100, 2)
        metadata.update(
            width=target[0],
            height=target[1],
            resized=resized,
            processed_size=len(webp_bytes),
            compression_applied=True,
            compression_ratio=compression_ratio,
            webp_lossless=options.lossless,
            webp_quality=options.quality,
            webp_reason=options.reason,
        )
        logger.info(
            "Image converted to WebP",
            extra={
                "context": {
                    "filename": request.filename,
                    "from": f"{info.width}x{info.height}",
                    "to": f"{target[0]}x{target[1]}",
                    "webp": options.reason,
                },
                "metrics": {
                    "originalBytes": request.size,
                    "processedBytes": len(webp_bytes),
                    "compressionRatio": compression_ratio,
                },
            },
        )

        converted = replace(
            request,
            buffer=webp_bytes,
            filename=webp_filename(request.filename),
            mime_type="image/webp",
        )
        return PreprocessResult(request=converted, metadata=metadata)

    async def post_process_file(
        self,
        request: UploadRequest,
        upload: StoredUpload,
        session_id: Optional[str] = None,
    ) -> PostprocessResult:
        info = await self._read_info(request.buffer)

        thumbnails: dict[str, str] = {}
        if request.options.generate_thumbnails and self.settings.ENABLE_THUMBNAIL_GENERATION:
            thumbnails = await self.generate_thumbnails(request, upload.storage_key)

        thumbnail_url = thumbnails.get("medium") or next(iter(thumbnails.values()), None)
        return PostprocessResult(
            width=info.width,
            height=info.height,
            thumbnail_url=thumbnail_url,
            thumbnail_sizes=thumbnails,
            metadata={"format": info.format, "thumbnail_count": len(thumbnails)},
        )

    async def generate_thumbnails(self, request: UploadRequest, storage_key: str) -> dict[str, str]:
        """Upload every configured size; a failed size is logged and skipped."""
        if normalize_mime_type(request.mime_type) == "image/webp":
            output_format, extension, content_type = "WEBP", "webp", "image/webp"
        else:
            output_format, extension, content_type = "JPEG", "jpg", "image/jpeg"

        urls: dict[str, str] = {}
        for name, size in self.settings.thumbnail_sizes.items():
            thumb_key = derive_key(storage_key, f"_{name}", extension)
            try:
                data = await asyncio.to_thread(
                    make_thumbnail, request.buffer, size, output_format, self.settings.THUMBNAIL_QUALITY
                )
                stored = await self.storage.upload_file(
                    key=thumb_key,
                    data=data,
                    content_type=content_type,
                    size=len(data),
                    metadata={"thumbnailSize": name, "parent": storage_key},
                )
                urls[name] = stored.url
            except Exception as e:
                logger.warning(
                    "Thumbnail generation failed",
                    extra={
                        "context": {"filename": request.filename, "size_name": name, "object_name": thumb_key},
                        "error": {"type": type(e).__name__, "message": str(e)},
                    },
                )
        return urls
