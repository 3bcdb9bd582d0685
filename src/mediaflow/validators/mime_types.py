"""
MIME type classification for processor routing.

Maps MIME types onto the media families the pipeline handles:
- IMAGE: raster formats (JPEG, PNG, WebP, GIF, BMP, TIFF)
- VIDEO: common containers (MP4, MOV, AVI, WMV, FLV, WebM, MKV, M4V)
- DOCUMENT: PDF, Office and OpenDocument formats, plain text, CSV, RTF
Anything else is unsupported.
"""

from typing import Dict, List, Optional

from mediaflow.models.media import MediaType

MIME_MEDIA_TYPE_MAP: Dict[str, MediaType] = {
    # Images
    "image/jpeg": MediaType.IMAGE,
    "image/jpg": MediaType.IMAGE,
    "image/png": MediaType.IMAGE,
    "image/webp": MediaType.IMAGE,
    "image/gif": MediaType.IMAGE,
    "image/bmp": MediaType.IMAGE,
    "image/tiff": MediaType.IMAGE,
    # Videos
    "video/mp4": MediaType.VIDEO,
    "video/quicktime": MediaType.VIDEO,  # .mov
    "video/x-msvideo": MediaType.VIDEO,  # .avi
    "video/x-ms-wmv": MediaType.VIDEO,  # .wmv
    "video/x-flv": MediaType.VIDEO,  # .flv
    "video/webm": MediaType.VIDEO,
    "video/x-matroska": MediaType.VIDEO,  # .mkv
    "video/x-m4v": MediaType.VIDEO,  # .m4v
    # Documents
    "application/pdf": MediaType.DOCUMENT,
    "application/msword": MediaType.DOCUMENT,  # .doc
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": MediaType.DOCUMENT,  # .docx
    "application/vnd.ms-excel": MediaType.DOCUMENT,  # .xls
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": MediaType.DOCUMENT,  # .xlsx
    "application/vnd.ms-powerpoint": MediaType.DOCUMENT,  # .ppt
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": MediaType.DOCUMENT,  # .pptx
    "application/vnd.oasis.opendocument.text": MediaType.DOCUMENT,  # .odt
    "application/vnd.oasis.opendocument.spreadsheet": MediaType.DOCUMENT,  # .ods
    "application/vnd.oasis.opendocument.presentation": MediaType.DOCUMENT,  # .odp
    "application/rtf": MediaType.DOCUMENT,
    "text/rtf": MediaType.DOCUMENT,
    "text/plain": MediaType.DOCUMENT,
    "text/csv": MediaType.DOCUMENT,
}

# Expected filename extensions for MIME types where a mismatch is meaningful
MIME_EXTENSION_MAP: Dict[str, List[str]] = {
    "image/jpeg": ["jpg", "jpeg"],
    "image/png": ["png"],
    "image/gif": ["gif"],
    "image/webp": ["webp"],
    "video/mp4": ["mp4"],
    "video/webm": ["webm"],
    "video/quicktime": ["mov"],
    "application/pdf": ["pdf"],
    "text/plain": ["txt"],
    "application/msword": ["doc"],
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ["docx"],
}


def normalize_mime_type(mime_type: str) -> str:
    """Lowercase and drop parameters ("text/plain; charset=utf-8" -> "text/plain")."""
    return mime_type.lower().split(";")[0].strip()


def get_media_type(mime_type: str) -> Optional[MediaType]:
    """
    Classify a MIME type into a media family.

    Examples:
        >>> get_media_type("image/png")
        <MediaType.IMAGE: 'IMAGE'>
        >>> get_media_type("application/zip") is None
        True
    """
    return MIME_MEDIA_TYPE_MAP.get(normalize_mime_type(mime_type))


def get_media_type_mime_types(media_type: MediaType) -> List[str]:
    """Get all MIME types for a media family."""
    return [mime for mime, family in MIME_MEDIA_TYPE_MAP.items() if family == media_type]


def get_file_extension(filename: str) -> str:
    """Lowercased extension without the dot, or "" when there is none."""
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def is_extension_matching(mime_type: str, filename: str) -> bool:
    expected = MIME_EXTENSION_MAP.get(normalize_mime_type(mime_type))
    return expected is None or get_file_extension(filename) in expected
