"""Document processor: signature validation and advisory metadata."""

import asyncio
import io
import logging
from typing import Any, Callable, Dict, Optional

import pdfplumber
from docx import Document as DocxDocument
from odf import text as odf_text
from odf.opendocument import load as load_odf
from openpyxl import load_workbook
from pptx import Presentation
from striprtf.striprtf import rtf_to_text

from mediaflow.core.config import MB
from mediaflow.core.exceptions import FileValidationError
from mediaflow.models.media import MediaType, PostprocessResult, PreprocessResult, UploadRequest
from mediaflow.processors.base import BaseProcessor, StoredUpload
from mediaflow.validators.mime_types import normalize_mime_type

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"
ZIP_SIGNATURE = b"PK\x03\x04"
OLE_SIGNATURE = bytes.fromhex("D0CF11E0A1B11AE1")
RTF_SIGNATURE = b"{\\rtf"

OOXML_TYPES = (
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
)
ODF_TYPES = (
    "application/vnd.oasis.opendocument.text",
    "application/vnd.oasis.opendocument.spreadsheet",
    "application/vnd.oasis.opendocument.presentation",
)
OLE_TYPES = ("application/msword", "application/vnd.ms-excel", "application/vnd.ms-powerpoint")
RTF_TYPES = ("application/rtf", "text/rtf")
TEXT_TYPES = ("text/plain", "text/csv")

DOCUMENT_MIME_TYPES = ("application/pdf",) + OOXML_TYPES + ODF_TYPES + OLE_TYPES + RTF_TYPES + TEXT_TYPES

TEXT_SAMPLE_BYTES = 8192
MAX_NON_PRINTABLE_RATIO = 0.1
_ALLOWED_CONTROL_BYTES = frozenset(b"\t\n\r\f\b")


def non_printable_ratio(data: bytes) -> float:
    """Share of control bytes in the sample; high values mean binary content."""
    sample = data[:TEXT_SAMPLE_BYTES]
    if not sample:
        return 0.0
    bad = sum(1 for b in sample if (b < 32 and b not in _ALLOWED_CONTROL_BYTES) or b == 127)
    return bad / len(sample)


def has_valid_signature(data: bytes, mime_type: str) -> bool:
    mime_type = normalize_mime_type(mime_type)
    if mime_type == "application/pdf":
        return data[:4] == PDF_SIGNATURE
    if mime_type in OOXML_TYPES or mime_type in ODF_TYPES:
        return data[:4] == ZIP_SIGNATURE
    if mime_type in OLE_TYPES:
        return data[:8] == OLE_SIGNATURE
    if mime_type in RTF_TYPES:
        return data.lstrip()[:5] == RTF_SIGNATURE
    if mime_type in TEXT_TYPES:
        return non_printable_ratio(data) <= MAX_NON_PRINTABLE_RATIO
    return False


def detect_text_encoding(data: bytes) -> str:
    if data.startswith(b"\xef\xbb\xbf"):
        return "utf-8-sig"
    if data.startswith((b"\xff\xfe", b"\xfe\xff")):
        return "utf-16"
    try:
        data.decode("utf-8")
        return "utf-8"
    except UnicodeDecodeError:
        return "latin-1"


def security_level(data: bytes, mime_type: str) -> str:
    """Coarse advisory risk by format family."""
    mime_type = normalize_mime_type(mime_type)
    if mime_type == "application/pdf":
        return "high" if any(marker in data for marker in (b"/JavaScript", b"/JS", b"/Launch")) else "medium"
    if mime_type in OLE_TYPES:
        return "high"  # legacy Office containers can carry macros
    if mime_type in OOXML_TYPES:
        return "high" if b"vbaProject.bin" in data else "medium"
    if mime_type in ODF_TYPES:
        return "medium"
    if mime_type in RTF_TYPES:
        return "medium" if b"\\object" in data else "low"
    return "low"


def _pdf_stats(data: bytes) -> Dict[str, Any]:
    with pdfplumber.open(io.BytesIO(data)) as pdf:
        return {"page_count": len(pdf.pages)}


def _docx_stats(data: bytes) -> Dict[str, Any]:
    doc = DocxDocument(io.BytesIO(data))
    paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    return {
        "paragraph_count": len(paragraphs),
        "word_count": sum(len(p.split()) for p in paragraphs),
    }


def _xlsx_stats(data: bytes) -> Dict[str, Any]:
    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        return {"sheet_count": len(workbook.sheetnames), "page_count": len(workbook.sheetnames)}
    finally:
        workbook.close()


def _pptx_stats(data: bytes) -> Dict[str, Any]:
    prs = Presentation(io.BytesIO(data))
    return {"slide_count": len(prs.slides), "page_count": len(prs.slides)}


def _odf_stats(data: bytes) -> Dict[str, Any]:
    doc = load_odf(io.BytesIO(data))
    return {"paragraph_count": len(doc.getElementsByType(odf_text.P))}


def _text_stats(data: bytes) -> Dict[str, Any]:
    encoding = detect_text_encoding(data)
    text = data.decode(encoding, errors="replace")
    return {
        "encoding": encoding,
        "line_count": len(text.splitlines()),
        "word_count": len(text.split()),
    }


def _rtf_stats(data: bytes) -> Dict[str, Any]:
    text = rtf_to_text(data.decode("utf-8", errors="ignore"))
    return {
        "encoding": "rtf",
        "line_count": len(text.splitlines()),
        "word_count": len(text.split()),
    }


STATS_EXTRACTORS: Dict[str, Callable[[bytes], Dict[str, Any]]] = {
    "application/pdf": _pdf_stats,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": _docx_stats,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": _xlsx_stats,
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": _pptx_stats,
    "application/vnd.oasis.opendocument.text": _odf_stats,
    "application/vnd.oasis.opendocument.spreadsheet": _odf_stats,
    "application/vnd.oasis.opendocument.presentation": _odf_stats,
    "application/rtf": _rtf_stats,
    "text/rtf": _rtf_stats,
    "text/plain": _text_stats,
    "text/csv": _text_stats,
}


def extract_document_metadata(data: bytes, mime_type: str) -> Dict[str, Any]:
    """Best-effort descriptive metadata. Never raises."""
    mime_type = normalize_mime_type(mime_type)
    metadata: Dict[str, Any] = {
        "security_level": security_level(data, mime_type),
        "encoding": "binary",
    }
    extractor = STATS_EXTRACTORS.get(mime_type)
    if extractor is None:
        return metadata
    try:
        metadata.update(extractor(data))
    except Exception as e:
        logger.warning(
            "Document metadata extraction failed",
            extra={"mime_type": mime_type, "error": {"type": type(e).__name__, "message": str(e)}},
        )
        metadata["metadata_error"] = str(e)
    return metadata


class DocumentProcessor(BaseProcessor):
    name = "document"
    media_type = MediaType.DOCUMENT
    default_mime_types = DOCUMENT_MIME_TYPES

    async def validate_specific_file(self, request: UploadRequest, session_id: Optional[str] = None) -> None:
        max_size = self.settings.document_max_size_bytes
        if request.size > max_size:
            raise FileValidationError(
                f"Document too large: {round(request.size / MB, 1)}MB, maximum {round(max_size / MB)}MB"
            )
        if not has_valid_signature(request.buffer, request.mime_type):
            raise FileValidationError(f"File content does not match declared type {request.mime_type}")

    async def preprocess_file(self, request: UploadRequest, session_id: Optional[str] = None) -> PreprocessResult:
        return PreprocessResult(request=request, metadata={"original_size": request.size, "processed_size": request.size})

    async def post_process_file(
        self,
        request: UploadRequest,
        upload: StoredUpload,
        session_id: Optional[str] = None,
    ) -> PostprocessResult:
        metadata = await asyncio.to_thread(extract_document_metadata, request.buffer, request.mime_type)
        return PostprocessResult(metadata=metadata)
