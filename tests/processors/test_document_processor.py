"""Tests for document signature checks and metadata extraction."""

import io

import pytest
from docx import Document
from openpyxl import Workbook
from pptx import Presentation

from mediaflow.core.exceptions import FileValidationError
from mediaflow.models.media import MediaType
from mediaflow.processors.document import (
    OLE_SIGNATURE,
    DocumentProcessor,
    detect_text_encoding,
    extract_document_metadata,
    has_valid_signature,
    non_printable_ratio,
    security_level,
)

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX = "application/vnd.openxmlformats-officedocument.presentationml.presentation"


@pytest.fixture
def processor(mock_storage, repository, temp_files, test_settings):
    return DocumentProcessor(mock_storage, repository, temp_files, test_settings)


def make_docx(*paragraphs):
    doc = Document()
    for text in paragraphs:
        doc.add_paragraph(text)
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def make_xlsx(sheets=2):
    workbook = Workbook()
    for index in range(1, sheets):
        workbook.create_sheet(f"Sheet{index + 1}")
    buffer = io.BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


def make_pptx(slides=2):
    prs = Presentation()
    for _ in range(slides):
        prs.slides.add_slide(prs.slide_layouts[6])
    buffer = io.BytesIO()
    prs.save(buffer)
    return buffer.getvalue()


@pytest.mark.parametrize(
    "data,mime_type,expected",
    [
        (b"%PDF-1.7\n...", "application/pdf", True),
        (b"hello", "application/pdf", False),
        (b"PK\x03\x04rest", DOCX, True),
        (b"PK\x03\x04rest", "application/vnd.oasis.opendocument.text", True),
        (OLE_SIGNATURE + b"rest", "application/msword", True),
        (b"PK\x03\x04rest", "application/msword", False),
        (b"  {\\rtf1 hi}", "application/rtf", True),
        (b"plain words, nothing more\n", "text/plain", True),
        (b"a,b\n1,2\n", "text/csv; charset=utf-8", True),
        (b"\x00\x01\x02\x03" * 50, "text/plain", False),
        (b"anything", "application/zip", False),
    ],
)
def test_has_valid_signature(data, mime_type, expected):
    assert has_valid_signature(data, mime_type) is expected


def test_non_printable_ratio():
    assert non_printable_ratio(b"") == 0.0
    assert non_printable_ratio(b"tab\tand\nnewline\r\n") == 0.0
    assert non_printable_ratio(b"\x00" * 5 + b"a" * 5) == 0.5


@pytest.mark.parametrize(
    "data,expected",
    [
        (b"\xef\xbb\xbfhello", "utf-8-sig"),
        (b"\xff\xfeh\x00i\x00", "utf-16"),
        ("café".encode("utf-8"), "utf-8"),
        (b"caf\xe9", "latin-1"),
    ],
)
def test_detect_text_encoding(data, expected):
    assert detect_text_encoding(data) == expected


@pytest.mark.parametrize(
    "data,mime_type,expected",
    [
        (b"%PDF-1.4 /OpenAction /JavaScript", "application/pdf", "high"),
        (b"%PDF-1.4 plain", "application/pdf", "medium"),
        (OLE_SIGNATURE, "application/vnd.ms-excel", "high"),
        (b"PK\x03\x04 word/vbaProject.bin", DOCX, "high"),
        (b"PK\x03\x04 word/document.xml", DOCX, "medium"),
        (b"PK\x03\x04", "application/vnd.oasis.opendocument.spreadsheet", "medium"),
        (b"{\\rtf1 {\\object x}}", "text/rtf", "medium"),
        (b"{\\rtf1 hi}", "text/rtf", "low"),
        (b"hello", "text/plain", "low"),
    ],
)
def test_security_level(data, mime_type, expected):
    assert security_level(data, mime_type) == expected


def test_text_metadata():
    metadata = extract_document_metadata(b"hello world\nsecond line\n", "text/plain")

    assert metadata == {"security_level": "low", "encoding": "utf-8", "line_count": 2, "word_count": 4}


def test_rtf_metadata():
    metadata = extract_document_metadata(b"{\\rtf1\\ansi Hello RTF world}", "application/rtf")

    assert metadata["encoding"] == "rtf"
    assert metadata["word_count"] == 3


def test_docx_metadata():
    metadata = extract_document_metadata(make_docx("hello world", "", "three words here"), DOCX)

    assert metadata["paragraph_count"] == 2
    assert metadata["word_count"] == 5
    assert metadata["security_level"] == "medium"


def test_xlsx_metadata():
    metadata = extract_document_metadata(make_xlsx(sheets=3), XLSX)

    assert metadata["sheet_count"] == 3


def test_pptx_metadata():
    metadata = extract_document_metadata(make_pptx(slides=2), PPTX)

    assert metadata["slide_count"] == 2
    assert metadata["page_count"] == 2


def test_broken_pdf_metadata_does_not_raise():
    metadata = extract_document_metadata(b"%PDF-1.4 this is not really a pdf", "application/pdf")

    assert metadata["security_level"] == "medium"
    assert "metadata_error" in metadata
    assert "page_count" not in metadata


def test_format_without_extractor():
    assert extract_document_metadata(OLE_SIGNATURE, "application/msword") == {
        "security_level": "high",
        "encoding": "binary",
    }


@pytest.mark.asyncio
async def test_rejects_mismatched_signature(processor, upload_request):
    request = upload_request(b"hello" * 40, filename="report.pdf", mime_type="application/pdf")

    with pytest.raises(FileValidationError, match="does not match declared type application/pdf"):
        await processor.validate_specific_file(request)


@pytest.mark.asyncio
async def test_rejects_binary_text(processor, upload_request):
    request = upload_request(bytes(range(32)) * 10, filename="notes.txt", mime_type="text/plain")

    with pytest.raises(FileValidationError):
        await processor.validate_specific_file(request)


@pytest.mark.asyncio
async def test_rejects_oversized_document(mock_storage, repository, temp_files, test_settings, upload_request):
    test_settings.DOCUMENT_MAX_SIZE_MB = 0
    processor = DocumentProcessor(mock_storage, repository, temp_files, test_settings)

    with pytest.raises(FileValidationError, match="Document too large"):
        await processor.validate_specific_file(upload_request(b"%PDF-1.4", filename="a.pdf", mime_type="application/pdf"))


@pytest.mark.asyncio
async def test_process_text_document(processor, mock_storage, upload_request):
    data = b"first line of notes\nsecond line\n"
    request = upload_request(data, filename="notes.txt", mime_type="text/plain")

    result = await processor.process_upload(request)

    assert result.media_type == MediaType.DOCUMENT
    assert result.storage_key.startswith("documents/user-1/")
    assert result.size == len(data)
    assert result.metadata["line_count"] == 2
    assert result.metadata["word_count"] == 6
    assert result.metadata["original_size"] == len(data)
    mock_storage.upload_file.assert_awaited_once()


@pytest.mark.asyncio
async def test_process_docx(processor, upload_request):
    request = upload_request(make_docx("quarterly report"), filename="report.docx", mime_type=DOCX)

    result = await processor.process_upload(request)

    assert result.metadata["paragraph_count"] == 1
    assert result.thumbnail_url is None
