"""Upload API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile

from mediaflow.core.container import Container
from mediaflow.core.exceptions import BadRequestError, FileValidationError, ForbiddenError
from mediaflow.models.media import UploadOptions, UploadRequest
from mediaflow.models.upload import AnalysisResponse, SessionResponse, UploadResponse
from mediaflow.providers.permissions import UserLevel

router = APIRouter(prefix="/api/v1/uploads", tags=["upload"])
logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def get_container(request: Request) -> Container:
    return request.app.state.container


def _parse_user_level(value: str) -> UserLevel:
    try:
        return UserLevel(value.strip().upper())
    except ValueError:
        raise BadRequestError(f"Unknown user level: {value}", code="INVALID_USER_LEVEL")


async def _read_request(
    file: UploadFile,
    user_id: str,
    post_id: Optional[str] = None,
    options: Optional[UploadOptions] = None,
) -> UploadRequest:
    if not user_id or not user_id.strip():
        raise BadRequestError("user_id is required", code="INVALID_REQUEST")
    data = await file.read()
    return UploadRequest(
        buffer=data,
        filename=file.filename or "",
        mime_type=file.content_type or DEFAULT_CONTENT_TYPE,
        user_id=user_id.strip(),
        post_id=post_id,
        options=options or UploadOptions(),
    )


@router.post("", response_model=UploadResponse, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    user_level: str = Form(UserLevel.USER.value),
    post_id: Optional[str] = Form(None),
    generate_thumbnails: bool = Form(True),
    force_transcode: bool = Form(False),
    container: Container = Depends(get_container),
) -> UploadResponse:
    """Validate, check quota, then process and store one file."""
    level = _parse_user_level(user_level)
    request = await _read_request(
        file,
        user_id,
        post_id,
        UploadOptions(generate_thumbnails=generate_thumbnails, force_transcode=force_transcode),
    )

    try:
        container.validator.validate_request(request)
    except FileValidationError as e:
        logger.warning(
            "Upload rejected by validation",
            extra={"user_id": request.user_id, "context": {"filename": request.filename, "reason": str(e)}},
        )
        raise BadRequestError(str(e), code="VALIDATION_FAILED") from e

    verdict = await container.permissions.can_user_upload(
        request.user_id,
        level,
        file_size=request.size,
        mime_type=request.mime_type,
    )
    if not verdict.allowed:
        logger.warning(
            "Upload denied by quota check",
            extra={"user_id": request.user_id, "context": {"level": level.value, "reason": verdict.reason}},
        )
        raise ForbiddenError(verdict.reason or "Upload not permitted", code="QUOTA_EXCEEDED")

    result = await container.processor_manager.process(request)
    container.usage.record_upload(request.user_id, result.size)

    logger.info(
        "Upload completed",
        extra={
            "user_id": request.user_id,
            "context": {
                "file_id": result.file_id,
                "object_name": result.storage_key,
                "media_type": result.media_type.value,
                "size": result.size,
            },
        },
    )
    return UploadResponse.from_result(result)


@router.post("/analyze", response_model=AnalysisResponse)
async def analyze_file(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    container: Container = Depends(get_container),
) -> AnalysisResponse:
    """Run validation and analysis without processing or storing."""
    request = await _read_request(file, user_id)
    try:
        container.validator.validate_request(request)
    except FileValidationError as e:
        raise BadRequestError(str(e), code="VALIDATION_FAILED") from e
    return AnalysisResponse.from_analysis(container.validator.analyze_file(request))


@router.get("/sessions/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str, container: Container = Depends(get_container)) -> SessionResponse:
    session = container.session_manager.get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Upload session not found")
    return SessionResponse(
        session_id=session.id,
        user_id=session.user_id,
        filename=session.filename,
        size=session.size,
        processor=session.processor_name,
        strategy=session.strategy.value,
        status=session.status.value,
        progress=session.progress,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


@router.get("/stats")
async def get_stats(container: Container = Depends(get_container)) -> dict:
    return {
        "sessions": container.session_manager.get_stats(),
        "temp_files": container.temp_files.get_stats(),
        "supported_mime_types": container.processor_manager.get_supported_mime_types(),
    }
