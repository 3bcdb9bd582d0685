"""Upload API response models."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel

from mediaflow.models.media import FileAnalysis, UploadResult


class UploadResponse(BaseModel):
    """Response model for a processed upload."""

    file_id: str
    url: str
    cdn_url: Optional[str] = None
    filename: str
    mime_type: str
    media_type: str
    size: int
    original_size: int
    storage_key: str
    file_hash: str
    processing_status: str
    processed_at: datetime
    width: Optional[int] = None
    height: Optional[int] = None
    duration: Optional[float] = None
    thumbnail_url: Optional[str] = None
    thumbnail_sizes: Dict[str, str] = {}
    upload_strategy: Optional[str] = None
    compression_applied: bool = False
    compression_ratio: Optional[float] = None
    metadata: Dict[str, Any] = {}

    @classmethod
    def from_result(cls, result: UploadResult) -> "UploadResponse":
        return cls(
            file_id=result.file_id,
            url=result.url,
            cdn_url=result.cdn_url,
            filename=result.filename,
            mime_type=result.mime_type,
            media_type=result.media_type.value,
            size=result.size,
            original_size=result.original_size,
            storage_key=result.storage_key,
            file_hash=result.file_hash,
            processing_status=result.processing_status.value,
            processed_at=result.processed_at,
            width=result.width,
            height=result.height,
            duration=result.duration,
            thumbnail_url=result.thumbnail_url,
            thumbnail_sizes=result.thumbnail_sizes,
            upload_strategy=result.upload_strategy.value if result.upload_strategy else None,
            compression_applied=result.compression_applied,
            compression_ratio=result.compression_ratio,
            metadata=result.metadata,
        )


class SessionResponse(BaseModel):
    """Response model for an upload session lookup."""

    session_id: str
    user_id: str
    filename: str
    size: int
    processor: str
    strategy: str
    status: str
    progress: float
    created_at: datetime
    updated_at: datetime


class AnalysisResponse(BaseModel):
    """Response model for file analysis without processing."""

    filename: str
    mime_type: str
    size: int
    upload_type: Optional[str] = None
    is_safe: bool
    security_issues: list[str]
    risk_level: str
    needs_processing: bool
    processing_requirements: list[str]
    recommended_strategy: str
    strategy_reason: str
    estimated_processing_time_ms: int
    estimated_storage_size: int
    checksum: str
    detected_format: Optional[str] = None

    @classmethod
    def from_analysis(cls, analysis: FileAnalysis) -> "AnalysisResponse":
        return cls(
            filename=analysis.filename,
            mime_type=analysis.mime_type,
            size=analysis.size,
            upload_type=analysis.upload_type.value if analysis.upload_type else None,
            is_safe=analysis.is_safe,
            security_issues=analysis.security_issues,
            risk_level=analysis.risk_level,
            needs_processing=analysis.needs_processing,
            processing_requirements=analysis.processing_requirements,
            recommended_strategy=analysis.recommended_strategy.value,
            strategy_reason=analysis.strategy_reason,
            estimated_processing_time_ms=analysis.estimated_processing_time_ms,
            estimated_storage_size=analysis.estimated_storage_size,
            checksum=analysis.checksum,
            detected_format=analysis.detected_format,
        )
