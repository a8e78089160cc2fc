"""Pydantic DTOs shared by the capture service and the CLI."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Lifecycle states of a capture job."""

    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class StatusKind(str, Enum):
    """Values reported by ``status(target_id)``."""

    NOT_FOUND = "not_found"
    PROCESSING = "processing"
    COMPLETE = "complete"


class CaptureRequest(BaseModel):
    """Payload callers submit to trigger a capture."""

    address: str = Field(description="Raw property address")
    target_id: str = Field(description="Stable identifier doubling as cache and dedup key")


class CachedImageMetadata(BaseModel):
    """Metadata stored next to every cached image."""

    target_id: str
    address: str = Field(description="Query that produced the image")
    original_address: str
    captured_at: datetime
    source: str = Field(description="Google Street View or Google Maps Fallback")
    is_street_view: bool
    method: str = Field(description="Identifier of the strategy that produced the pixels")
    content_type: str = "image/png"
    size_bytes: int | None = Field(default=None, ge=0)


class CaptureResponse(BaseModel):
    """Result of a successful ``trigger`` call."""

    target_id: str
    result_key: str
    url: str
    cache_hit: bool = False
    method: str | None = None
    is_street_view: bool | None = None


class CaptureStatus(BaseModel):
    """Status view: not_found, processing (with timing) or complete (with key)."""

    status: StatusKind
    started_at: datetime | None = None
    elapsed_seconds: int | None = Field(default=None, ge=0)
    estimated_remaining_seconds: int | None = Field(default=None, ge=0)
    result_key: str | None = None
    url: str | None = None


class ProcessingJobView(BaseModel):
    """One row of the durable processing table."""

    target_id: str
    address: str
    original_address: str | None = None
    started_at: datetime
    status: JobStatus
    completed_at: datetime | None = None
    error: str | None = None


class RecentCapture(BaseModel):
    """Recently captured image surfaced from the denormalized search records."""

    target_id: str
    address: str
    captured_at: datetime
    image_url: str
