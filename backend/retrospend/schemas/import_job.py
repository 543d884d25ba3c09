from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from retrospend.models.import_job import ImportKind, ImportStatus


class ImportJobResponse(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    kind: ImportKind
    filename: str
    file_size: int
    file_type: str
    status: ImportStatus
    parsed_rows: list[dict[str, Any]] | None
    warnings: list[str]
    error_message: str | None
    progress_percent: float | None
    status_message: str | None
    total_rows: int
    imported_count: int
    skipped_duplicates: int
    created_at: datetime
    processing_at: datetime | None
    ready_at: datetime | None
    reviewing_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None

    model_config = {"from_attributes": True, "use_enum_values": True}


class QueueStatusResponse(BaseModel):
    processing: list[ImportJobResponse]
    queued: list[ImportJobResponse]
    ready_for_review: list[ImportJobResponse]
    reviewing: list[ImportJobResponse]
    queued_count: int


class GlobalStatsResponse(BaseModel):
    max_concurrent: int
    current_processing: int
    available_slots: int
    total_queued: int
    total_ready_for_review: int
    total_reviewing: int
