from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Form, HTTPException, UploadFile

from retrospend.api.deps import get_admin_user_id, get_current_user_id, get_import_queue
from retrospend.models.import_job import ImportKind
from retrospend.schemas.import_job import ImportJobResponse
from retrospend.schemas.transaction import FinalizeRequest
from retrospend.services.import_queue_service import ImportQueueService

router = APIRouter(prefix="/imports", tags=["imports"])


@router.post("", response_model=dict, status_code=202)
async def upload_file(
    file: UploadFile,
    kind: ImportKind = Form(ImportKind.SPREADSHEET),
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    if file.filename is None:
        raise HTTPException(status_code=400, detail="No filename provided")
    content = await file.read()
    job = await queue.create_job(
        user_id,
        filename=file.filename,
        file_type=file.content_type or "application/octet-stream",
        kind=kind,
        file_content=content,
    )
    return {"data": ImportJobResponse.model_validate(job)}


@router.get("", response_model=dict)
async def list_jobs(
    include_completed: bool = True,
    limit: int = 50,
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    jobs = await queue.list_jobs(user_id, include_completed=include_completed, limit=min(limit, 100))
    return {
        "data": [ImportJobResponse.model_validate(j) for j in jobs],
        "total": len(jobs),
    }


@router.get("/queue-status", response_model=dict)
async def queue_status(
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    return {"data": await queue.get_queue_status(user_id)}


@router.get("/stats", response_model=dict)
async def global_stats(
    queue: ImportQueueService = Depends(get_import_queue),
    _admin_id: uuid.UUID = Depends(get_admin_user_id),
) -> dict:
    return {"data": await queue.get_global_stats()}


@router.get("/{job_id}", response_model=dict)
async def get_import_job(
    job_id: uuid.UUID,
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    job = await queue.get_job(user_id, job_id)
    return {"data": ImportJobResponse.model_validate(job)}


@router.post("/{job_id}/review", response_model=dict)
async def start_review(
    job_id: uuid.UUID,
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    job = await queue.start_review(user_id, job_id)
    return {"data": ImportJobResponse.model_validate(job)}


@router.post("/{job_id}/finalize", response_model=dict)
async def finalize_import(
    job_id: uuid.UUID,
    body: FinalizeRequest,
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    result = await queue.finalize(user_id, job_id, body.selected_transactions)
    return {"data": result}


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_import(
    job_id: uuid.UUID,
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    job = await queue.cancel_job(user_id, job_id)
    return {"data": ImportJobResponse.model_validate(job)}


@router.delete("/{job_id}", response_model=dict)
async def delete_import(
    job_id: uuid.UUID,
    queue: ImportQueueService = Depends(get_import_queue),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> dict:
    await queue.delete_job(user_id, job_id)
    return {"data": {"success": True}}
