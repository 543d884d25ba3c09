from __future__ import annotations

import uuid

from fastapi import Depends, Header, HTTPException, Request

from retrospend.services.import_queue_service import ImportQueueService


async def get_current_user_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
    """Owner id forwarded by the authenticating proxy in front of this service."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Not authenticated") from None


def get_import_queue(request: Request) -> ImportQueueService:
    return request.app.state.import_queue


async def get_admin_user_id(
    user_id: uuid.UUID = Depends(get_current_user_id),
    x_user_role: str | None = Header(default=None),
) -> uuid.UUID:
    """Require the admin role forwarded by the authenticating proxy."""
    if (x_user_role or "").strip().lower() != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id
