"""Unauthenticated upload and download routes.

Upload tokens and download tokens are capabilities in their own right, so
these routes do not require a user.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Header,
    HTTPException,
    Query,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from files_control.api.deps import get_db
from files_control.config import settings
from files_control.models.files import StorageProvider
from files_control.schemas.files import UploadMetadata, UploadResult
from files_control.services.downloads import (
    downloads,
    sanitize_filename,
    status_code_for_download_error,
)
from files_control.services.object_storage import ObjectNotFoundError, blob_stores
from files_control.services.uploads import uploads

router = APIRouter(tags=["transfer"])


def parse_access_keys(raw: str) -> list[str]:
    try:
        value = json.loads(raw)
    except ValueError:
        value = None
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise HTTPException(
            status_code=400, detail="'accessKeys' must be a JSON array of strings"
        )
    return value


def parse_optional_timestamp(raw: str | None) -> datetime | None:
    """Accept epoch milliseconds, an ISO-8601 instant, or null."""
    if raw is None:
        return None
    trimmed = raw.strip()
    if trimmed in ("", "null"):
        return None
    try:
        return datetime.fromtimestamp(float(trimmed) / 1000, UTC)
    except (ValueError, OverflowError, OSError):
        pass
    try:
        return datetime.fromisoformat(trimmed)
    except ValueError as exc:
        raise HTTPException(
            status_code=400,
            detail="'expiresAt' must be epoch milliseconds, an ISO-8601 timestamp or null",
        ) from exc


@router.post("/upload", response_model=UploadResult)
def upload_file(
    file: UploadFile = File(...),
    access_keys: str = Form(..., alias="accessKeys"),
    expires_at: str | None = Form(default=None, alias="expiresAt"),
    virtual_path: str | None = Form(default=None, alias="virtualPath"),
    provider: StorageProvider | None = Form(default=None),
    db: Session = Depends(get_db),
):
    keys = parse_access_keys(access_keys)
    expiry = parse_optional_timestamp(expires_at)
    data = file.file.read()
    return uploads.upload(
        db,
        data,
        access_keys=keys,
        content_type=file.content_type,
        expires_at=expiry,
        provider=provider,
        virtual_path=virtual_path,
    )


@router.put("/upload-tickets/{upload_token}/content", response_model=UploadMetadata)
async def upload_ticket_content(
    upload_token: str, request: Request, db: Session = Depends(get_db)
):
    data = await request.body()
    return uploads.store_ticket_content(
        db, upload_token, data, request.headers.get("content-type")
    )


@router.get("/download")
def download(
    token: str = Query(...),
    access_key: str | None = Query(default=None, alias="accessKey"),
    filename: str | None = Query(default=None),
    password: str | None = Header(default=None, alias="X-Download-Password"),
    db: Session = Depends(get_db),
):
    if settings.require_access_key and not access_key:
        raise HTTPException(status_code=401, detail="Missing required accessKey")

    result = downloads.consume(
        db, token, access_key=access_key, password=password, include_url=False
    )
    if not result.ok:
        raise HTTPException(
            status_code=status_code_for_download_error(result.status),
            detail={"code": result.status.value, "message": "Download unavailable"},
        )

    try:
        stream = blob_stores.get(result.storage_provider).stream(result.storage_id)
    except ObjectNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="File not available"
        ) from exc

    headers = {
        "Cache-Control": "no-store",
        "Content-Disposition": f'attachment; filename="{sanitize_filename(filename)}"',
    }
    if stream.content_length is not None:
        headers["Content-Length"] = str(stream.content_length)
    return StreamingResponse(
        stream.chunks,
        media_type=result.content_type
        or stream.content_type
        or "application/octet-stream",
        headers=headers,
    )
