"""File, access key and download grant management endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from files_control.api.deps import get_db
from files_control.config import settings
from files_control.schemas.common import ListResponse
from files_control.schemas.files import (
    AccessKeyRead,
    AccessKeyRequest,
    DownloadGrantCreate,
    DownloadGrantCreated,
    DownloadGrantRead,
    FileExpirationUpdate,
    FileRead,
    FinalizeUploadRequest,
    PendingUploadRead,
    RedemptionRead,
    SweepResultRead,
    TransferRequest,
    TransferResult,
    UploadResult,
    UploadTicket,
    UploadTicketCreate,
)
from files_control.services import access_grants
from files_control.services.access_grants import USE_DEFAULT
from files_control.services.common import list_response
from files_control.services.errors import NotFoundError
from files_control.services.object_storage import blob_stores
from files_control.services.transfer import transfers
from files_control.services.uploads import uploads
from files_control.services.urls import build_download_url

router = APIRouter(tags=["files"])


@router.post(
    "/upload-tickets",
    response_model=UploadTicket,
    status_code=status.HTTP_201_CREATED,
)
def create_upload_ticket(
    payload: UploadTicketCreate | None = None, db: Session = Depends(get_db)
):
    payload = payload or UploadTicketCreate()
    return uploads.issue_ticket(
        db, provider=payload.storage_provider, expires_at=payload.expires_at
    )


@router.get("/upload-tickets/{upload_token}", response_model=PendingUploadRead)
def get_upload_ticket(upload_token: str, db: Session = Depends(get_db)):
    return access_grants.pending_uploads.get(db, upload_token)


@router.post(
    "/upload-tickets/{upload_token}/finalize",
    response_model=UploadResult,
    status_code=status.HTTP_201_CREATED,
)
def finalize_upload(
    upload_token: str, payload: FinalizeUploadRequest, db: Session = Depends(get_db)
):
    return uploads.finalize(
        db,
        upload_token,
        payload.storage_id,
        access_keys=payload.access_keys,
        expires_at=payload.expires_at,
        storage_provider=payload.storage_provider,
        metadata=payload.metadata,
        virtual_path=payload.virtual_path,
    )


@router.get("/files", response_model=ListResponse[FileRead])
def list_files(
    access_key: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    if access_key is not None:
        items = access_grants.stored_files.list_by_access_key(
            db, access_key, limit, offset
        )
    else:
        items = access_grants.stored_files.list(db, limit, offset)
    return list_response(items, limit, offset)


@router.get("/files/{storage_id}", response_model=FileRead)
def get_file(storage_id: str, db: Session = Depends(get_db)):
    return access_grants.stored_files.get(db, storage_id)


@router.patch("/files/{storage_id}/expiration", response_model=FileRead)
def update_file_expiration(
    storage_id: str, payload: FileExpirationUpdate, db: Session = Depends(get_db)
):
    return access_grants.stored_files.update_expiration(
        db, storage_id, payload.expires_at
    )


@router.delete("/files/{storage_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_file(storage_id: str, db: Session = Depends(get_db)):
    released = access_grants.stored_files.delete(db, storage_id)
    if released is None:
        raise NotFoundError("File not found.")
    blob_stores.release(*released)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/files/{storage_id}/access-keys", response_model=list[AccessKeyRead])
def list_access_keys(storage_id: str, db: Session = Depends(get_db)):
    access_grants.stored_files.get(db, storage_id)
    return [
        AccessKeyRead(storage_id=storage_id, access_key=key)
        for key in access_grants.file_access.list_for_file(db, storage_id)
    ]


@router.post(
    "/files/{storage_id}/access-keys",
    response_model=AccessKeyRead,
    status_code=status.HTTP_201_CREATED,
)
def add_access_key(
    storage_id: str, payload: AccessKeyRequest, db: Session = Depends(get_db)
):
    return access_grants.file_access.mint(db, storage_id, payload.access_key)


@router.delete(
    "/files/{storage_id}/access-keys", status_code=status.HTTP_204_NO_CONTENT
)
def remove_access_key(
    storage_id: str,
    access_key: str = Query(..., max_length=255),
    db: Session = Depends(get_db),
):
    access_grants.file_access.revoke(db, storage_id, access_key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/grants",
    response_model=DownloadGrantCreated,
    status_code=status.HTTP_201_CREATED,
)
def create_download_grant(payload: DownloadGrantCreate, db: Session = Depends(get_db)):
    max_uses = payload.max_uses if "max_uses" in payload.model_fields_set else USE_DEFAULT
    grant = access_grants.download_grants.create(
        db,
        payload.storage_id,
        expires_at=payload.expires_at,
        max_uses=max_uses,
        password=payload.password,
        shareable_link=payload.shareable_link,
    )
    data = DownloadGrantRead.model_validate(grant).model_dump()
    data["download_url"] = build_download_url(
        settings.public_base_url, str(grant.id), settings.path_prefix
    )
    return DownloadGrantCreated(**data)


@router.get("/grants", response_model=ListResponse[DownloadGrantRead])
def list_download_grants(
    storage_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items = access_grants.download_grants.list(db, storage_id, limit, offset)
    return list_response(items, limit, offset)


@router.get("/grants/{grant_id}", response_model=DownloadGrantRead)
def get_download_grant(grant_id: str, db: Session = Depends(get_db)):
    return access_grants.download_grants.get(db, grant_id)


@router.post("/grants/{grant_id}/redeem", response_model=RedemptionRead)
def redeem_download_grant(grant_id: str, db: Session = Depends(get_db)):
    outcome = access_grants.download_grants.redeem(db, grant_id)
    return RedemptionRead(
        allowed=outcome.allowed, reason=outcome.reason, use_count=outcome.use_count
    )


@router.delete("/grants/{grant_id}", status_code=status.HTTP_204_NO_CONTENT)
def revoke_download_grant(grant_id: str, db: Session = Depends(get_db)):
    access_grants.download_grants.revoke(db, grant_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/transfer", response_model=TransferResult)
def transfer_file(payload: TransferRequest, db: Session = Depends(get_db)):
    return transfers.transfer(
        db, payload.storage_id, payload.target_provider, payload.virtual_path
    )


@router.post("/cleanup", response_model=SweepResultRead)
def cleanup_expired(
    limit: int | None = Query(default=None, ge=1, le=5000),
    db: Session = Depends(get_db),
):
    result = access_grants.sweeper.sweep_expired(db, limit=limit)
    blob_stores.release_all(result.released_blobs)
    return SweepResultRead(
        deleted_count=result.deleted_count,
        has_more=result.has_more,
        pending_uploads=result.pending_uploads,
        download_grants=result.download_grants,
        files=result.files,
    )
