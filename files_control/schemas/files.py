"""Pydantic schemas for uploads, access keys and download grants."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

from files_control.models.files import StorageProvider


class UploadMetadata(BaseModel):
    storage_id: str
    size: int = Field(..., ge=0)
    sha256: str
    content_type: str | None = None


class UploadResult(BaseModel):
    storage_id: str
    storage_provider: StorageProvider
    expires_at: datetime | None
    metadata: UploadMetadata | None
    virtual_path: str | None = None


class UploadTicketCreate(BaseModel):
    storage_provider: StorageProvider | None = None
    expires_at: datetime | None = None


class PendingUploadRead(BaseModel):
    id: UUID
    expires_at: datetime
    created_at: datetime

    model_config = {"from_attributes": True}


class UploadTicket(BaseModel):
    """Issued upload reservation plus where to send the bytes."""

    upload_token: UUID
    upload_token_expires_at: datetime
    storage_provider: StorageProvider
    storage_id: str | None = None
    upload_url: str | None = None


class FinalizeUploadRequest(BaseModel):
    storage_id: str = Field(..., min_length=1, max_length=1024)
    access_keys: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    storage_provider: StorageProvider = StorageProvider.primary
    metadata: UploadMetadata | None = None
    virtual_path: str | None = None


class FileRead(BaseModel):
    id: UUID
    storage_id: str
    storage_provider: StorageProvider
    virtual_path: str | None
    size: int | None = None
    sha256: str | None = None
    content_type: str | None = None
    expires_at: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}


class FileExpirationUpdate(BaseModel):
    expires_at: datetime | None = None


class AccessKeyRequest(BaseModel):
    access_key: str = Field(..., max_length=255)


class AccessKeyRead(BaseModel):
    storage_id: str
    access_key: str

    model_config = {"from_attributes": True}


class DownloadGrantCreate(BaseModel):
    storage_id: str
    expires_at: datetime | None = None
    # Omitted means the configured default; explicit null means unlimited.
    max_uses: int | None = None
    password: str | None = None
    shareable_link: bool = False


class DownloadGrantRead(BaseModel):
    id: UUID
    storage_id: str
    expires_at: datetime | None
    max_uses: int | None
    use_count: int
    shareable_link: bool
    has_password: bool
    created_at: datetime

    model_config = {"from_attributes": True}


class DownloadGrantCreated(DownloadGrantRead):
    download_url: str


class RedemptionRead(BaseModel):
    allowed: bool
    reason: str | None = None
    use_count: int | None = None


class SweepResultRead(BaseModel):
    deleted_count: int
    has_more: bool
    pending_uploads: int
    download_grants: int
    files: int


class TransferRequest(BaseModel):
    storage_id: str
    target_provider: StorageProvider
    virtual_path: str | None = None


class TransferResult(BaseModel):
    storage_id: str
    storage_provider: StorageProvider
    virtual_path: str | None
