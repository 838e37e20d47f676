"""Upload orchestration: tickets, byte storage and finalization."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy.orm import Session

from files_control.config import settings
from files_control.logging import get_logger
from files_control.models.files import File, StorageProvider
from files_control.schemas.files import UploadMetadata, UploadResult, UploadTicket
from files_control.services.access_grants import (
    PendingUploads,
    is_expired,
    normalize_access_keys,
)
from files_control.services.common import ensure_utc_aware, now_utc
from files_control.services.errors import (
    AccessGrantError,
    InvalidArgumentError,
    NotFoundError,
)
from files_control.services.object_storage import BlobStores, blob_stores
from files_control.services.urls import build_endpoint_url

logger = get_logger(__name__)


def to_upload_result(file: File) -> UploadResult:
    metadata = None
    if file.size is not None and file.sha256:
        metadata = UploadMetadata(
            storage_id=file.storage_id,
            size=file.size,
            sha256=file.sha256,
            content_type=file.content_type,
        )
    return UploadResult(
        storage_id=file.storage_id,
        storage_provider=file.storage_provider,
        expires_at=file.expires_at,
        metadata=metadata,
        virtual_path=file.virtual_path,
    )


def build_metadata(storage_id: str, data: bytes, content_type: str | None) -> UploadMetadata:
    return UploadMetadata(
        storage_id=storage_id,
        size=len(data),
        sha256=hashlib.sha256(data).hexdigest(),
        content_type=content_type or None,
    )


class UploadService:
    def __init__(self, stores: BlobStores | None = None) -> None:
        self.stores = stores or blob_stores

    def _resolve_provider(self, provider: StorageProvider | None) -> StorageProvider:
        if provider is None:
            return self.stores.default_provider()
        if provider is StorageProvider.external and not self.stores.external_configured:
            raise InvalidArgumentError("R2 configuration is required for R2 uploads.")
        return provider

    def issue_ticket(
        self,
        db: Session,
        provider: StorageProvider | None = None,
        expires_at: datetime | None = None,
    ) -> UploadTicket:
        """Reserve an upload and say where its bytes should go.

        External tickets carry a presigned PUT URL; primary tickets point at
        the ticket's content route.
        """
        provider = self._resolve_provider(provider)
        pending = PendingUploads.create(db, expires_at=expires_at)
        if provider is StorageProvider.external:
            store = self.stores.get(provider)
            storage_id = store.new_key()
            upload_url = store.upload_url(storage_id, settings.pending_upload_ttl_seconds)
        else:
            storage_id = pending.id.hex
            upload_url = build_endpoint_url(
                settings.public_base_url,
                settings.path_prefix,
                f"upload-tickets/{pending.id}/content",
            )
        return UploadTicket(
            upload_token=pending.id,
            upload_token_expires_at=pending.expires_at,
            storage_provider=provider,
            storage_id=storage_id,
            upload_url=upload_url,
        )

    def store_ticket_content(
        self,
        db: Session,
        pending_upload_id,
        data: bytes,
        content_type: str | None = None,
    ) -> UploadMetadata:
        """Write the bytes of a primary-store ticket under its storage id."""
        pending = PendingUploads.get(db, pending_upload_id)
        if is_expired(pending.expires_at, now_utc()):
            raise NotFoundError("Upload token expired.")
        storage_id = pending.id.hex
        self.stores.get(StorageProvider.primary).put(storage_id, data, content_type)
        return build_metadata(storage_id, data, content_type)

    def finalize(
        self,
        db: Session,
        pending_upload_id,
        storage_id: str,
        *,
        access_keys: Iterable[str],
        expires_at: datetime | None = None,
        storage_provider: StorageProvider = StorageProvider.primary,
        metadata: UploadMetadata | None = None,
        virtual_path: str | None = None,
    ) -> UploadResult:
        if metadata is None and not self.stores.get(storage_provider).exists(storage_id):
            raise NotFoundError("Storage file not found.")
        file = PendingUploads.finalize(
            db,
            pending_upload_id,
            storage_id,
            access_keys=access_keys,
            expires_at=expires_at,
            storage_provider=storage_provider,
            virtual_path=virtual_path,
            metadata=metadata,
        )
        return to_upload_result(file)

    def upload(
        self,
        db: Session,
        data: bytes,
        *,
        access_keys: Iterable[str],
        content_type: str | None = None,
        expires_at: datetime | None = None,
        provider: StorageProvider | None = None,
        virtual_path: str | None = None,
        now: datetime | None = None,
    ) -> UploadResult:
        """Store bytes and register them as a file in one call.

        The blob is written between creating the pending upload and
        finalizing it; a finalize failure releases the blob again.
        """
        now = ensure_utc_aware(now) or now_utc()
        keys = normalize_access_keys(access_keys)
        if not keys:
            raise InvalidArgumentError("At least one access key is required.")
        expires_at = ensure_utc_aware(expires_at)
        if expires_at is not None and expires_at <= now:
            raise InvalidArgumentError("Expiration must be in the future.")

        provider = self._resolve_provider(provider)
        store = self.stores.get(provider)
        pending = PendingUploads.create(db, now=now)
        storage_id = store.new_key()
        store.put(storage_id, data, content_type)
        metadata = build_metadata(storage_id, data, content_type)
        try:
            file = PendingUploads.finalize(
                db,
                pending.id,
                storage_id,
                access_keys=keys,
                expires_at=expires_at,
                storage_provider=provider,
                virtual_path=virtual_path,
                metadata=metadata,
                now=now,
            )
        except AccessGrantError:
            self.stores.release(storage_id, provider)
            raise
        logger.info(
            "file_uploaded storage_id=%s provider=%s size=%d",
            storage_id,
            provider.value,
            metadata.size,
        )
        return to_upload_result(file)


uploads = UploadService()
