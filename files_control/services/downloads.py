"""Download redemption: validate a grant and take one use of it."""

from __future__ import annotations

import enum
import re
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from files_control.config import settings
from files_control.logging import get_logger
from files_control.models.files import DownloadGrant, File, StorageProvider
from files_control.services.access_grants import (
    DownloadGrants,
    FileAccessKeys,
    RedemptionStatus,
    StoredFiles,
    is_expired,
    normalize_access_key,
)
from files_control.services.common import coerce_uuid, ensure_utc_aware, now_utc
from files_control.services.errors import NotFoundError
from files_control.services.object_storage import BlobStores, blob_stores

logger = get_logger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class DownloadStatus(enum.Enum):
    ok = "ok"
    not_found = "not_found"
    expired = "expired"
    exhausted = "exhausted"
    file_missing = "file_missing"
    file_expired = "file_expired"
    access_denied = "access_denied"
    password_required = "password_required"
    invalid_password = "invalid_password"


@dataclass(frozen=True)
class DownloadConsumeResult:
    status: DownloadStatus
    storage_id: str | None = None
    storage_provider: StorageProvider | None = None
    download_url: str | None = None
    content_type: str | None = None
    use_count: int | None = None

    @property
    def ok(self) -> bool:
        return self.status is DownloadStatus.ok


def status_code_for_download_error(status: DownloadStatus | str) -> int:
    value = status.value if isinstance(status, DownloadStatus) else status
    if value in ("expired", "exhausted", "file_expired"):
        return 410
    if value == "password_required":
        return 401
    if value in ("access_denied", "invalid_password"):
        return 403
    return 404


def sanitize_filename(value: str | None) -> str:
    if not value:
        return "download"
    clean = _UNSAFE_FILENAME_CHARS.sub("_", value.strip())
    return clean or "download"


class DownloadService:
    def __init__(self, stores: BlobStores | None = None) -> None:
        self.stores = stores or blob_stores

    def _denied(self, grant_id, status: DownloadStatus) -> DownloadConsumeResult:
        logger.info("download_denied grant_id=%s reason=%s", grant_id, status.value)
        return DownloadConsumeResult(status=status)

    def _discard(
        self, db: Session, grant_id: uuid.UUID, status: DownloadStatus
    ) -> DownloadConsumeResult:
        """Delete a grant that can never be redeemed again and report why."""
        deleted = (
            db.query(DownloadGrant)
            .filter(DownloadGrant.id == grant_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        if deleted:
            logger.info(
                "download_grant_discarded grant_id=%s reason=%s", grant_id, status.value
            )
        return self._denied(grant_id, status)

    def consume(
        self,
        db: Session,
        grant_id,
        access_key: str | None = None,
        password: str | None = None,
        now: datetime | None = None,
        include_url: bool = True,
    ) -> DownloadConsumeResult:
        """Check a grant against the caller's credentials and take one use.

        Every check runs before the use counter is touched, including the
        presence of the blob itself. The use is taken by
        ``DownloadGrants.redeem`` so a racing caller that got past the checks
        still cannot exceed ``max_uses``. Grants found expired, exhausted or
        pointing at a deleted file are removed on the way out.

        ``include_url=False`` skips presigning a direct URL for callers that
        stream the bytes themselves.
        """
        now = ensure_utc_aware(now) or now_utc()
        try:
            grant_uuid = coerce_uuid(grant_id)
        except (TypeError, ValueError):
            return self._denied(grant_id, DownloadStatus.not_found)
        grant = db.get(DownloadGrant, grant_uuid) if grant_uuid else None
        if grant is None:
            return self._denied(grant_id, DownloadStatus.not_found)
        if is_expired(grant.expires_at, now):
            return self._discard(db, grant_uuid, DownloadStatus.expired)
        if grant.max_uses is not None and grant.use_count >= grant.max_uses:
            return self._discard(db, grant_uuid, DownloadStatus.exhausted)

        file: File | None = StoredFiles.get_by_storage_id(db, grant.storage_id)
        if file is None:
            return self._discard(db, grant_uuid, DownloadStatus.file_missing)

        if not grant.shareable_link:
            key = normalize_access_key(access_key)
            if not key or not FileAccessKeys.has_access(db, grant.storage_id, key):
                return self._denied(grant_id, DownloadStatus.access_denied)

        if grant.password_hash:
            if not password or not password.strip():
                return self._denied(grant_id, DownloadStatus.password_required)
            if not DownloadGrants.verify_password(grant, password):
                return self._denied(grant_id, DownloadStatus.invalid_password)

        if is_expired(file.expires_at, now):
            released = StoredFiles.delete(db, file.storage_id)
            if released:
                self.stores.release(*released)
            return self._denied(grant_id, DownloadStatus.file_expired)

        storage_id = file.storage_id
        provider = file.storage_provider
        content_type = file.content_type
        store = self.stores.get(provider)
        if not store.exists(storage_id):
            return self._denied(grant_id, DownloadStatus.file_missing)

        try:
            outcome = DownloadGrants.redeem(db, grant_uuid, now=now)
        except NotFoundError:
            return self._denied(grant_id, DownloadStatus.not_found)
        if not outcome.allowed:
            status = (
                DownloadStatus.expired
                if outcome.status is RedemptionStatus.expired
                else DownloadStatus.exhausted
            )
            return self._discard(db, grant_uuid, status)

        download_url = None
        if include_url:
            download_url = store.download_url(
                storage_id, settings.download_url_ttl_seconds
            )
        logger.info(
            "download_allowed grant_id=%s storage_id=%s use_count=%s",
            grant_uuid,
            storage_id,
            outcome.use_count,
        )
        return DownloadConsumeResult(
            status=DownloadStatus.ok,
            storage_id=storage_id,
            storage_provider=provider,
            download_url=download_url,
            content_type=content_type,
            use_count=outcome.use_count,
        )


downloads = DownloadService()
