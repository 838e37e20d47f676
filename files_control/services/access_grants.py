"""Access grant store: pending uploads, files, access keys and download grants.

Every public method runs as one transaction on the given session and commits
before returning. The redemption path relies on a conditional UPDATE so two
concurrent redemptions can never both pass a ``max_uses`` boundary.
"""

from __future__ import annotations

import enum
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Final

from passlib.context import CryptContext
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from files_control.config import settings
from files_control.logging import get_logger
from files_control.metrics import GRANT_REDEMPTIONS, SWEEP_DELETIONS
from files_control.models.files import (
    DownloadGrant,
    File,
    FileAccess,
    PendingUpload,
    StorageProvider,
)
from files_control.schemas.files import UploadMetadata
from files_control.services.common import coerce_uuid, ensure_utc_aware, now_utc
from files_control.services.errors import (
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
)

logger = get_logger(__name__)

PASSWORD_CONTEXT = CryptContext(schemes=["pbkdf2_sha256"], default="pbkdf2_sha256")


class _Unset(enum.Enum):
    """Marker for "caller did not pass max_uses"; None already means unlimited."""

    token = "unset"


USE_DEFAULT: Final = _Unset.token


class RedemptionStatus(enum.Enum):
    allowed = "allowed"
    expired = "expired"
    exhausted = "exhausted"


@dataclass(frozen=True)
class RedemptionOutcome:
    """Result of one redemption attempt against a download grant."""

    grant_id: uuid.UUID
    status: RedemptionStatus
    storage_id: str | None = None
    use_count: int | None = None

    @property
    def allowed(self) -> bool:
        return self.status is RedemptionStatus.allowed

    @property
    def reason(self) -> str | None:
        return None if self.allowed else self.status.value


@dataclass
class SweepResult:
    pending_uploads: int = 0
    download_grants: int = 0
    files: int = 0
    cascaded_access_keys: int = 0
    cascaded_grants: int = 0
    has_more: bool = False
    released_blobs: list[tuple[str, StorageProvider]] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return self.pending_uploads + self.download_grants + self.files


def normalize_access_key(access_key: str | None) -> str | None:
    if access_key is None:
        return None
    cleaned = access_key.strip()
    return cleaned or None


def normalize_access_keys(access_keys: Iterable[str]) -> list[str]:
    """Trim, drop blanks and de-duplicate while keeping order."""
    seen: dict[str, None] = {}
    for key in access_keys:
        cleaned = normalize_access_key(key)
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def normalize_virtual_path(virtual_path: str | None) -> str | None:
    if virtual_path is None:
        return None
    cleaned = virtual_path.strip().lstrip("/")
    return cleaned or None


def _parse_id(value, detail: str) -> uuid.UUID:
    try:
        return coerce_uuid(value)
    except (TypeError, ValueError) as exc:
        raise NotFoundError(detail) from exc


def _require_future(expires_at: datetime | None, now: datetime) -> datetime | None:
    expires_at = ensure_utc_aware(expires_at)
    if expires_at is not None and expires_at <= now:
        raise InvalidArgumentError("Expiration must be in the future.")
    return expires_at


def is_expired(expires_at: datetime | None, now: datetime) -> bool:
    expires_at = ensure_utc_aware(expires_at)
    return expires_at is not None and expires_at <= now


def _find_file(db: Session, storage_id: str) -> File | None:
    return db.query(File).filter(File.storage_id == storage_id).first()


def _find_access(db: Session, storage_id: str, access_key: str) -> FileAccess | None:
    return (
        db.query(FileAccess)
        .filter(FileAccess.access_key == access_key)
        .filter(FileAccess.storage_id == storage_id)
        .first()
    )


def _delete_file_cascade(db: Session, file: File) -> tuple[int, int]:
    access_rows = (
        db.query(FileAccess)
        .filter(FileAccess.storage_id == file.storage_id)
        .delete(synchronize_session=False)
    )
    grants = (
        db.query(DownloadGrant)
        .filter(DownloadGrant.storage_id == file.storage_id)
        .delete(synchronize_session=False)
    )
    db.delete(file)
    return access_rows, grants


class PendingUploads:
    @staticmethod
    def create(
        db: Session, expires_at: datetime | None = None, now: datetime | None = None
    ) -> PendingUpload:
        now = ensure_utc_aware(now) or now_utc()
        if expires_at is None:
            expires_at = now + timedelta(seconds=settings.pending_upload_ttl_seconds)
        expires_at = _require_future(expires_at, now)
        record = PendingUpload(expires_at=expires_at, created_at=now)
        db.add(record)
        db.commit()
        db.refresh(record)
        logger.info(
            "pending_upload_created upload_token=%s expires_at=%s",
            record.id,
            expires_at.isoformat(),
        )
        return record

    @staticmethod
    def get(db: Session, pending_upload_id) -> PendingUpload:
        record = db.get(
            PendingUpload, _parse_id(pending_upload_id, "Upload token not found.")
        )
        if not record:
            raise NotFoundError("Upload token not found.")
        return record

    @staticmethod
    def finalize(
        db: Session,
        pending_upload_id,
        storage_id: str,
        *,
        access_keys: Iterable[str] = (),
        expires_at: datetime | None = None,
        storage_provider: StorageProvider = StorageProvider.primary,
        virtual_path: str | None = None,
        metadata: UploadMetadata | None = None,
        now: datetime | None = None,
    ) -> File:
        """Turn a pending upload into a file record.

        Not idempotent: the pending record is deleted in the same transaction,
        so a second call with the same id raises NotFoundError.
        """
        now = ensure_utc_aware(now) or now_utc()
        pending = db.get(
            PendingUpload, _parse_id(pending_upload_id, "Upload token not found.")
        )
        if not pending:
            raise NotFoundError("Upload token not found.")
        if is_expired(pending.expires_at, now):
            raise NotFoundError("Upload token expired.")

        file = StoredFiles._insert(
            db,
            storage_id=storage_id,
            access_keys=access_keys,
            expires_at=expires_at,
            storage_provider=storage_provider,
            virtual_path=virtual_path,
            metadata=metadata,
            now=now,
        )
        db.delete(pending)
        StoredFiles._commit(db)
        db.refresh(file)
        logger.info(
            "upload_finalized upload_token=%s storage_id=%s provider=%s",
            pending_upload_id,
            file.storage_id,
            file.storage_provider.value,
        )
        return file


class StoredFiles:
    @staticmethod
    def _insert(
        db: Session,
        *,
        storage_id: str,
        access_keys: Iterable[str],
        expires_at: datetime | None,
        storage_provider: StorageProvider,
        virtual_path: str | None,
        metadata: UploadMetadata | None = None,
        now: datetime,
    ) -> File:
        storage_id = (storage_id or "").strip()
        if not storage_id:
            raise InvalidArgumentError("Storage id cannot be empty.")
        keys = normalize_access_keys(access_keys)
        if not keys:
            raise InvalidArgumentError("At least one access key is required.")
        expires_at = _require_future(expires_at, now)
        if _find_file(db, storage_id):
            raise DuplicateKeyError("File already registered.")
        resolved_path = normalize_virtual_path(virtual_path)
        if virtual_path is not None and not resolved_path:
            raise InvalidArgumentError("Virtual path cannot be empty.")
        if resolved_path and (
            db.query(File).filter(File.virtual_path == resolved_path).first()
        ):
            raise DuplicateKeyError("Virtual path already exists.")

        file = File(
            storage_id=storage_id,
            storage_provider=storage_provider,
            virtual_path=resolved_path,
            size=metadata.size if metadata else None,
            sha256=metadata.sha256 if metadata else None,
            content_type=metadata.content_type if metadata else None,
            expires_at=expires_at,
            created_at=now,
        )
        db.add(file)
        db.flush()
        for key in keys:
            db.add(FileAccess(file_id=file.id, storage_id=storage_id, access_key=key))
        return file

    @staticmethod
    def _commit(db: Session) -> None:
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateKeyError("Record already exists.") from exc

    @staticmethod
    def register(
        db: Session,
        storage_id: str,
        *,
        access_keys: Iterable[str] = (),
        expires_at: datetime | None = None,
        storage_provider: StorageProvider = StorageProvider.primary,
        virtual_path: str | None = None,
        metadata: UploadMetadata | None = None,
        now: datetime | None = None,
    ) -> File:
        """Register a blob that was stored without an upload ticket."""
        now = ensure_utc_aware(now) or now_utc()
        file = StoredFiles._insert(
            db,
            storage_id=storage_id,
            access_keys=access_keys,
            expires_at=expires_at,
            storage_provider=storage_provider,
            virtual_path=virtual_path,
            metadata=metadata,
            now=now,
        )
        StoredFiles._commit(db)
        db.refresh(file)
        logger.info("file_registered storage_id=%s", file.storage_id)
        return file

    @staticmethod
    def get_by_storage_id(db: Session, storage_id: str) -> File | None:
        return _find_file(db, storage_id)

    @staticmethod
    def get(db: Session, storage_id: str) -> File:
        file = _find_file(db, storage_id)
        if not file:
            raise NotFoundError("File not found.")
        return file

    @staticmethod
    def get_by_virtual_path(db: Session, virtual_path: str) -> File | None:
        resolved = normalize_virtual_path(virtual_path)
        if not resolved:
            return None
        return db.query(File).filter(File.virtual_path == resolved).first()

    @staticmethod
    def list(db: Session, limit: int = 100, offset: int = 0) -> list[File]:
        return (
            db.query(File)
            .order_by(File.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @staticmethod
    def list_by_access_key(
        db: Session, access_key: str, limit: int = 100, offset: int = 0
    ) -> list[File]:
        key = normalize_access_key(access_key)
        if not key:
            return []
        return (
            db.query(File)
            .join(FileAccess, FileAccess.storage_id == File.storage_id)
            .filter(FileAccess.access_key == key)
            .order_by(File.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @staticmethod
    def update_expiration(
        db: Session,
        storage_id: str,
        expires_at: datetime | None,
        now: datetime | None = None,
    ) -> File:
        now = ensure_utc_aware(now) or now_utc()
        file = StoredFiles.get(db, storage_id)
        file.expires_at = _require_future(expires_at, now)
        db.commit()
        db.refresh(file)
        logger.info(
            "file_expiration_updated storage_id=%s expires_at=%s",
            storage_id,
            expires_at.isoformat() if expires_at else None,
        )
        return file

    @staticmethod
    def delete(db: Session, storage_id: str) -> tuple[str, StorageProvider] | None:
        """Delete a file with its access keys and grants.

        Returns the released blob reference, or None when nothing was stored.
        """
        file = _find_file(db, storage_id)
        if not file:
            return None
        released = (file.storage_id, file.storage_provider)
        access_rows, grants = _delete_file_cascade(db, file)
        db.commit()
        logger.info(
            "file_deleted storage_id=%s access_keys=%d grants=%d",
            storage_id,
            access_rows,
            grants,
        )
        return released


class FileAccessKeys:
    @staticmethod
    def mint(db: Session, storage_id: str, access_key: str) -> FileAccess:
        key = normalize_access_key(access_key)
        if not key:
            raise InvalidArgumentError("Access key cannot be empty.")
        file = _find_file(db, storage_id)
        if not file:
            raise NotFoundError("File not found.")
        if _find_access(db, storage_id, key):
            raise DuplicateKeyError("Access key already exists for this file.")

        record = FileAccess(file_id=file.id, storage_id=storage_id, access_key=key)
        db.add(record)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise DuplicateKeyError("Access key already exists for this file.") from exc
        db.refresh(record)
        logger.info("access_key_minted storage_id=%s", storage_id)
        return record

    @staticmethod
    def revoke(db: Session, storage_id: str, access_key: str) -> None:
        key = normalize_access_key(access_key)
        if not key:
            raise InvalidArgumentError("Access key cannot be empty.")
        if not _find_file(db, storage_id):
            raise NotFoundError("File not found.")
        record = _find_access(db, storage_id, key)
        if not record:
            raise NotFoundError("Access key not found for this file.")
        remaining = (
            db.query(FileAccess).filter(FileAccess.storage_id == storage_id).limit(2).count()
        )
        if remaining <= 1:
            raise InvalidArgumentError("Cannot remove the last access key from a file.")
        db.delete(record)
        db.commit()
        logger.info("access_key_revoked storage_id=%s", storage_id)

    @staticmethod
    def has_access(db: Session, storage_id: str, access_key: str | None) -> bool:
        key = normalize_access_key(access_key)
        if not key:
            return False
        return _find_access(db, storage_id, key) is not None

    @staticmethod
    def list_for_file(db: Session, storage_id: str) -> list[str]:
        rows = (
            db.query(FileAccess.access_key)
            .filter(FileAccess.storage_id == storage_id)
            .order_by(FileAccess.created_at.asc())
            .all()
        )
        return [row.access_key for row in rows]


class DownloadGrants:
    @staticmethod
    def create(
        db: Session,
        storage_id: str,
        *,
        expires_at: datetime | None = None,
        max_uses: int | None | _Unset = USE_DEFAULT,
        password: str | None = None,
        shareable_link: bool = False,
        now: datetime | None = None,
    ) -> DownloadGrant:
        now = ensure_utc_aware(now) or now_utc()
        if max_uses is USE_DEFAULT:
            max_uses = settings.default_max_download_uses
        if max_uses is not None and (isinstance(max_uses, bool) or max_uses < 1):
            raise InvalidArgumentError(
                "maxUses must be at least 1 or null for unlimited."
            )

        file = _find_file(db, storage_id)
        if not file:
            raise NotFoundError("File not found.")
        if is_expired(file.expires_at, now):
            raise InvalidArgumentError("File expired.")
        expires_at = _require_future(expires_at, now)

        password_hash = None
        if password is not None:
            if not password.strip():
                raise InvalidArgumentError("Password cannot be empty.")
            password_hash = PASSWORD_CONTEXT.hash(password)

        grant = DownloadGrant(
            storage_id=storage_id,
            expires_at=expires_at,
            max_uses=max_uses,
            use_count=0,
            shareable_link=shareable_link,
            password_hash=password_hash,
            created_at=now,
        )
        db.add(grant)
        db.commit()
        db.refresh(grant)
        logger.info(
            "download_grant_created grant_id=%s storage_id=%s max_uses=%s",
            grant.id,
            storage_id,
            max_uses,
        )
        return grant

    @staticmethod
    def get(db: Session, grant_id) -> DownloadGrant:
        grant = db.get(DownloadGrant, _parse_id(grant_id, "Download grant not found."))
        if not grant:
            raise NotFoundError("Download grant not found.")
        return grant

    @staticmethod
    def list(
        db: Session, storage_id: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[DownloadGrant]:
        query = db.query(DownloadGrant)
        if storage_id:
            query = query.filter(DownloadGrant.storage_id == storage_id)
        return (
            query.order_by(DownloadGrant.created_at.desc())
            .limit(limit)
            .offset(offset)
            .all()
        )

    @staticmethod
    def revoke(db: Session, grant_id) -> None:
        grant = DownloadGrants.get(db, grant_id)
        db.delete(grant)
        db.commit()
        logger.info("download_grant_revoked grant_id=%s", grant_id)

    @staticmethod
    def verify_password(grant: DownloadGrant, password: str | None) -> bool:
        if not grant.password_hash:
            return True
        if not password or not password.strip():
            return False
        return bool(PASSWORD_CONTEXT.verify(password, grant.password_hash))

    @staticmethod
    def redeem(db: Session, grant_id, now: datetime | None = None) -> RedemptionOutcome:
        """Take one use of a grant.

        The expiry and use-count checks and the increment happen in a single
        UPDATE, so the counter can never pass ``max_uses``. The grant is not
        deleted here when it runs out; the download path discards it on the
        next attempt, and revoke or the sweep remove it otherwise.
        """
        now = ensure_utc_aware(now) or now_utc()
        grant_uuid = _parse_id(grant_id, "Download grant not found.")

        stmt = (
            update(DownloadGrant)
            .where(DownloadGrant.id == grant_uuid)
            .where(
                or_(DownloadGrant.expires_at.is_(None), DownloadGrant.expires_at > now)
            )
            .where(
                or_(
                    DownloadGrant.max_uses.is_(None),
                    DownloadGrant.use_count < DownloadGrant.max_uses,
                )
            )
            .values(use_count=DownloadGrant.use_count + 1)
            .execution_options(synchronize_session=False)
        )
        result = db.execute(stmt)
        if result.rowcount == 1:
            row = db.execute(
                select(DownloadGrant.storage_id, DownloadGrant.use_count).where(
                    DownloadGrant.id == grant_uuid
                )
            ).one()
            db.commit()
            GRANT_REDEMPTIONS.labels(outcome=RedemptionStatus.allowed.value).inc()
            logger.info(
                "grant_redeemed grant_id=%s use_count=%d", grant_uuid, row.use_count
            )
            return RedemptionOutcome(
                grant_id=grant_uuid,
                status=RedemptionStatus.allowed,
                storage_id=row.storage_id,
                use_count=row.use_count,
            )

        grant = db.get(DownloadGrant, grant_uuid, populate_existing=True)
        db.commit()
        if grant is None:
            GRANT_REDEMPTIONS.labels(outcome="not_found").inc()
            raise NotFoundError("Download grant not found.")

        if is_expired(grant.expires_at, now):
            status = RedemptionStatus.expired
        else:
            status = RedemptionStatus.exhausted
        GRANT_REDEMPTIONS.labels(outcome=status.value).inc()
        logger.info("grant_denied grant_id=%s reason=%s", grant_uuid, status.value)
        return RedemptionOutcome(
            grant_id=grant_uuid,
            status=status,
            storage_id=grant.storage_id,
            use_count=grant.use_count,
        )


class Sweeper:
    @staticmethod
    def _expired_ids(db: Session, model, now: datetime, limit: int) -> list[uuid.UUID]:
        return list(
            db.execute(
                select(model.id)
                .where(model.expires_at.is_not(None))
                .where(model.expires_at <= now)
                .order_by(model.expires_at.asc())
                .limit(limit)
            ).scalars()
        )

    @staticmethod
    def sweep_expired(
        db: Session, now: datetime | None = None, limit: int | None = None
    ) -> SweepResult:
        """Delete pending uploads, grants and files whose expiry is <= now.

        Each table is scanned through its expiry index and capped at ``limit``
        rows; ``has_more`` reports whether any table hit the cap. Expired files
        take their access keys and grants with them.
        """
        now = ensure_utc_aware(now) or now_utc()
        limit = settings.sweep_batch_limit if limit is None else limit
        if limit < 1:
            raise InvalidArgumentError("limit must be at least 1.")

        result = SweepResult()

        upload_ids = Sweeper._expired_ids(db, PendingUpload, now, limit)
        if upload_ids:
            db.execute(
                delete(PendingUpload)
                .where(PendingUpload.id.in_(upload_ids))
                .execution_options(synchronize_session=False)
            )
        result.pending_uploads = len(upload_ids)

        grant_ids = Sweeper._expired_ids(db, DownloadGrant, now, limit)
        if grant_ids:
            db.execute(
                delete(DownloadGrant)
                .where(DownloadGrant.id.in_(grant_ids))
                .execution_options(synchronize_session=False)
            )
        result.download_grants = len(grant_ids)

        file_ids = Sweeper._expired_ids(db, File, now, limit)
        if file_ids:
            for file in db.query(File).filter(File.id.in_(file_ids)).all():
                result.released_blobs.append((file.storage_id, file.storage_provider))
                access_rows, grants = _delete_file_cascade(db, file)
                result.cascaded_access_keys += access_rows
                result.cascaded_grants += grants
        result.files = len(file_ids)

        db.commit()

        result.has_more = any(
            count == limit
            for count in (result.pending_uploads, result.download_grants, result.files)
        )
        for table, count in (
            ("pending_uploads", result.pending_uploads),
            ("download_grants", result.download_grants + result.cascaded_grants),
            ("files", result.files),
            ("file_access", result.cascaded_access_keys),
        ):
            if count:
                SWEEP_DELETIONS.labels(table=table).inc(count)
        if result.deleted_count:
            logger.info(
                "expired_records_swept pending_uploads=%d grants=%d files=%d has_more=%s",
                result.pending_uploads,
                result.download_grants,
                result.files,
                result.has_more,
            )
        return result


pending_uploads = PendingUploads()
stored_files = StoredFiles()
file_access = FileAccessKeys()
download_grants = DownloadGrants()
sweeper = Sweeper()
