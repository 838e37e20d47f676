"""Move a stored file's bytes between the primary and external providers."""

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from files_control.logging import get_logger
from files_control.models.files import DownloadGrant, File, FileAccess, StorageProvider
from files_control.schemas.files import TransferResult
from files_control.services.access_grants import StoredFiles, normalize_virtual_path
from files_control.services.errors import (
    DuplicateKeyError,
    InvalidArgumentError,
    NotFoundError,
)
from files_control.services.object_storage import (
    BlobStores,
    ObjectNotFoundError,
    blob_stores,
)

logger = get_logger(__name__)


def _basename(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = value.rstrip("/")
    if not trimmed:
        return None
    return trimmed.rsplit("/", 1)[-1] or None


def _result(file: File) -> TransferResult:
    return TransferResult(
        storage_id=file.storage_id,
        storage_provider=file.storage_provider,
        virtual_path=file.virtual_path,
    )


class TransferService:
    def __init__(self, stores: BlobStores | None = None) -> None:
        self.stores = stores or blob_stores

    @staticmethod
    def _resolve_virtual_path(file: File, virtual_path: str | None) -> str | None:
        if virtual_path is None:
            return None
        resolved = normalize_virtual_path(virtual_path)
        if not resolved:
            raise InvalidArgumentError("Virtual path cannot be empty.")
        if resolved.endswith("/"):
            name = _basename(file.virtual_path) or _basename(file.storage_id)
            if not name:
                raise InvalidArgumentError(
                    "Virtual path ends with '/' but filename could not be inferred. "
                    "Provide a full path."
                )
            resolved = f"{resolved.rstrip('/')}/{name}"
        return resolved

    def transfer(
        self,
        db: Session,
        storage_id: str,
        target_provider: StorageProvider,
        virtual_path: str | None = None,
    ) -> TransferResult:
        """Copy a file to ``target_provider`` and re-point every reference.

        The file row, its access keys and its grants move to the new storage
        id in one transaction; the source blob is released afterwards.
        """
        file = StoredFiles.get(db, storage_id)
        resolved_path = self._resolve_virtual_path(file, virtual_path)
        if resolved_path:
            existing = StoredFiles.get_by_virtual_path(db, resolved_path)
            if existing and existing.id != file.id:
                raise DuplicateKeyError("Virtual path already exists.")

        source_provider = file.storage_provider
        if source_provider is target_provider:
            if not resolved_path or resolved_path == file.virtual_path:
                raise InvalidArgumentError("File already stored in target provider.")
            file.virtual_path = resolved_path
            db.commit()
            db.refresh(file)
            logger.info(
                "file_virtual_path_updated storage_id=%s virtual_path=%s",
                file.storage_id,
                resolved_path,
            )
            return _result(file)

        source = self.stores.get(source_provider)
        target = self.stores.get(target_provider)

        if target_provider is StorageProvider.external:
            new_storage_id = resolved_path or file.virtual_path or target.new_key()
        else:
            new_storage_id = target.new_key()
        existing = StoredFiles.get_by_storage_id(db, new_storage_id)
        if existing and existing.id != file.id:
            raise DuplicateKeyError("Storage ID already exists.")

        try:
            data = source.get(file.storage_id)
        except ObjectNotFoundError as exc:
            raise NotFoundError("File not found.") from exc
        target.put(new_storage_id, data, file.content_type)

        old_storage_id = file.storage_id
        db.execute(
            update(FileAccess)
            .where(FileAccess.storage_id == old_storage_id)
            .values(storage_id=new_storage_id)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(DownloadGrant)
            .where(DownloadGrant.storage_id == old_storage_id)
            .values(storage_id=new_storage_id)
            .execution_options(synchronize_session=False)
        )
        file.storage_id = new_storage_id
        file.storage_provider = target_provider
        if resolved_path is not None:
            file.virtual_path = resolved_path
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            self.stores.release(new_storage_id, target_provider)
            raise DuplicateKeyError("Storage ID already exists.") from exc
        db.refresh(file)

        self.stores.release(old_storage_id, source_provider)
        logger.info(
            "file_transferred old_storage_id=%s storage_id=%s provider=%s",
            old_storage_id,
            new_storage_id,
            target_provider.value,
        )
        return _result(file)


transfers = TransferService()
