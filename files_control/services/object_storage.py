"""Blob stores behind the two storage providers.

The primary store keeps bytes on local disk; the external store is an R2
bucket reached through the S3 API.
"""

from __future__ import annotations

import logging
import mimetypes
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from files_control.config import R2Config, Settings, settings as default_settings
from files_control.models.files import StorageProvider
from files_control.services.errors import InvalidArgumentError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class ObjectStorageError(Exception):
    """Generic object storage failure."""


class ObjectNotFoundError(ObjectStorageError):
    """Raised when object is missing."""


@dataclass
class StreamResult:
    """Streaming metadata for download responses."""

    chunks: Iterator[bytes]
    content_type: str | None
    content_length: int | None


class BlobStore(Protocol):
    """Storage provider interface."""

    provider: StorageProvider

    def new_key(self) -> str: ...
    def put(self, key: str, data: bytes, content_type: str | None) -> None: ...
    def get(self, key: str) -> bytes: ...
    def stream(self, key: str) -> StreamResult: ...
    def exists(self, key: str) -> bool: ...
    def delete(self, key: str) -> None: ...
    def download_url(self, key: str, expires_in: int) -> str | None: ...
    def upload_url(self, key: str, expires_in: int) -> str | None: ...


def require_r2_config(config: R2Config | None, context: str | None = None) -> R2Config:
    if config is not None:
        return config
    suffix = f" for {context}" if context else ""
    raise InvalidArgumentError(f"R2 configuration is required{suffix}.")


class LocalBlobStore:
    """Primary provider: blobs stored as files under one root directory."""

    provider = StorageProvider.primary

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def new_key(self) -> str:
        return uuid.uuid4().hex

    def _path(self, key: str) -> Path:
        root = self.root.resolve()
        path = (root / key).resolve()
        try:
            path.relative_to(root)
        except ValueError as exc:
            raise PermissionError("Access denied: path outside storage directory") from exc
        return path

    def put(self, key: str, data: bytes, content_type: str | None) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as exc:
            raise ObjectStorageError("Failed to write object") from exc

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)
        return path.read_bytes()

    def stream(self, key: str) -> StreamResult:
        path = self._path(key)
        if not path.is_file():
            raise ObjectNotFoundError(key)

        def _chunks() -> Iterator[bytes]:
            with path.open("rb") as handle:
                while True:
                    chunk = handle.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

        return StreamResult(
            chunks=_chunks(),
            content_type=mimetypes.guess_type(path.name)[0],
            content_length=path.stat().st_size,
        )

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise ObjectStorageError("Failed to delete object") from exc

    def download_url(self, key: str, expires_in: int) -> str | None:
        # Served through the download route; there is no direct URL.
        return None

    def upload_url(self, key: str, expires_in: int) -> str | None:
        return None


class R2BlobStore:
    """External provider: Cloudflare R2 bucket through boto3."""

    provider = StorageProvider.external

    def __init__(self, config: R2Config, client: Any | None = None) -> None:
        self.config = config
        self.bucket_name = config.bucket_name
        if client is not None:
            self.client = client
            return
        import boto3

        self.client = boto3.client(
            "s3",
            endpoint_url=config.endpoint_url,
            aws_access_key_id=config.access_key_id,
            aws_secret_access_key=config.secret_access_key,
            region_name="auto",
        )

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            err = response.get("Error", {})
            if isinstance(err, dict):
                return str(err.get("Code", ""))
        return ""

    def new_key(self) -> str:
        return str(uuid.uuid4())

    def put(self, key: str, data: bytes, content_type: str | None) -> None:
        kwargs: dict = {"Bucket": self.bucket_name, "Key": key, "Body": data}
        if content_type:
            kwargs["ContentType"] = content_type
        try:
            self.client.put_object(**kwargs)
        except Exception as exc:
            raise ObjectStorageError("Failed to upload object") from exc

    def get(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            if self._error_code(exc) in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError("Failed to download object") from exc
        return obj["Body"].read()

    def stream(self, key: str) -> StreamResult:
        try:
            obj = self.client.get_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            if self._error_code(exc) in {"404", "NoSuchKey"}:
                raise ObjectNotFoundError(key) from exc
            raise ObjectStorageError("Failed to stream object") from exc

        body = obj["Body"]
        return StreamResult(
            chunks=iter(lambda: body.read(CHUNK_SIZE), b""),
            content_type=obj.get("ContentType"),
            content_length=obj.get("ContentLength"),
        )

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except Exception as exc:
            if self._error_code(exc) in {"404", "NoSuchKey"}:
                return False
            raise ObjectStorageError("Failed to check object") from exc

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket_name, Key=key)
        except Exception as exc:
            raise ObjectStorageError("Failed to delete object") from exc

    def download_url(self, key: str, expires_in: int) -> str | None:
        return self.client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket_name, "Key": key},
            ExpiresIn=expires_in,
        )

    def upload_url(self, key: str, expires_in: int) -> str | None:
        return self.client.generate_presigned_url(
            "put_object",
            Params={"Bucket": self.bucket_name, "Key": key},
            ExpiresIn=expires_in,
        )


class BlobStores:
    """Resolves the store for a provider from one explicit Settings object."""

    def __init__(self, config: Settings | None = None) -> None:
        self.settings = config or default_settings
        self._stores: dict[StorageProvider, BlobStore] = {}

    @property
    def external_configured(self) -> bool:
        return self.settings.r2 is not None or StorageProvider.external in self._stores

    def default_provider(self) -> StorageProvider:
        if self.external_configured:
            return StorageProvider.external
        return StorageProvider.primary

    def get(self, provider: StorageProvider) -> BlobStore:
        if provider not in self._stores:
            if provider is StorageProvider.external:
                config = require_r2_config(self.settings.r2, "external storage")
                self._stores[provider] = R2BlobStore(config)
            else:
                self._stores[provider] = LocalBlobStore(self.settings.blob_storage_dir)
        return self._stores[provider]

    def register(self, store: BlobStore) -> None:
        self._stores[store.provider] = store

    def release(self, storage_id: str, provider: StorageProvider) -> bool:
        """Delete a blob whose record is already gone; failures are logged."""
        try:
            self.get(provider).delete(storage_id)
        except (ObjectStorageError, InvalidArgumentError, PermissionError) as exc:
            logger.warning(
                "blob_release_failed storage_id=%s provider=%s error=%s",
                storage_id,
                provider.value,
                exc,
            )
            return False
        return True

    def release_all(self, refs: Iterable[tuple[str, StorageProvider]]) -> int:
        return sum(1 for storage_id, provider in refs if self.release(storage_id, provider))


blob_stores = BlobStores()


def get_blob_store(provider: StorageProvider, config: Settings | None = None) -> BlobStore:
    if config is None:
        return blob_stores.get(provider)
    return BlobStores(config).get(provider)
