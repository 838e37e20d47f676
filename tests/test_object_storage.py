from unittest.mock import MagicMock

import pytest

from files_control.config import R2Config, Settings
from files_control.models.files import StorageProvider
from files_control.services.errors import InvalidArgumentError
from files_control.services.object_storage import (
    BlobStores,
    LocalBlobStore,
    ObjectNotFoundError,
    ObjectStorageError,
    R2BlobStore,
    get_blob_store,
)
from tests.mocks import FakeClientError, FakeS3Client

R2 = R2Config(
    account_id="acct",
    access_key_id="id",
    secret_access_key="secret",
    bucket_name="bucket",
)


def test_local_store_round_trip(tmp_path):
    store = LocalBlobStore(tmp_path)
    key = store.new_key()
    store.put(key, b"hello", "text/plain")

    assert store.exists(key)
    assert store.get(key) == b"hello"
    stream = store.stream(key)
    assert b"".join(stream.chunks) == b"hello"
    assert stream.content_length == 5

    store.delete(key)
    assert not store.exists(key)
    with pytest.raises(ObjectNotFoundError):
        store.get(key)


def test_local_store_rejects_path_traversal(tmp_path):
    store = LocalBlobStore(tmp_path / "root")
    with pytest.raises(PermissionError):
        store.put("../escape", b"x", None)


def test_local_store_has_no_direct_urls(tmp_path):
    store = LocalBlobStore(tmp_path)
    assert store.download_url("k", 60) is None
    assert store.upload_url("k", 60) is None


def test_r2_store_uses_bucket_and_presigns():
    client = FakeS3Client()
    store = R2BlobStore(R2, client=client)

    store.put("a.txt", b"data", "text/plain")
    assert client.objects[("bucket", "a.txt")]["ContentType"] == "text/plain"
    assert store.get("a.txt") == b"data"
    assert store.exists("a.txt")
    assert not store.exists("missing")

    url = store.download_url("a.txt", 120)
    assert url.startswith("https://r2.example/bucket/a.txt")
    assert client.presigned[-1] == (
        "get_object",
        {"Bucket": "bucket", "Key": "a.txt"},
        120,
    )
    store.upload_url("b.txt", 60)
    assert client.presigned[-1][0] == "put_object"


def test_r2_store_maps_missing_and_failures():
    client = FakeS3Client()
    store = R2BlobStore(R2, client=client)
    with pytest.raises(ObjectNotFoundError):
        store.stream("missing")

    broken = MagicMock()
    broken.get_object.side_effect = FakeClientError("AccessDenied")
    broken.delete_object.side_effect = FakeClientError("AccessDenied")
    store = R2BlobStore(R2, client=broken)
    with pytest.raises(ObjectStorageError) as exc_info:
        store.get("key")
    assert not isinstance(exc_info.value, ObjectNotFoundError)
    with pytest.raises(ObjectStorageError):
        store.delete("key")


def test_blob_stores_default_provider(tmp_path):
    plain = BlobStores(Settings(r2=None, blob_storage_dir=str(tmp_path)))
    assert plain.default_provider() is StorageProvider.primary
    assert isinstance(plain.get(StorageProvider.primary), LocalBlobStore)
    with pytest.raises(InvalidArgumentError, match="R2 configuration is required"):
        plain.get(StorageProvider.external)

    with_r2 = BlobStores(Settings(r2=R2))
    assert with_r2.external_configured
    assert with_r2.default_provider() is StorageProvider.external


def test_release_logs_and_swallows_failures():
    stores = BlobStores(Settings(r2=None))
    broken = MagicMock()
    broken.provider = StorageProvider.external
    broken.delete.side_effect = ObjectStorageError("boom")
    stores.register(broken)

    assert stores.release("key", StorageProvider.external) is False
    assert stores.release_all([("a", StorageProvider.external)]) == 0


def test_get_blob_store_uses_explicit_settings(tmp_path):
    store = get_blob_store(
        StorageProvider.primary, Settings(r2=None, blob_storage_dir=str(tmp_path))
    )
    assert isinstance(store, LocalBlobStore)
    assert store.root == tmp_path
    with pytest.raises(InvalidArgumentError):
        get_blob_store(StorageProvider.external, Settings(r2=None))
