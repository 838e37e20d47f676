import os
import sqlite3
import uuid
from datetime import UTC, datetime, timedelta

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
for _name in ("R2_ACCOUNT_ID", "R2_ACCESS_KEY_ID", "R2_SECRET_ACCESS_KEY", "R2_BUCKET_NAME"):
    os.environ.pop(_name, None)

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Register UUID adapter for SQLite - store as string
sqlite3.register_adapter(uuid.UUID, lambda u: str(u))

# Monkey-patch SQLAlchemy's UUID type for SQLite compatibility
# This must happen before any models are imported
from sqlalchemy.sql import sqltypes

_original_uuid_bind_processor = sqltypes.Uuid.bind_processor
_original_uuid_result_processor = sqltypes.Uuid.result_processor


def _sqlite_uuid_bind_processor(self, dialect):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return str(value)
                return str(uuid.UUID(value)) if value else None
            return None
        return process
    return _original_uuid_bind_processor(self, dialect)


def _sqlite_uuid_result_processor(self, dialect, coltype):
    if dialect.name == "sqlite":
        def process(value):
            if value is not None:
                if isinstance(value, uuid.UUID):
                    return value
                return uuid.UUID(value) if value else None
            return None
        return process
    return _original_uuid_result_processor(self, dialect, coltype)


setattr(sqltypes.Uuid, "bind_processor", _sqlite_uuid_bind_processor)
setattr(sqltypes.Uuid, "result_processor", _sqlite_uuid_result_processor)

from files_control.db import Base
from files_control.models import files as _files_models  # noqa: F401
from files_control.models import user as _user_models  # noqa: F401
from files_control.services import access_grants
from files_control.services.object_storage import LocalBlobStore, blob_stores
from files_control.services.users import users

NOW = datetime(2030, 1, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine():
    database_url = os.getenv("TEST_DATABASE_URL")
    if database_url:
        engine = create_engine(database_url)
    else:
        engine = create_engine(
            "sqlite+pysqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    Base.metadata.create_all(engine)
    return engine


@pytest.fixture()
def db_session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    SessionLocal = sessionmaker(bind=connection, autoflush=False, autocommit=False)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        if transaction.is_active:
            transaction.rollback()
        connection.close()


@pytest.fixture()
def now():
    return NOW


@pytest.fixture()
def local_store(tmp_path, monkeypatch):
    """Primary blob store rooted in a temporary directory."""
    store = LocalBlobStore(tmp_path / "blobs")
    monkeypatch.setattr(blob_stores, "_stores", {})
    blob_stores.register(store)
    return store


@pytest.fixture()
def stored_file(db_session, now):
    """A registered primary-store file with one access key and no expiry."""
    return access_grants.stored_files.register(
        db_session,
        f"blob-{uuid.uuid4().hex}",
        access_keys=["owner-key"],
        now=now - timedelta(hours=1),
    )


@pytest.fixture()
def api_user(db_session):
    user, token = users.create(db_session, f"test-{uuid.uuid4().hex}@example.com", "Test")
    return user, token


@pytest.fixture()
def auth_headers(api_user):
    _, token = api_user
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def client(db_session, local_store):
    from fastapi.testclient import TestClient

    from files_control.db import get_db
    from files_control.main import app

    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
