"""Stored file, access key, download grant and pending upload records.

Each expiry-bearing table carries an index on ``expires_at`` so the sweep can
bound its scan to ``expires_at <= now``.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from files_control.db import Base


class StorageProvider(enum.Enum):
    """Backing store holding a file's bytes."""

    primary = "primary"
    external = "external"


class File(Base):
    """A finalized upload, referenced by its blob storage id."""

    __tablename__ = "files"
    __table_args__ = (Index("ix_files_expires_at", "expires_at"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    storage_id: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    storage_provider: Mapped[StorageProvider] = mapped_column(
        Enum(StorageProvider), nullable=False, default=StorageProvider.primary
    )
    virtual_path: Mapped[str | None] = mapped_column(String(1024), unique=True)
    size: Mapped[int | None] = mapped_column(BigInteger)
    sha256: Mapped[str | None] = mapped_column(String(64))
    content_type: Mapped[str | None] = mapped_column(String(255))
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class FileAccess(Base):
    """An opaque access key allowed to read one file."""

    __tablename__ = "file_access"
    __table_args__ = (
        UniqueConstraint(
            "access_key", "storage_id", name="uq_file_access_access_key_storage_id"
        ),
        Index("ix_file_access_storage_id", "storage_id"),
        Index("ix_file_access_access_key", "access_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    file_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("files.id", ondelete="CASCADE"), nullable=False
    )
    storage_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    access_key: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )


class DownloadGrant(Base):
    """Time- and/or use-bounded permission to download a file."""

    __tablename__ = "download_grants"
    __table_args__ = (
        Index("ix_download_grants_storage_id", "storage_id"),
        Index("ix_download_grants_expires_at", "expires_at"),
        CheckConstraint("use_count >= 0", name="ck_download_grants_use_count"),
        CheckConstraint(
            "max_uses IS NULL OR max_uses >= 1", name="ck_download_grants_max_uses"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    storage_id: Mapped[str] = mapped_column(String(1024), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    max_uses: Mapped[int | None] = mapped_column(Integer)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    shareable_link: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    password_hash: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


class PendingUpload(Base):
    """Reservation for an upload that has not been finalized yet."""

    __tablename__ = "pending_uploads"
    __table_args__ = (Index("ix_pending_uploads_expires_at", "expires_at"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
