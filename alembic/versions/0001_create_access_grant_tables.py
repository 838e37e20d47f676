"""create access grant tables

Revision ID: 0001_access_grants
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = "0001_access_grants"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


storage_provider = sa.Enum("primary", "external", name="storageprovider")


def upgrade() -> None:
    op.create_table(
        "files",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("storage_id", sa.String(1024), nullable=False, unique=True),
        sa.Column("storage_provider", storage_provider, nullable=False),
        sa.Column("virtual_path", sa.String(1024), nullable=True, unique=True),
        sa.Column("size", sa.BigInteger, nullable=True),
        sa.Column("sha256", sa.String(64), nullable=True),
        sa.Column("content_type", sa.String(255), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_files_expires_at", "files", ["expires_at"])

    op.create_table(
        "file_access",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "file_id",
            UUID(as_uuid=True),
            sa.ForeignKey("files.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("storage_id", sa.String(1024), nullable=False),
        sa.Column("access_key", sa.String(255), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "access_key", "storage_id", name="uq_file_access_access_key_storage_id"
        ),
    )
    op.create_index("ix_file_access_storage_id", "file_access", ["storage_id"])
    op.create_index("ix_file_access_access_key", "file_access", ["access_key"])

    op.create_table(
        "download_grants",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("storage_id", sa.String(1024), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("max_uses", sa.Integer, nullable=True),
        sa.Column("use_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "shareable_link", sa.Boolean, nullable=False, server_default=sa.false()
        ),
        sa.Column("password_hash", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("use_count >= 0", name="ck_download_grants_use_count"),
        sa.CheckConstraint(
            "max_uses IS NULL OR max_uses >= 1", name="ck_download_grants_max_uses"
        ),
    )
    op.create_index("ix_download_grants_storage_id", "download_grants", ["storage_id"])
    op.create_index("ix_download_grants_expires_at", "download_grants", ["expires_at"])

    op.create_table(
        "pending_uploads",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_pending_uploads_expires_at", "pending_uploads", ["expires_at"])

    op.create_table(
        "users",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(200), nullable=True),
        sa.Column("api_token_hash", sa.String(64), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table("users")
    op.drop_index("ix_pending_uploads_expires_at", table_name="pending_uploads")
    op.drop_table("pending_uploads")
    op.drop_index("ix_download_grants_expires_at", table_name="download_grants")
    op.drop_index("ix_download_grants_storage_id", table_name="download_grants")
    op.drop_table("download_grants")
    op.drop_index("ix_file_access_access_key", table_name="file_access")
    op.drop_index("ix_file_access_storage_id", table_name="file_access")
    op.drop_table("file_access")
    op.drop_index("ix_files_expires_at", table_name="files")
    op.drop_table("files")
    storage_provider.drop(op.get_bind(), checkfirst=True)
