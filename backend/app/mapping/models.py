"""SQLAlchemy ORM models for bucket and object mapping tables."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, String, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MappingBase(DeclarativeBase):
    """Base declarative class for mapping store models."""


class BucketRow(MappingBase):
    """Bucket created implicitly on the first object write."""

    __tablename__ = "buckets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class ObjectRow(MappingBase):
    """One ledger receipt bound to a bucket key.

    Superseded and deleted rows are kept as history; only one row per
    ``(bucket, key)`` may have ``deleted`` unset.
    """

    __tablename__ = "objects"
    __table_args__ = (
        Index("idx_objects_bucket_key", "bucket", "key"),
        Index(
            "uq_objects_live_key",
            "bucket",
            "key",
            unique=True,
            sqlite_where=text("deleted = 0"),
            postgresql_where=text("deleted = false"),
        ),
        Index("idx_objects_last_modified", "last_modified"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    bucket: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str] = mapped_column(String(1024), nullable=False)
    receipt_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    content_type: Mapped[str] = mapped_column(String(255), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    etag: Mapped[str] = mapped_column(String(80), nullable=False)
    user_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    last_modified: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))


__all__ = ["MappingBase", "BucketRow", "ObjectRow"]
