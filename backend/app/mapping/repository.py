"""Repository handling persistence for bucket and object mapping rows."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Mapping, Optional, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.mapping.models import BucketRow, ObjectRow


class MappingRepository:
    """Provide database access helpers scoped to one session transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @property
    def session(self) -> AsyncSession:
        """Return the underlying SQLAlchemy session."""

        return self._session

    async def ensure_bucket(self, name: str, timestamp: Optional[datetime] = None) -> BucketRow:
        """Return the live bucket row, creating it when absent."""

        result = await self._session.execute(
            select(BucketRow).where(BucketRow.name == name)
        )
        bucket = result.scalar_one_or_none()
        if bucket is not None:
            if bucket.deleted:
                bucket.deleted = False
                await self._session.flush()
            return bucket
        bucket = BucketRow(name=name, created_at=timestamp or datetime.now(timezone.utc))
        self._session.add(bucket)
        await self._session.flush()
        return bucket

    async def get_live_object(
        self, bucket: str, key: str, *, for_update: bool = False
    ) -> Optional[ObjectRow]:
        """Retrieve the live row for a key, optionally locking it."""

        statement = select(ObjectRow).where(
            ObjectRow.bucket == bucket,
            ObjectRow.key == key,
            ObjectRow.deleted.is_(False),
        )
        if for_update:
            statement = statement.with_for_update()
        result = await self._session.execute(statement)
        return result.scalar_one_or_none()

    async def latest_modified(self, bucket: str, key: str) -> Optional[datetime]:
        """Return the newest ``last_modified`` across live and historical rows."""

        result = await self._session.execute(
            select(func.max(ObjectRow.last_modified)).where(
                ObjectRow.bucket == bucket, ObjectRow.key == key
            )
        )
        return result.scalar_one_or_none()

    async def supersede(self, row: ObjectRow, timestamp: datetime) -> None:
        """Retire a live row so a newer receipt can take its place."""

        row.deleted = True
        row.deleted_at = timestamp
        await self._session.flush()

    async def insert_live_object(
        self,
        *,
        bucket: str,
        key: str,
        receipt_id: str,
        content_type: str,
        size: int,
        etag: str,
        metadata: Mapping[str, str],
        last_modified: datetime,
    ) -> ObjectRow:
        """Persist a new live row."""

        row = ObjectRow(
            bucket=bucket,
            key=key,
            receipt_id=receipt_id,
            content_type=content_type,
            size=size,
            etag=etag,
            user_metadata=dict(metadata),
            last_modified=last_modified,
            created_at=last_modified,
            updated_at=last_modified,
            deleted=False,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def soft_delete_object(self, bucket: str, key: str, timestamp: datetime) -> bool:
        """Flag the live row as deleted; return whether one existed."""

        result = await self._session.execute(
            update(ObjectRow)
            .where(
                ObjectRow.bucket == bucket,
                ObjectRow.key == key,
                ObjectRow.deleted.is_(False),
            )
            .values(deleted=True, deleted_at=timestamp, updated_at=timestamp)
        )
        return (result.rowcount or 0) > 0

    async def scan_live_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        start_after: str = "",
        limit: Optional[int] = None,
    ) -> Sequence[ObjectRow]:
        """Return live rows ordered by key, bounded by prefix and marker."""

        statement = select(ObjectRow).where(
            ObjectRow.bucket == bucket,
            ObjectRow.deleted.is_(False),
        )
        if prefix:
            # Case-sensitive match; LIKE folds ASCII case on SQLite.
            statement = statement.where(
                ObjectRow.key >= prefix,
                func.substr(ObjectRow.key, 1, len(prefix)) == prefix,
            )
        if start_after:
            statement = statement.where(ObjectRow.key > start_after)
        statement = statement.order_by(ObjectRow.key)
        if limit is not None:
            statement = statement.limit(limit)
        result = await self._session.execute(statement)
        return list(result.scalars().all())

    async def list_buckets(self) -> List[BucketRow]:
        """Return live buckets ordered by name."""

        result = await self._session.execute(
            select(BucketRow).where(BucketRow.deleted.is_(False)).order_by(BucketRow.name)
        )
        return list(result.scalars().all())

    async def count_live_objects(self) -> int:
        """Return the number of live object rows."""

        result = await self._session.execute(
            select(func.count()).select_from(ObjectRow).where(ObjectRow.deleted.is_(False))
        )
        return int(result.scalar_one())

    async def count_buckets(self) -> int:
        """Return the number of live buckets."""

        result = await self._session.execute(
            select(func.count()).select_from(BucketRow).where(BucketRow.deleted.is_(False))
        )
        return int(result.scalar_one())

    async def commit(self) -> None:
        """Commit the current transaction."""

        await self._session.commit()

    async def rollback(self) -> None:
        """Rollback the current transaction."""

        await self._session.rollback()


__all__ = ["MappingRepository"]
