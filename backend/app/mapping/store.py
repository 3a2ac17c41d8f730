"""Transactional mapping store binding bucket keys to ledger receipts."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Mapping, Optional, Tuple

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from backend.app.contracts import BucketRecord, ObjectRecord, StoreStats
from backend.app.errors import InvalidArgument, StoreUnavailable
from backend.app.mapping.migrations.versions import initial
from backend.app.mapping.models import BucketRow, ObjectRow
from backend.app.mapping.repository import MappingRepository

LOGGER = logging.getLogger(__name__)

_TIMESTAMP_STEP = timedelta(microseconds=1)
_RETRY_PAUSE_SECONDS = 0.05
WRITE_TRANSACTION_OPTION = "mapping_write"


def _ensure_timezone(value: datetime) -> datetime:
    """Return a timezone-aware datetime normalised to UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def create_mapping_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create the async engine, preparing SQLite files and pragmas."""

    url = make_url(database_url)
    is_sqlite = url.get_backend_name() == "sqlite"
    if is_sqlite and url.database and url.database != ":memory:":
        Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(database_url, echo=echo, future=True)
    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _record) -> None:  # pragma: no cover - driver hook
            # Transactions are opened explicitly below.
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_transaction(connection) -> None:  # pragma: no cover - driver hook
            # Writers take the lock up front so read-then-write transactions
            # never fail to upgrade. Readers stay deferred and see the last
            # committed snapshot under WAL.
            if connection.get_execution_options().get(WRITE_TRANSACTION_OPTION):
                connection.exec_driver_sql("BEGIN IMMEDIATE")
            else:
                connection.exec_driver_sql("BEGIN")

    return engine


async def begin_write(session: AsyncSession) -> None:
    """Open ``session``'s transaction as a write transaction."""

    await session.connection(execution_options={WRITE_TRANSACTION_OPTION: True})


def _is_encodable(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _require_encodable(name: str, value: str) -> None:
    if not _is_encodable(value):
        raise InvalidArgument(f"{name} is not valid UTF-8: {value!r}")


async def init_schema(engine: AsyncEngine) -> None:
    """Create mapping tables and indexes when missing."""

    async with engine.begin() as connection:
        await connection.run_sync(initial.upgrade)


@dataclass(frozen=True)
class StorePage:
    """Ordered live records plus whether more matching rows exist."""

    records: Tuple[ObjectRecord, ...]
    has_more: bool


class MappingStore:
    """Own the lifecycle of bucket and object rows.

    Writers to the same ``(bucket, key)`` are serialised by a striped
    in-process lock; the partial unique index on live rows rejects any writer
    that slips past it from another process, and the write is retried.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        write_retry_attempts: int = 3,
        lock_stripes: int = 64,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if write_retry_attempts < 1:
            raise ValueError("write_retry_attempts must be at least 1")
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be at least 1")
        self._session_factory = session_factory
        self._write_retry_attempts = write_retry_attempts
        self._locks = [asyncio.Lock() for _ in range(lock_stripes)]
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _lock_for(self, bucket: str, key: str) -> asyncio.Lock:
        return self._locks[hash((bucket, key)) % len(self._locks)]

    def _now(self) -> datetime:
        return _ensure_timezone(self._clock())

    async def upsert_live(
        self,
        bucket: str,
        key: str,
        receipt_id: str,
        content_type: str,
        size: int,
        etag: str,
        metadata: Optional[Mapping[str, str]] = None,
    ) -> ObjectRecord:
        """Atomically make ``receipt_id`` the live content of ``bucket/key``.

        Ensures the bucket exists, retires the previous live row and inserts
        the new one in a single transaction. The last transaction to commit
        wins.

        Raises:
            InvalidArgument: If the bucket or key cannot be stored as UTF-8.
            StoreUnavailable: If the store cannot complete the transaction.
        """

        _require_encodable("Bucket", bucket)
        _require_encodable("Key", key)
        user_metadata = dict(metadata or {})
        last_error: Optional[Exception] = None
        async with self._lock_for(bucket, key):
            for attempt in range(1, self._write_retry_attempts + 1):
                try:
                    return await self._upsert_once(
                        bucket, key, receipt_id, content_type, size, etag, user_metadata
                    )
                except (IntegrityError, OperationalError) as exc:
                    last_error = exc
                    LOGGER.warning(
                        "Concurrent write conflict on %s/%s (attempt %d/%d)",
                        bucket,
                        key,
                        attempt,
                        self._write_retry_attempts,
                    )
                    if attempt < self._write_retry_attempts:
                        await asyncio.sleep(_RETRY_PAUSE_SECONDS * attempt)
                except SQLAlchemyError as exc:
                    LOGGER.exception("Failed to commit mapping for %s/%s", bucket, key)
                    raise StoreUnavailable(f"Failed to store object mapping for {bucket}/{key}") from exc
        raise StoreUnavailable(
            f"Failed to store object mapping for {bucket}/{key} after "
            f"{self._write_retry_attempts} attempts"
        ) from last_error

    async def _upsert_once(
        self,
        bucket: str,
        key: str,
        receipt_id: str,
        content_type: str,
        size: int,
        etag: str,
        metadata: Mapping[str, str],
    ) -> ObjectRecord:
        async with self._session_factory() as session:
            repository = MappingRepository(session)
            try:
                await begin_write(session)
                now = self._now()
                await repository.ensure_bucket(bucket, now)
                previous = await repository.get_live_object(bucket, key, for_update=True)
                latest = await repository.latest_modified(bucket, key)
                if latest is not None:
                    latest = _ensure_timezone(latest)
                    if now <= latest:
                        now = latest + _TIMESTAMP_STEP
                previous_receipt: Optional[str] = None
                if previous is not None:
                    previous_receipt = previous.receipt_id
                    await repository.supersede(previous, now)
                row = await repository.insert_live_object(
                    bucket=bucket,
                    key=key,
                    receipt_id=receipt_id,
                    content_type=content_type,
                    size=size,
                    etag=etag,
                    metadata=metadata,
                    last_modified=now,
                )
                record = self._to_record(row)
                await repository.commit()
            except SQLAlchemyError:
                await repository.rollback()
                raise
        if previous_receipt is not None:
            LOGGER.debug(
                "Superseded receipt %s with %s for %s/%s",
                previous_receipt,
                receipt_id,
                bucket,
                key,
            )
        return record

    async def get_live(self, bucket: str, key: str) -> Optional[ObjectRecord]:
        """Return the live record for a key, or ``None`` when absent or deleted."""

        if not (_is_encodable(bucket) and _is_encodable(key)):
            return None
        try:
            async with self._session_factory() as session:
                row = await MappingRepository(session).get_live_object(bucket, key)
                return self._to_record(row) if row is not None else None
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to read mapping for %s/%s", bucket, key)
            raise StoreUnavailable(f"Failed to read object mapping for {bucket}/{key}") from exc

    async def soft_delete(self, bucket: str, key: str) -> bool:
        """Flag the live record as deleted without touching ledger content.

        Returns:
            bool: ``True`` if a live record existed, ``False`` otherwise.
        """

        if not (_is_encodable(bucket) and _is_encodable(key)):
            return False
        async with self._lock_for(bucket, key):
            try:
                async with self._session_factory() as session:
                    repository = MappingRepository(session)
                    try:
                        await begin_write(session)
                        deleted = await repository.soft_delete_object(bucket, key, self._now())
                        await repository.commit()
                    except SQLAlchemyError:
                        await repository.rollback()
                        raise
            except SQLAlchemyError as exc:
                LOGGER.exception("Failed to delete mapping for %s/%s", bucket, key)
                raise StoreUnavailable(f"Failed to delete object mapping for {bucket}/{key}") from exc
        if deleted:
            LOGGER.info("Soft deleted object %s/%s", bucket, key)
        return deleted

    async def list_page(
        self,
        bucket: str,
        *,
        prefix: str = "",
        marker: str = "",
        limit: int = 1000,
    ) -> StorePage:
        """Return up to ``limit`` live records after ``marker`` plus a lookahead flag."""

        if limit < 0:
            raise ValueError("limit cannot be negative")
        _require_encodable("Prefix", prefix)
        _require_encodable("Marker", marker)
        try:
            async with self._session_factory() as session:
                rows = await MappingRepository(session).scan_live_objects(
                    bucket, prefix=prefix, start_after=marker, limit=limit + 1
                )
                records = tuple(self._to_record(row) for row in rows)
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to list objects in %s", bucket)
            raise StoreUnavailable(f"Failed to list objects in {bucket}") from exc
        return StorePage(records=records[:limit], has_more=len(records) > limit)

    async def list_buckets(self) -> List[BucketRecord]:
        """Return live buckets ordered by name."""

        try:
            async with self._session_factory() as session:
                rows = await MappingRepository(session).list_buckets()
                return [self._to_bucket(row) for row in rows]
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to list buckets")
            raise StoreUnavailable("Failed to list buckets") from exc

    async def stats(self) -> StoreStats:
        """Return live object and bucket counts."""

        try:
            async with self._session_factory() as session:
                repository = MappingRepository(session)
                object_count = await repository.count_live_objects()
                bucket_count = await repository.count_buckets()
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to compute store statistics")
            raise StoreUnavailable("Failed to get database statistics") from exc
        return StoreStats(object_count=object_count, bucket_count=bucket_count)

    @staticmethod
    def _to_record(row: ObjectRow) -> ObjectRecord:
        return ObjectRecord(
            bucket=row.bucket,
            key=row.key,
            receipt_id=row.receipt_id,
            content_type=row.content_type,
            size=row.size,
            etag=row.etag,
            metadata={str(name): str(value) for name, value in (row.user_metadata or {}).items()},
            last_modified=_ensure_timezone(row.last_modified),
            deleted=bool(row.deleted),
        )

    @staticmethod
    def _to_bucket(row: BucketRow) -> BucketRecord:
        return BucketRecord(
            name=row.name,
            created_at=_ensure_timezone(row.created_at),
            deleted=bool(row.deleted),
        )


__all__ = [
    "WRITE_TRANSACTION_OPTION",
    "MappingStore",
    "StorePage",
    "begin_write",
    "create_mapping_engine",
    "init_schema",
]
