"""Bucket/key operations exposed to the HTTP layer."""

from __future__ import annotations

import logging
from typing import List, Optional

from backend.app.contracts import (
    BucketRecord,
    ListObjectsResult,
    PutObjectRequest,
    PutObjectResult,
    ResolvedObject,
    StoreStats,
)
from backend.app.errors import InvalidArgument
from backend.app.ledger import LedgerClientProvider, LedgerStream
from backend.app.listing import ListingEngine
from backend.app.mapping import MappingStore
from backend.app.orchestration import UploadOrchestrator
from backend.app.retrieval import RetrievalResolver

LOGGER = logging.getLogger(__name__)


class ObjectGatewayService:
    """Coordinate the write path, read path and listings for one deployment."""

    def __init__(
        self,
        *,
        store: MappingStore,
        ledger: LedgerClientProvider,
        orchestrator: UploadOrchestrator,
        resolver: RetrievalResolver,
        listing: ListingEngine,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._orchestrator = orchestrator
        self._resolver = resolver
        self._listing = listing

    @property
    def orchestrator(self) -> UploadOrchestrator:
        """Return the upload orchestrator."""

        return self._orchestrator

    @property
    def listing(self) -> ListingEngine:
        """Return the listing engine."""

        return self._listing

    async def put_object(self, request: PutObjectRequest) -> PutObjectResult:
        """Upload and commit an object."""

        return await self._orchestrator.put_object(request)

    async def get_object_meta(self, bucket: str, key: str) -> ResolvedObject:
        """Resolve the live record for ``bucket/key``."""

        self._require(bucket, key)
        return await self._resolver.resolve(bucket, key)

    async def open_object(self, resolved: ResolvedObject) -> LedgerStream:
        """Open the ledger content stream for a resolved object."""

        return await self._resolver.open_content(resolved)

    async def delete_object(self, bucket: str, key: str) -> bool:
        """Soft delete ``bucket/key``; deleting a missing key is not an error."""

        self._require(bucket, key)
        return await self._store.soft_delete(bucket, key)

    async def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        marker: str = "",
        max_keys: Optional[int] = None,
        delimiter: str = "",
    ) -> ListObjectsResult:
        """List live objects in a bucket."""

        return await self._listing.list_objects(
            bucket, prefix=prefix, marker=marker, max_keys=max_keys, delimiter=delimiter
        )

    async def list_buckets(self) -> List[BucketRecord]:
        """List live buckets."""

        return await self._store.list_buckets()

    async def stats(self) -> StoreStats:
        """Return live object and bucket counts."""

        return await self._store.stats()

    async def ledger_reachable(self) -> bool:
        """Return whether the ledger node answers its info probe."""

        client = await self._ledger.get()
        return await client.ping()

    @staticmethod
    def _require(bucket: str, key: str) -> None:
        if not bucket:
            raise InvalidArgument.missing("Bucket")
        if not key:
            raise InvalidArgument.missing("Key")


__all__ = ["ObjectGatewayService"]
