"""Resolve bucket keys to the ledger receipts currently backing them."""

from __future__ import annotations

import logging

from backend.app.contracts import ResolvedObject
from backend.app.errors import NotFound
from backend.app.ledger import LedgerClientProvider, LedgerStream
from backend.app.mapping import MappingStore

LOGGER = logging.getLogger(__name__)


class RetrievalResolver:
    """Read-only lookup of live content for a key.

    Keys that never existed and keys that were deleted both surface as
    ``NotFound``; the ledger content of a deleted key is unreachable here.
    """

    def __init__(self, *, store: MappingStore, ledger: LedgerClientProvider) -> None:
        self._store = store
        self._ledger = ledger

    async def resolve(self, bucket: str, key: str) -> ResolvedObject:
        """Return the receipt, metadata and gateway location for a live key.

        Raises:
            NotFound: If no live record exists.
            StoreUnavailable: If the mapping store cannot be read.
        """

        record = await self._store.get_live(bucket, key)
        if record is None:
            raise NotFound(bucket, key)
        client = await self._ledger.get()
        return ResolvedObject(
            bucket=record.bucket,
            key=record.key,
            receipt_id=record.receipt_id,
            content_type=record.content_type,
            size=record.size,
            etag=record.etag,
            last_modified=record.last_modified,
            metadata=dict(record.metadata),
            location=client.resolve_location(record.receipt_id),
        )

    async def open_content(self, resolved: ResolvedObject) -> LedgerStream:
        """Open a stream of the ledger content behind a resolved key.

        Raises:
            BackendUnavailable: If the gateway cannot serve the receipt right now.
        """

        client = await self._ledger.get()
        LOGGER.info("Fetching %s/%s from ledger receipt %s", resolved.bucket, resolved.key, resolved.receipt_id)
        return await client.open_stream(resolved.receipt_id)


__all__ = ["RetrievalResolver"]
