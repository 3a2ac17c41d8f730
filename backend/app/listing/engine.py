"""Prefix and marker bounded object listing with S3-style pagination."""
from __future__ import annotations

import logging
from typing import List, Optional, Set

from backend.app.contracts import ListObjectsResult, ObjectRecord
from backend.app.errors import InvalidArgument
from backend.app.mapping.store import MappingStore

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_KEYS = 1000


def common_prefix_for(key: str, prefix: str, delimiter: str) -> Optional[str]:
    """Return the common prefix grouping ``key``, or ``None`` if it stands alone."""

    if not delimiter:
        return None
    suffix = key[len(prefix):]
    position = suffix.find(delimiter)
    if position < 0:
        return None
    return prefix + suffix[: position + len(delimiter)]


class ListingEngine:
    """Answer listing queries against the mapping store.

    Pages are bounded by a ceiling that callers cannot raise. Cursors are
    stateless: the continuation marker is the last key (or common prefix)
    on the page and is used as an exclusive lower bound by the next call.
    """

    def __init__(self, store: MappingStore, *, max_keys_ceiling: int = DEFAULT_MAX_KEYS) -> None:
        if max_keys_ceiling < 1:
            raise ValueError("max_keys_ceiling must be at least 1")
        self._store = store
        self._ceiling = max_keys_ceiling

    @property
    def max_keys_ceiling(self) -> int:
        """Return the engine-enforced page size limit."""

        return self._ceiling

    async def list_objects(
        self,
        bucket: str,
        *,
        prefix: str = "",
        marker: str = "",
        max_keys: Optional[int] = None,
        delimiter: str = "",
    ) -> ListObjectsResult:
        """List live objects in ``bucket`` ordered by key.

        Args:
            bucket: Bucket to list.
            prefix: Only keys starting with this value are returned.
            marker: Only keys strictly greater than this value are returned.
            max_keys: Requested page size, clamped to the engine ceiling.
            delimiter: When set, keys sharing a prefix up to the delimiter are
                collapsed into a single common prefix entry.

        Returns:
            ListObjectsResult: One page plus truncation and cursor details.

        Raises:
            InvalidArgument: If the bucket is missing or ``max_keys`` is negative.
            StoreUnavailable: If the mapping store cannot be read.
        """

        if not bucket:
            raise InvalidArgument.missing("Bucket")
        requested = self._ceiling if max_keys is None else max_keys
        if requested < 0:
            raise InvalidArgument("max-keys cannot be negative", details={"max_keys": requested})
        effective = min(requested, self._ceiling)
        prefix = prefix or ""
        marker = marker or ""
        delimiter = delimiter or ""

        if effective == 0:
            return await self._empty_page(bucket, prefix, marker, delimiter)
        if delimiter:
            return await self._grouped_page(bucket, prefix, marker, delimiter, effective)

        page = await self._store.list_page(bucket, prefix=prefix, marker=marker, limit=effective)
        next_marker = page.records[-1].key if page.has_more and page.records else None
        return ListObjectsResult(
            bucket=bucket,
            prefix=prefix,
            marker=marker,
            delimiter=delimiter,
            max_keys=effective,
            contents=page.records,
            is_truncated=page.has_more,
            next_marker=next_marker,
        )

    async def _empty_page(
        self, bucket: str, prefix: str, marker: str, delimiter: str
    ) -> ListObjectsResult:
        # Truncated iff anything matches; resuming from the incoming marker
        # yields the first matching key.
        page = await self._store.list_page(bucket, prefix=prefix, marker=marker, limit=0)
        return ListObjectsResult(
            bucket=bucket,
            prefix=prefix,
            marker=marker,
            delimiter=delimiter,
            max_keys=0,
            is_truncated=page.has_more,
            next_marker=marker if page.has_more else None,
        )

    async def _grouped_page(
        self, bucket: str, prefix: str, marker: str, delimiter: str, limit: int
    ) -> ListObjectsResult:
        contents: List[ObjectRecord] = []
        common_prefixes: List[str] = []
        seen: Set[str] = set()
        # A marker that is itself a common prefix was emitted on the previous
        # page; every key beneath it must be skipped.
        if marker and common_prefix_for(marker, prefix, delimiter) == marker:
            seen.add(marker)

        cursor = marker
        last_entry: Optional[str] = None
        truncated = False
        while not truncated:
            page = await self._store.list_page(
                bucket, prefix=prefix, marker=cursor, limit=self._ceiling
            )
            for record in page.records:
                group = common_prefix_for(record.key, prefix, delimiter)
                if group is not None and group in seen:
                    continue
                if len(contents) + len(common_prefixes) >= limit:
                    truncated = True
                    break
                if group is not None:
                    seen.add(group)
                    common_prefixes.append(group)
                    last_entry = group
                else:
                    contents.append(record)
                    last_entry = record.key
            if truncated or not page.has_more or not page.records:
                break
            cursor = page.records[-1].key

        LOGGER.debug(
            "Grouped listing of %s returned %d keys and %d prefixes (truncated=%s)",
            bucket,
            len(contents),
            len(common_prefixes),
            truncated,
        )
        return ListObjectsResult(
            bucket=bucket,
            prefix=prefix,
            marker=marker,
            delimiter=delimiter,
            max_keys=limit,
            contents=tuple(contents),
            common_prefixes=tuple(common_prefixes),
            is_truncated=truncated,
            next_marker=last_entry if truncated else None,
        )


__all__ = ["DEFAULT_MAX_KEYS", "ListingEngine", "common_prefix_for"]
