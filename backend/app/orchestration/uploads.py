"""Sequence ledger uploads and metadata commits for object writes."""

from __future__ import annotations

import logging
import mimetypes
from datetime import datetime, timezone
from time import perf_counter
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from backend.app.config import APIConfig
from backend.app.contracts import PutObjectRequest, PutObjectResult
from backend.app.errors import AmbiguousWrite, EntityTooLarge, InvalidArgument, OrphanedReceipt
from backend.app.identity import compute_etag
from backend.app.ledger import LedgerClientProvider, LedgerTag
from backend.app.mapping import MappingStore
from backend.app.observability.audit import WriteAuditLog

LOGGER = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"
MAX_KEY_BYTES = 1024
MAX_BUCKET_LENGTH = 255


def _is_utf8(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def resolve_content_type(key: str, declared: Optional[str]) -> str:
    """Return the declared content type, else a guess from the key, else a binary default."""

    if declared and declared.strip():
        return declared.strip()
    guessed, _ = mimetypes.guess_type(key)
    return guessed or DEFAULT_CONTENT_TYPE


def build_tags(
    *,
    bucket: str,
    key: str,
    content_type: str,
    etag: str,
    uploaded_at: datetime,
    metadata: Mapping[str, str],
) -> List[LedgerTag]:
    """Return the tag set stored alongside the payload on the ledger."""

    tags = [
        LedgerTag("Content-Type", content_type),
        LedgerTag("Bucket", bucket),
        LedgerTag("Key", key),
        LedgerTag("ETag", etag),
        LedgerTag("Upload-Timestamp", uploaded_at.isoformat()),
    ]
    for name, value in metadata.items():
        tags.append(LedgerTag(f"Meta-{name}", value))
    return tags


class UploadOrchestrator:
    """Write payloads to the ledger first, then commit the live mapping.

    The ledger upload is never retried after an ambiguous outcome. A failed
    metadata commit after a successful upload leaves an orphaned receipt,
    which is raised as ``OrphanedReceipt`` and recorded in the audit log.
    """

    def __init__(
        self,
        *,
        store: MappingStore,
        ledger: LedgerClientProvider,
        config: APIConfig,
        audit_log: Optional[WriteAuditLog] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._config = config
        self._audit_log = audit_log
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def put_object(self, request: PutObjectRequest) -> PutObjectResult:
        """Store the payload and make it the live content of ``bucket/key``.

        Raises:
            InvalidArgument: If the bucket or key is missing or malformed, or
                the payload is empty while empty payloads are disallowed.
            EntityTooLarge: If the payload exceeds the configured ceiling.
            BackendUnavailable: If the ledger is temporarily unavailable.
            BackendRejected: If the ledger refuses the payload.
            AmbiguousWrite: If the upload outcome is unknown.
            OrphanedReceipt: If the payload was stored but the mapping commit failed.
        """

        bucket, key = self._validate_location(request.bucket, request.key)
        payload = request.payload
        size = len(payload)
        self.validate_size(size)
        if size == 0 and not self._config.allow_empty_payload:
            raise InvalidArgument("Request body is empty", code="MissingBody")

        content_type = resolve_content_type(key, request.content_type)
        metadata: Dict[str, str] = {str(name): str(value) for name, value in request.metadata.items()}
        etag = compute_etag(payload)
        uploaded_at = self._clock()
        tags = build_tags(
            bucket=bucket,
            key=key,
            content_type=content_type,
            etag=etag,
            uploaded_at=uploaded_at,
            metadata=metadata,
        )

        LOGGER.info("Uploading %s/%s to ledger (%d bytes)", bucket, key, size)
        client = await self._ledger.get()
        started = perf_counter()
        try:
            receipt = await client.store(payload, content_type, tags)
        except AmbiguousWrite as exc:
            elapsed = perf_counter() - started
            LOGGER.error(
                "ambiguous_write: ledger outcome unknown for %s/%s",
                bucket,
                key,
                extra={"bucket": bucket, "key": key, "etag": etag, "elapsed_seconds": elapsed},
            )
            self._audit(
                "ambiguous_write",
                {
                    "bucket": bucket,
                    "key": key,
                    "size": size,
                    "etag": etag,
                    "elapsed_seconds": round(elapsed, 3),
                    "error": str(exc),
                },
            )
            raise AmbiguousWrite(str(exc), bucket=bucket, key=key) from exc

        try:
            record = await self._store.upsert_live(
                bucket,
                key,
                receipt.receipt_id,
                content_type,
                size,
                etag,
                metadata,
            )
        except Exception as exc:
            # The payload is already on the ledger whatever went wrong here.
            LOGGER.error(
                "orphaned_receipt: ledger receipt %s has no metadata for %s/%s",
                receipt.receipt_id,
                bucket,
                key,
                extra={"bucket": bucket, "key": key, "receipt_id": receipt.receipt_id},
            )
            self._audit(
                "orphaned_receipt",
                {
                    "bucket": bucket,
                    "key": key,
                    "receipt_id": receipt.receipt_id,
                    "etag": etag,
                    "size": size,
                    "error": str(exc),
                },
            )
            raise OrphanedReceipt(
                f"Stored payload {receipt.receipt_id} but failed to commit metadata for {bucket}/{key}",
                bucket=bucket,
                key=key,
                receipt_id=receipt.receipt_id,
            ) from exc

        location = client.resolve_location(receipt.receipt_id)
        LOGGER.info(
            "Committed %s/%s -> %s in %.2fs",
            bucket,
            key,
            receipt.receipt_id,
            perf_counter() - started,
        )
        return PutObjectResult(record=record, location=location)

    def validate_size(self, size: int) -> None:
        """Reject sizes above the configured ceiling before any body is stored."""

        limit = self._config.max_object_bytes
        if size > limit:
            raise EntityTooLarge(size, limit)

    @staticmethod
    def _validate_location(bucket: Optional[str], key: Optional[str]) -> Tuple[str, str]:
        if not bucket:
            raise InvalidArgument.missing("Bucket")
        if not key:
            raise InvalidArgument.missing("Key")
        if len(bucket) > MAX_BUCKET_LENGTH or "/" in bucket or not _is_utf8(bucket):
            raise InvalidArgument(f"Invalid bucket name: {bucket!r}", code="InvalidBucketName")
        if not _is_utf8(key):
            raise InvalidArgument(f"Key is not valid UTF-8: {key!r}", details={"key": key[:64]})
        if len(key.encode("utf-8")) > MAX_KEY_BYTES:
            raise InvalidArgument(
                f"Key exceeds {MAX_KEY_BYTES} bytes", code="KeyTooLongError", details={"key": key[:64]}
            )
        return bucket, key

    def _audit(self, event_type: str, payload: Mapping[str, object]) -> None:
        if self._audit_log is None:
            return
        self._audit_log.record(event_type, payload)  # type: ignore[arg-type]


__all__ = ["DEFAULT_CONTENT_TYPE", "UploadOrchestrator", "build_tags", "resolve_content_type"]
