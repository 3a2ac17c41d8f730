"""Typed failures raised by the gateway core.

Every error carries a stable S3-style ``code`` so the HTTP layer can map it
to a status without inspecting messages, and a ``retryable`` flag telling the
caller whether repeating the same request is safe.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from typing_extensions import Literal

FailureCategory = Literal["funding", "capacity", "network", "payload"]


class GatewayError(RuntimeError):
    """Base class for failures surfaced by gateway operations."""

    code: str = "InternalError"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = dict(details or {})


class InvalidArgument(GatewayError):
    """Raised when a bucket, key or query parameter is missing or malformed."""

    code = "InvalidArgument"

    @classmethod
    def missing(cls, name: str) -> "InvalidArgument":
        """Build the error for a required parameter that was not supplied."""

        return cls(f"{name} parameter is required", code="MissingParameter", details={"parameter": name})


class EntityTooLarge(GatewayError):
    """Raised when a payload exceeds the configured ceiling."""

    code = "EntityTooLarge"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Object size {size} bytes exceeds maximum allowed size of {limit} bytes",
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class NotFound(GatewayError):
    """Raised when no live record exists for the requested key."""

    code = "NoSuchKey"

    def __init__(self, bucket: str, key: str) -> None:
        super().__init__("The specified key does not exist", details={"bucket": bucket, "key": key})
        self.bucket = bucket
        self.key = key


class BackendUnavailable(GatewayError):
    """Transient ledger failure; the request may be retried."""

    code = "BackendUnavailable"
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        category: FailureCategory = "network",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, details={"category": category, "status_code": status_code})
        self.category = category
        self.status_code = status_code


class BackendRejected(GatewayError):
    """Permanent ledger failure such as a malformed payload."""

    code = "BackendRejected"

    def __init__(
        self,
        message: str,
        *,
        category: FailureCategory = "payload",
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message, details={"category": category, "status_code": status_code})
        self.category = category
        self.status_code = status_code


class AmbiguousWrite(GatewayError):
    """The ledger upload outcome is unknown; reconcile before retrying."""

    code = "AmbiguousWrite"

    def __init__(self, message: str, *, bucket: Optional[str] = None, key: Optional[str] = None) -> None:
        super().__init__(message, details={"bucket": bucket, "key": key})
        self.bucket = bucket
        self.key = key


class StoreUnavailable(GatewayError):
    """Mapping store I/O failure; the request may be retried."""

    code = "StoreUnavailable"
    retryable = True


class OrphanedReceipt(StoreUnavailable):
    """Ledger accepted the payload but the metadata commit failed.

    The receipt is permanent and now unreferenced. Retrying the upload creates
    a second payload, so this is reported as not retryable.
    """

    code = "OrphanedReceipt"
    retryable = False

    def __init__(self, message: str, *, bucket: str, key: str, receipt_id: str) -> None:
        super().__init__(message, details={"bucket": bucket, "key": key, "receipt_id": receipt_id})
        self.bucket = bucket
        self.key = key
        self.receipt_id = receipt_id


__all__ = [
    "AmbiguousWrite",
    "BackendRejected",
    "BackendUnavailable",
    "EntityTooLarge",
    "FailureCategory",
    "GatewayError",
    "InvalidArgument",
    "NotFound",
    "OrphanedReceipt",
    "StoreUnavailable",
]
