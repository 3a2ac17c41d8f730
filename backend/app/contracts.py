"""Immutable data contracts shared by the gateway components."""
from __future__ import annotations

from datetime import datetime
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class _FrozenBaseModel(BaseModel):
    """Base model enforcing immutability after creation."""

    model_config = ConfigDict(frozen=True)


class BucketRecord(_FrozenBaseModel):
    """Bucket row as exposed to callers."""

    name: str
    created_at: datetime
    deleted: bool = False


class ObjectRecord(_FrozenBaseModel):
    """Object metadata row pointing at one ledger receipt."""

    bucket: str
    key: str
    receipt_id: str = Field(..., min_length=1, description="Ledger receipt backing the content.")
    content_type: str
    size: int = Field(..., ge=0)
    etag: str = Field(..., min_length=2, description="Quoted content digest.")
    metadata: Dict[str, str] = Field(default_factory=dict)
    last_modified: datetime
    deleted: bool = False


class ListObjectsResult(_FrozenBaseModel):
    """One page of a prefix and marker bounded object listing."""

    bucket: str
    prefix: str = ""
    marker: str = ""
    delimiter: str = ""
    max_keys: int = Field(..., ge=0)
    contents: Tuple[ObjectRecord, ...] = Field(default_factory=tuple)
    common_prefixes: Tuple[str, ...] = Field(default_factory=tuple)
    is_truncated: bool = False
    next_marker: Optional[str] = Field(
        default=None,
        description="Exclusive lower bound for the next page; set only when truncated.",
    )

    @property
    def keys(self) -> Tuple[str, ...]:
        """Return the keys of the listed objects in page order."""

        return tuple(record.key for record in self.contents)


class StoreStats(_FrozenBaseModel):
    """Counts of live rows in the mapping store."""

    object_count: int = Field(..., ge=0)
    bucket_count: int = Field(..., ge=0)


class ResolvedObject(_FrozenBaseModel):
    """Everything a caller needs to stream or redirect to live content."""

    bucket: str
    key: str
    receipt_id: str
    content_type: str
    size: int
    etag: str
    last_modified: datetime
    metadata: Dict[str, str] = Field(default_factory=dict)
    location: str


class PutObjectRequest(_FrozenBaseModel):
    """Validated-at-the-orchestrator input for an object write."""

    bucket: Optional[str] = None
    key: Optional[str] = None
    payload: bytes = b""
    content_type: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class PutObjectResult(_FrozenBaseModel):
    """Committed record plus the ledger location of its content."""

    record: ObjectRecord
    location: str


__all__ = [
    "BucketRecord",
    "ListObjectsResult",
    "ObjectRecord",
    "PutObjectRequest",
    "PutObjectResult",
    "ResolvedObject",
    "StoreStats",
]
