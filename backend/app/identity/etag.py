"""Derive ETags from payload bytes."""
from __future__ import annotations

import hashlib
from typing import Iterable, Union

_Chunk = Union[bytes, bytearray, memoryview]


def compute_etag(payload: Union[_Chunk, Iterable[_Chunk]]) -> str:
    """Return the quoted MD5 hex digest of the payload.

    The digest depends only on the bytes, so two uploads of identical content
    share an ETag even though the ledger assigns them different receipts.
    Accepts a single buffer or an iterable of chunks; empty input is valid.
    """

    digest = hashlib.md5(usedforsecurity=False)
    if isinstance(payload, (bytes, bytearray, memoryview)):
        digest.update(payload)
    else:
        for chunk in payload:
            digest.update(chunk)
    return f'"{digest.hexdigest()}"'


def etag_matches(etag: str, candidate: str) -> bool:
    """Compare ETags ignoring surrounding quotes and weak validators.

    A ``*`` candidate matches any existing ETag.
    """

    def _normalise(value: str) -> str:
        cleaned = value.strip()
        if cleaned.startswith("W/"):
            cleaned = cleaned[2:]
        return cleaned.strip('"')

    if candidate.strip() == "*":
        return True
    return _normalise(etag) == _normalise(candidate)
