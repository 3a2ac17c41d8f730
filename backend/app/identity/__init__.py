"""Content identity helpers."""

from backend.app.identity.etag import compute_etag, etag_matches

__all__ = ["compute_etag", "etag_matches"]
