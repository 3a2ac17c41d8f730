"""Listing queries over the mapping store."""

from backend.app.listing.engine import DEFAULT_MAX_KEYS, ListingEngine, common_prefix_for

__all__ = ["DEFAULT_MAX_KEYS", "ListingEngine", "common_prefix_for"]
