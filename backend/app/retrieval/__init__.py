"""Read path from bucket keys to ledger content."""

from backend.app.retrieval.resolver import RetrievalResolver

__all__ = ["RetrievalResolver"]
