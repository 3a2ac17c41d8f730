"""Client for the content-addressed ledger collaborator."""

from backend.app.ledger.client import (
    HTTPLedgerClient,
    LedgerClient,
    LedgerClientProvider,
    LedgerStream,
    LedgerTag,
    StoreReceipt,
)

__all__ = [
    "HTTPLedgerClient",
    "LedgerClient",
    "LedgerClientProvider",
    "LedgerStream",
    "LedgerTag",
    "StoreReceipt",
]
