"""Durable bucket and object mapping store."""

from backend.app.mapping.models import BucketRow, MappingBase, ObjectRow
from backend.app.mapping.repository import MappingRepository
from backend.app.mapping.store import (
    WRITE_TRANSACTION_OPTION,
    MappingStore,
    StorePage,
    begin_write,
    create_mapping_engine,
    init_schema,
)

__all__ = [
    "BucketRow",
    "MappingBase",
    "MappingRepository",
    "MappingStore",
    "ObjectRow",
    "StorePage",
    "WRITE_TRANSACTION_OPTION",
    "begin_write",
    "create_mapping_engine",
    "init_schema",
]
