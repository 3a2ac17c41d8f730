"""Initial migration creating bucket and object mapping tables."""
from __future__ import annotations

from sqlalchemy.engine import Connection

from backend.app.mapping.models import MappingBase


def upgrade(connection: Connection) -> None:
    """Create mapping tables and the live-key unique index."""

    MappingBase.metadata.create_all(connection)


def downgrade(connection: Connection) -> None:
    """Drop mapping tables."""

    MappingBase.metadata.drop_all(connection)


__all__ = ["upgrade", "downgrade"]
