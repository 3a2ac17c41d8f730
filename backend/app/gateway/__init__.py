"""Gateway facade combining the write path, read path and listings."""

from backend.app.gateway.service import ObjectGatewayService

__all__ = ["ObjectGatewayService"]
