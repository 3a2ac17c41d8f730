"""HTTP routers for the bucket gateway."""

from backend.app.api.health import router as health_router
from backend.app.api.router import error_response, router as s3_router, status_for_error

__all__ = ["error_response", "health_router", "s3_router", "status_for_error"]
