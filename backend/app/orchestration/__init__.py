"""Write-path orchestration for object uploads."""

from backend.app.orchestration.uploads import (
    DEFAULT_CONTENT_TYPE,
    UploadOrchestrator,
    build_tags,
    resolve_content_type,
)

__all__ = [
    "DEFAULT_CONTENT_TYPE",
    "UploadOrchestrator",
    "build_tags",
    "resolve_content_type",
]
