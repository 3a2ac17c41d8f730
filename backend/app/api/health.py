"""Liveness, readiness and metrics endpoints."""
from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from backend.app.api.router import get_gateway_service
from backend.app.errors import GatewayError
from backend.app.gateway import ObjectGatewayService

LOGGER = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


def _uptime_seconds(request: Request) -> float:
    started = getattr(request.app.state, "started_at", None)
    if started is None:
        return 0.0
    return max(0.0, time.monotonic() - started)


@router.get("/health", summary="Service health probe")
def health(request: Request) -> dict[str, object]:
    """Return service liveness information."""

    config = request.app.state.app_config
    return {
        "status": "ok",
        "service": config.service.name,
        "version": config.service.version,
        "uptime_seconds": round(_uptime_seconds(request), 3),
    }


@router.get("/status", summary="Dependency readiness")
async def readiness(
    request: Request,
    service: ObjectGatewayService = Depends(get_gateway_service),
) -> JSONResponse:
    """Report mapping store statistics and ledger reachability."""

    config = request.app.state.app_config
    store_ok = True
    stats_payload: dict[str, object] = {}
    try:
        stats = await service.stats()
        stats_payload = {"objects": stats.object_count, "buckets": stats.bucket_count}
    except GatewayError as exc:
        LOGGER.warning("Mapping store unavailable during status probe", extra={"error": str(exc)})
        store_ok = False

    try:
        ledger_ok = await service.ledger_reachable()
    except GatewayError as exc:
        LOGGER.warning("Ledger unavailable during status probe", extra={"error": str(exc)})
        ledger_ok = False

    healthy = store_ok and ledger_ok
    content = {
        "status": "ok" if healthy else "degraded",
        "store": {"ok": store_ok, **stats_payload},
        "ledger": {"ok": ledger_ok, "network": config.ledger.network},
        "uptime_seconds": round(_uptime_seconds(request), 3),
    }
    code = status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE
    return JSONResponse(status_code=code, content=content)


@router.get("/metrics", summary="Prometheus metrics", response_class=PlainTextResponse)
async def metrics(
    request: Request,
    service: ObjectGatewayService = Depends(get_gateway_service),
) -> PlainTextResponse:
    """Expose object and bucket counts plus uptime in the Prometheus text format."""

    stats = await service.stats()
    lines = [
        "# HELP ledger_gateway_objects_total Live objects in the mapping store.",
        "# TYPE ledger_gateway_objects_total gauge",
        f"ledger_gateway_objects_total {stats.object_count}",
        "# HELP ledger_gateway_buckets_total Live buckets in the mapping store.",
        "# TYPE ledger_gateway_buckets_total gauge",
        f"ledger_gateway_buckets_total {stats.bucket_count}",
        "# HELP ledger_gateway_uptime_seconds Seconds since the service started.",
        "# TYPE ledger_gateway_uptime_seconds gauge",
        f"ledger_gateway_uptime_seconds {_uptime_seconds(request):.3f}",
    ]
    return PlainTextResponse("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4")


__all__ = ["router"]
