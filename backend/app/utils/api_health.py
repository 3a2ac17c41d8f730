"""Helpers for verifying gateway connectivity via its probe endpoints."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

HEALTH_PATH = "/health"
STATUS_PATH = "/status"


@dataclass(frozen=True)
class APIHealthResult:
    """Structured information about an API health probe result."""

    ok: bool
    status_code: Optional[int]
    detail: str
    latency_ms: Optional[float]
    payload: Optional[dict[str, Any]]


def check_api_health(
    base_url: str,
    *,
    path: str = HEALTH_PATH,
    timeout: float = 5.0,
    api_key: Optional[str] = None,
    client: Optional[httpx.Client] = None,
) -> APIHealthResult:
    """Ping a gateway probe endpoint and return a structured result.

    Args:
        base_url: Base URL where the gateway is hosted (e.g. ``"http://localhost:8000"``).
        path: Probe path; ``/health`` for liveness, ``/status`` for dependency readiness.
        timeout: Request timeout in seconds when creating an internal client.
        api_key: Optional key sent as ``x-api-key`` when the gateway requires one.
        client: Optional pre-configured ``httpx.Client`` (useful for testing).

    Returns:
        APIHealthResult: Structured outcome describing whether the gateway
            responded successfully and any additional context about failures.
            A degraded ``/status`` answer keeps its JSON payload so callers can
            see which dependency is down.
    """

    url = f"{base_url.rstrip('/')}/{path.lstrip('/')}"
    headers = {"x-api-key": api_key} if api_key else None
    should_close = client is None
    session = client or httpx.Client(timeout=timeout)
    start_time = time.monotonic()

    try:
        response = session.get(url, headers=headers)
        latency_ms = (time.monotonic() - start_time) * 1000
        try:
            payload = response.json()
        except ValueError:
            payload = None
            logger.warning("Probe endpoint returned non-JSON payload", extra={"url": url})
        if response.status_code == httpx.codes.OK:
            logger.info(
                "API health check succeeded",
                extra={"url": url, "status_code": response.status_code, "latency_ms": latency_ms},
            )
            return APIHealthResult(
                ok=True,
                status_code=response.status_code,
                detail="API health check succeeded",
                latency_ms=latency_ms,
                payload=payload,
            )

        logger.warning(
            "API health check failed with status",
            extra={
                "url": url,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "response_text": response.text,
            },
        )
        return APIHealthResult(
            ok=False,
            status_code=response.status_code,
            detail=f"{path} returned {response.status_code}",
            latency_ms=latency_ms,
            payload=payload if isinstance(payload, dict) else None,
        )
    except httpx.HTTPError as exc:  # pragma: no cover - network failures are environment dependent
        latency_ms = (time.monotonic() - start_time) * 1000
        logger.error(
            "API health check request raised an error",
            extra={"url": url, "latency_ms": latency_ms, "error": str(exc)},
        )
        return APIHealthResult(
            ok=False,
            status_code=None,
            detail=f"Request to {url} failed: {exc}",
            latency_ms=latency_ms,
            payload=None,
        )
    finally:
        if should_close:
            session.close()


__all__ = ["APIHealthResult", "HEALTH_PATH", "STATUS_PATH", "check_api_health"]
