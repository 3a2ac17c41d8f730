"""HTTP client for the append-only, content-addressed ledger node."""
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Mapping, Optional, Sequence

import httpx
from typing_extensions import Protocol

from backend.app.config import LedgerConfig
from backend.app.errors import AmbiguousWrite, BackendRejected, BackendUnavailable

LOGGER = logging.getLogger(__name__)

TAGS_HEADER = "X-Ledger-Tags"

_REJECTED_STATUSES = {400, 413, 415, 422}
_CAPACITY_STATUSES = {429, 503, 507}
_FUNDING_STATUSES = {402}
# Failures raised before the request left this process; retrying cannot duplicate a payload.
_NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)


@dataclass(frozen=True)
class LedgerTag:
    """Name/value tag attached to a ledger upload."""

    name: str
    value: str

    def as_dict(self) -> Dict[str, str]:
        """Return the wire representation of the tag."""

        return {"name": self.name, "value": self.value}


@dataclass(frozen=True)
class StoreReceipt:
    """Acceptance receipt returned by the ledger for one payload."""

    receipt_id: str
    raw: Mapping[str, Any] = field(default_factory=dict)


class LedgerStream(Protocol):
    """Open content stream for one receipt."""

    content_type: Optional[str]
    content_length: Optional[int]

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the content in chunks."""

    async def aclose(self) -> None:
        """Release the underlying connection."""


class LedgerClient(Protocol):
    """Protocol describing the ledger collaborator."""

    async def store(
        self, payload: bytes, content_type: str, tags: Sequence[LedgerTag]
    ) -> StoreReceipt:
        """Persist ``payload`` and return its receipt."""

    def resolve_location(self, receipt_id: str) -> str:
        """Return the public gateway URL for a receipt."""

    async def open_stream(self, receipt_id: str) -> LedgerStream:
        """Open a streaming read of the content behind a receipt."""

    async def ping(self) -> bool:
        """Return whether the ledger node is reachable."""

    async def aclose(self) -> None:
        """Close any underlying resources."""


class _HTTPXLedgerStream:
    """Wrap a streaming ``httpx.Response`` to satisfy ``LedgerStream``."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self.content_type = response.headers.get("content-type")
        length = response.headers.get("content-length")
        self.content_length = int(length) if length and length.isdigit() else None

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_bytes():
                yield chunk
        finally:
            await self._response.aclose()

    async def aclose(self) -> None:
        await self._response.aclose()


class HTTPLedgerClient:
    """Talk to a ledger node and its public gateway over HTTP."""

    def __init__(
        self,
        config: LedgerConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._sleep = sleep
        headers = {"User-Agent": "ledger-bucket-gateway"}
        if config.api_token:
            headers["Authorization"] = f"Bearer {config.api_token}"
        self._node = httpx.AsyncClient(
            base_url=config.node_url,
            headers=headers,
            timeout=httpx.Timeout(
                config.upload_timeout_seconds, connect=config.connect_timeout_seconds
            ),
            transport=transport,
        )
        self._gateway = httpx.AsyncClient(
            timeout=httpx.Timeout(
                config.fetch_timeout_seconds, connect=config.connect_timeout_seconds
            ),
            follow_redirects=True,
            transport=transport,
        )

    @property
    def network(self) -> str:
        """Return the configured network label."""

        return self._config.network

    async def store(
        self, payload: bytes, content_type: str, tags: Sequence[LedgerTag]
    ) -> StoreReceipt:
        """Upload ``payload`` to the ledger node.

        Raises:
            AmbiguousWrite: If the request may have reached the node but no
                receipt was obtained (timeouts, dropped connections).
            BackendUnavailable: For funding, capacity or connection failures.
            BackendRejected: If the node refuses the payload permanently.
        """

        headers = {
            "Content-Type": content_type,
            TAGS_HEADER: json.dumps([tag.as_dict() for tag in tags], separators=(",", ":")),
        }
        attempt = 0
        delay = self._config.backoff_initial_seconds
        while True:
            try:
                response = await self._node.post("/tx", content=payload, headers=headers)
                break
            except _NOT_SENT_ERRORS as exc:
                if attempt >= self._config.max_connect_retries:
                    raise BackendUnavailable(
                        f"Ledger node unreachable after {attempt + 1} attempts: {exc}",
                        category="network",
                    ) from exc
                attempt += 1
                LOGGER.warning(
                    "Ledger connection failed; retrying upload (attempt %d/%d)",
                    attempt,
                    self._config.max_connect_retries,
                )
                await self._sleep(min(delay, self._config.backoff_max_seconds))
                delay = min(delay * 2, self._config.backoff_max_seconds)
            except httpx.TimeoutException as exc:
                raise AmbiguousWrite(
                    f"Ledger upload timed out after {self._config.upload_timeout_seconds}s; outcome unknown"
                ) from exc
            except httpx.TransportError as exc:
                raise AmbiguousWrite(f"Ledger connection lost during upload: {exc}") from exc

        if response.status_code >= 400:
            raise self._status_error(response, action="upload")
        try:
            body = response.json()
        except ValueError as exc:
            raise AmbiguousWrite("Ledger accepted upload but returned an unreadable receipt") from exc
        receipt_id = body.get("id") if isinstance(body, dict) else None
        if not isinstance(receipt_id, str) or not receipt_id:
            raise AmbiguousWrite("Ledger accepted upload but returned no receipt id")
        LOGGER.info("Payload uploaded to ledger: %s (%d bytes)", receipt_id, len(payload))
        return StoreReceipt(receipt_id=receipt_id, raw=body)

    def resolve_location(self, receipt_id: str) -> str:
        """Return the gateway URL serving ``receipt_id``."""

        return f"{self._config.gateway_url}/{receipt_id}"

    async def open_stream(self, receipt_id: str) -> LedgerStream:
        """Open a streaming GET against the gateway.

        Raises:
            BackendUnavailable: On timeouts, connection failures, or when the
                gateway has not yet propagated the receipt.
        """

        url = self.resolve_location(receipt_id)
        request = self._gateway.build_request("GET", url)
        try:
            response = await self._gateway.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise BackendUnavailable(
                f"Timed out fetching {receipt_id} from ledger gateway", category="network"
            ) from exc
        except httpx.TransportError as exc:
            raise BackendUnavailable(
                f"Failed to reach ledger gateway for {receipt_id}: {exc}", category="network"
            ) from exc
        if response.status_code >= 400:
            await response.aread()
            await response.aclose()
            if response.status_code == 404:
                raise BackendUnavailable(
                    f"Receipt {receipt_id} is not yet available from the ledger gateway",
                    category="capacity",
                    status_code=404,
                )
            raise self._status_error(response, action="fetch")
        return _HTTPXLedgerStream(response)

    async def ping(self) -> bool:
        """Probe the node's info endpoint."""

        try:
            response = await self._node.get("/info", timeout=self._config.connect_timeout_seconds)
        except httpx.HTTPError as exc:
            LOGGER.warning("Ledger node ping failed", extra={"error": str(exc)})
            return False
        return response.status_code == httpx.codes.OK

    async def aclose(self) -> None:
        """Close both HTTP clients."""

        await self._node.aclose()
        await self._gateway.aclose()

    @staticmethod
    def _status_error(response: httpx.Response, *, action: str) -> Exception:
        status_code = response.status_code
        detail = response.text[:200] if response.text else ""
        message = f"Ledger {action} failed with status {status_code}"
        if detail:
            message = f"{message}: {detail}"
        if status_code in _FUNDING_STATUSES:
            return BackendUnavailable(message, category="funding", status_code=status_code)
        if status_code in _CAPACITY_STATUSES:
            return BackendUnavailable(message, category="capacity", status_code=status_code)
        if status_code in _REJECTED_STATUSES:
            return BackendRejected(message, category="payload", status_code=status_code)
        if status_code >= 500:
            return BackendUnavailable(message, category="network", status_code=status_code)
        return BackendRejected(message, category="payload", status_code=status_code)


class LedgerClientProvider:
    """Process-wide ledger client with single-flight initialisation."""

    def __init__(self, factory: Callable[[], LedgerClient]) -> None:
        self._factory = factory
        self._client: Optional[LedgerClient] = None
        self._lock = asyncio.Lock()

    async def get(self) -> LedgerClient:
        """Return the shared client, creating it on first use."""

        client = self._client
        if client is not None:
            return client
        async with self._lock:
            if self._client is None:
                try:
                    self._client = self._factory()
                except Exception as exc:
                    LOGGER.exception("Failed to initialise ledger client")
                    raise BackendUnavailable("Failed to initialise ledger client") from exc
                LOGGER.info("Ledger client initialised")
            return self._client

    async def aclose(self) -> None:
        """Close the shared client if it was created."""

        async with self._lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


__all__ = [
    "HTTPLedgerClient",
    "LedgerClient",
    "LedgerClientProvider",
    "LedgerStream",
    "LedgerTag",
    "StoreReceipt",
    "TAGS_HEADER",
]
