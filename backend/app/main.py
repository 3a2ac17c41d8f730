"""FastAPI application factory for the ledger bucket gateway."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from time import perf_counter
from typing import AsyncIterator, Callable, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.app.api import error_response, health_router, s3_router
from backend.app.config import AppConfig, load_config
from backend.app.errors import GatewayError
from backend.app.gateway import ObjectGatewayService
from backend.app.ledger import HTTPLedgerClient, LedgerClient, LedgerClientProvider
from backend.app.listing import ListingEngine
from backend.app.mapping import MappingStore, create_mapping_engine, init_schema
from backend.app.observability import WriteAuditLog
from backend.app.orchestration import UploadOrchestrator
from backend.app.retrieval import RetrievalResolver

LOGGER = logging.getLogger(__name__)


def create_app(
    config: AppConfig | None = None,
    *,
    ledger_factory: Optional[Callable[[], LedgerClient]] = None,
    root_dir: Optional[Path] = None,
) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        config: Optional pre-loaded configuration. If omitted, the default
            configuration defined in config.yaml is used.
        ledger_factory: Optional factory for the ledger client. When omitted an
            ``HTTPLedgerClient`` is built from the ``ledger`` section on first use.
        root_dir: Base directory for relative observability paths.

    Returns:
        FastAPI: Configured FastAPI application.
    """

    resolved_config = config or load_config()
    engine = create_mapping_engine(
        resolved_config.storage.database_url, echo=resolved_config.storage.echo_sql
    )
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    store = MappingStore(
        session_factory,
        write_retry_attempts=resolved_config.storage.write_retry_attempts,
        lock_stripes=resolved_config.storage.lock_stripes,
    )
    factory = ledger_factory or (lambda: HTTPLedgerClient(resolved_config.ledger))
    ledger = LedgerClientProvider(factory)
    audit_log = WriteAuditLog.from_config(resolved_config.observability, root_dir=root_dir)
    orchestrator = UploadOrchestrator(
        store=store,
        ledger=ledger,
        config=resolved_config.api,
        audit_log=audit_log,
    )
    service = ObjectGatewayService(
        store=store,
        ledger=ledger,
        orchestrator=orchestrator,
        resolver=RetrievalResolver(store=store, ledger=ledger),
        listing=ListingEngine(store, max_keys_ceiling=resolved_config.api.max_keys_ceiling),
    )

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await init_schema(engine)
        LOGGER.info(
            "Mapping store ready",
            extra={"database_url": engine.url.render_as_string(hide_password=True)},
        )
        try:
            yield
        finally:
            await ledger.aclose()
            await engine.dispose()

    app = FastAPI(
        title=resolved_config.service.name,
        version=resolved_config.service.version,
        lifespan=_lifespan,
    )
    app.state.app_config = resolved_config
    app.state.api_config = resolved_config.api
    app.state.started_at = time.monotonic()
    app.state.mapping_engine = engine
    app.state.mapping_store = store
    app.state.ledger_provider = ledger
    app.state.write_audit_log = audit_log
    app.state.gateway_service = service

    allowed_origins = resolved_config.api.allowed_origins
    if allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allowed_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["ETag", "Location", "x-amz-request-id", "x-ledger-receipt-id"],
        )

    @app.middleware("http")
    async def _log_requests(request: Request, call_next):
        started = perf_counter()
        response = await call_next(request)
        LOGGER.info(
            "%s %s -> %d (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            (perf_counter() - started) * 1000,
        )
        return response

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError):
        if exc.retryable or exc.code in {"OrphanedReceipt", "AmbiguousWrite"}:
            LOGGER.warning(
                "%s %s failed with %s: %s", request.method, request.url.path, exc.code, exc
            )
        return error_response(exc)

    app.include_router(health_router)
    app.include_router(s3_router)

    return app


if __name__ == "__main__":  # pragma: no cover - manual launch helper
    import uvicorn

    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
