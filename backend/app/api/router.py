"""FastAPI router exposing S3-style bucket and object endpoints."""
from __future__ import annotations

from email.utils import format_datetime
from typing import Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, BackgroundTasks, Depends, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse, StreamingResponse

from backend.app.config import APIConfig
from backend.app.contracts import ListObjectsResult, PutObjectRequest, ResolvedObject
from backend.app.errors import EntityTooLarge, GatewayError, InvalidArgument
from backend.app.gateway import ObjectGatewayService
from backend.app.identity import etag_matches

META_HEADER_PREFIX = "x-amz-meta-"
RECEIPT_HEADER = "x-ledger-receipt-id"
OWNER = {"DisplayName": "ledger-gateway", "ID": "ledger-gateway"}

_STATUS_BY_CODE = {
    "InvalidArgument": status.HTTP_400_BAD_REQUEST,
    "MissingParameter": status.HTTP_400_BAD_REQUEST,
    "MissingBody": status.HTTP_400_BAD_REQUEST,
    "InvalidBucketName": status.HTTP_400_BAD_REQUEST,
    "KeyTooLongError": status.HTTP_400_BAD_REQUEST,
    "Unauthorized": status.HTTP_401_UNAUTHORIZED,
    "NoSuchKey": status.HTTP_404_NOT_FOUND,
    "EntityTooLarge": status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    "BackendRejected": 422,
    "OrphanedReceipt": status.HTTP_500_INTERNAL_SERVER_ERROR,
    "BackendUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "StoreUnavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "AmbiguousWrite": status.HTTP_504_GATEWAY_TIMEOUT,
}


def status_for_error(exc: GatewayError) -> int:
    """Translate a gateway error code into an HTTP status code."""

    return _STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)


def error_response(exc: GatewayError) -> JSONResponse:
    """Render a gateway error as a JSON response."""

    headers = {"x-amz-request-id": _request_id()}
    if exc.retryable:
        headers["Retry-After"] = "1"
    return JSONResponse(
        status_code=status_for_error(exc),
        content={"error": exc.code, "message": str(exc), "retryable": exc.retryable},
        headers=headers,
    )


def get_gateway_service(request: Request) -> ObjectGatewayService:
    """Return the gateway service stored on the app state."""

    return request.app.state.gateway_service


def get_api_config(request: Request) -> APIConfig:
    """Return the API configuration stored on the app state."""

    return request.app.state.api_config


def require_api_key(request: Request, config: APIConfig = Depends(get_api_config)) -> None:
    """Reject requests lacking the configured API key; no-op when none is set."""

    if config.api_key is None:
        return
    provided = request.headers.get("x-api-key") or request.query_params.get("apiKey")
    if provided != config.api_key:
        raise GatewayError("Invalid or missing API key", code="Unauthorized")


router = APIRouter(tags=["s3"], dependencies=[Depends(require_api_key)])


def _request_id() -> str:
    return uuid4().hex


def _http_date(resolved: ResolvedObject) -> str:
    return format_datetime(resolved.last_modified, usegmt=True)


def _object_headers(resolved: ResolvedObject) -> Dict[str, str]:
    headers = {
        "Content-Type": resolved.content_type,
        "Content-Length": str(resolved.size),
        "ETag": resolved.etag,
        "Last-Modified": _http_date(resolved),
        "Accept-Ranges": "bytes",
        "x-amz-request-id": _request_id(),
        RECEIPT_HEADER: resolved.receipt_id,
    }
    for name, value in resolved.metadata.items():
        headers[f"{META_HEADER_PREFIX}{name}"] = value
    return headers


def _not_modified(request: Request, resolved: ResolvedObject) -> Optional[Response]:
    candidate = request.headers.get("if-none-match")
    if not candidate:
        return None
    if any(etag_matches(resolved.etag, item) for item in candidate.split(",")):
        headers = {"ETag": resolved.etag, "Last-Modified": _http_date(resolved)}
        return Response(status_code=status.HTTP_304_NOT_MODIFIED, headers=headers)
    return None


def _parse_max_keys(raw: Optional[str], ceiling: int) -> int:
    if raw is None or raw == "":
        return ceiling
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidArgument("max-keys must be an integer", details={"max_keys": raw}) from exc
    if value < 0:
        raise InvalidArgument("max-keys cannot be negative", details={"max_keys": raw})
    return value


def _listing_payload(result: ListObjectsResult) -> Dict[str, object]:
    payload: Dict[str, object] = {
        "Name": result.bucket,
        "Prefix": result.prefix,
        "Marker": result.marker,
        "Delimiter": result.delimiter,
        "MaxKeys": result.max_keys,
        "IsTruncated": result.is_truncated,
        "Contents": [
            {
                "Key": record.key,
                "LastModified": record.last_modified.isoformat(),
                "ETag": record.etag,
                "Size": record.size,
                "StorageClass": "STANDARD",
                "Owner": OWNER,
            }
            for record in result.contents
        ],
        "CommonPrefixes": [{"Prefix": value} for value in result.common_prefixes],
    }
    if result.is_truncated and result.next_marker is not None:
        payload["NextMarker"] = result.next_marker
    return payload


async def _read_body(request: Request, limit: int) -> bytes:
    chunks: List[bytes] = []
    total = 0
    async for chunk in request.stream():
        total += len(chunk)
        if total > limit:
            raise EntityTooLarge(total, limit)
        chunks.append(chunk)
    return b"".join(chunks)


@router.get("/", summary="List buckets")
async def list_buckets(service: ObjectGatewayService = Depends(get_gateway_service)) -> JSONResponse:
    """Return all live buckets."""

    buckets = await service.list_buckets()
    content = {
        "Owner": OWNER,
        "Buckets": [
            {"Name": bucket.name, "CreationDate": bucket.created_at.isoformat()} for bucket in buckets
        ],
    }
    return JSONResponse(content=content, headers={"x-amz-request-id": _request_id()})


@router.get("/{bucket}", summary="List objects in a bucket")
async def list_objects(
    bucket: str,
    request: Request,
    service: ObjectGatewayService = Depends(get_gateway_service),
) -> JSONResponse:
    """Return one page of objects filtered by prefix, marker and delimiter."""

    params = request.query_params
    max_keys = _parse_max_keys(params.get("max-keys"), service.listing.max_keys_ceiling)
    result = await service.list_objects(
        bucket,
        prefix=params.get("prefix", ""),
        marker=params.get("marker", ""),
        max_keys=max_keys,
        delimiter=params.get("delimiter", ""),
    )
    return JSONResponse(content=_listing_payload(result), headers={"x-amz-request-id": _request_id()})


@router.put("/{bucket}/{key:path}", summary="Upload an object")
async def put_object(
    bucket: str,
    key: str,
    request: Request,
    service: ObjectGatewayService = Depends(get_gateway_service),
    config: APIConfig = Depends(get_api_config),
) -> JSONResponse:
    """Store the raw request body as the live content of ``bucket/key``."""

    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit():
        service.orchestrator.validate_size(int(declared_length))
    payload = await _read_body(request, config.max_object_bytes)
    metadata = {
        name[len(META_HEADER_PREFIX):]: value
        for name, value in request.headers.items()
        if name.lower().startswith(META_HEADER_PREFIX)
    }
    result = await service.put_object(
        PutObjectRequest(
            bucket=bucket,
            key=key,
            payload=payload,
            content_type=request.headers.get("content-type"),
            metadata=metadata,
        )
    )
    record = result.record
    headers = {
        "ETag": record.etag,
        "Last-Modified": format_datetime(record.last_modified, usegmt=True),
        "Location": result.location,
        "x-amz-request-id": _request_id(),
        RECEIPT_HEADER: record.receipt_id,
    }
    content = {
        "ETag": record.etag,
        "Location": result.location,
        "Bucket": record.bucket,
        "Key": record.key,
        "ReceiptId": record.receipt_id,
    }
    return JSONResponse(content=content, headers=headers)


@router.head("/{bucket}/{key:path}", summary="Get object metadata")
async def head_object(
    bucket: str,
    key: str,
    request: Request,
    service: ObjectGatewayService = Depends(get_gateway_service),
) -> Response:
    """Return object metadata headers without a body."""

    resolved = await service.get_object_meta(bucket, key)
    not_modified = _not_modified(request, resolved)
    if not_modified is not None:
        return not_modified
    return Response(status_code=status.HTTP_200_OK, headers=_object_headers(resolved))


@router.get("/{bucket}/{key:path}", summary="Download an object")
async def get_object(
    bucket: str,
    key: str,
    request: Request,
    service: ObjectGatewayService = Depends(get_gateway_service),
) -> Response:
    """Stream the object from the ledger gateway, or redirect to it."""

    resolved = await service.get_object_meta(bucket, key)
    not_modified = _not_modified(request, resolved)
    if not_modified is not None:
        return not_modified
    if request.query_params.get("redirect", "").lower() in {"1", "true", "yes"}:
        return RedirectResponse(
            resolved.location,
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
            headers={"ETag": resolved.etag, RECEIPT_HEADER: resolved.receipt_id},
        )
    stream = await service.open_object(resolved)
    # Runs even when the client disconnects before the body is iterated.
    cleanup = BackgroundTasks()
    cleanup.add_task(stream.aclose)
    return StreamingResponse(
        stream.aiter_bytes(),
        media_type=resolved.content_type,
        headers=_object_headers(resolved),
        background=cleanup,
    )


@router.delete("/{bucket}/{key:path}", summary="Delete an object", status_code=status.HTTP_204_NO_CONTENT)
async def delete_object(
    bucket: str,
    key: str,
    service: ObjectGatewayService = Depends(get_gateway_service),
) -> Response:
    """Soft delete the live record; ledger content is left untouched."""

    await service.delete_object(bucket, key)
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers={"x-amz-request-id": _request_id()})


__all__ = [
    "error_response",
    "get_api_config",
    "get_gateway_service",
    "require_api_key",
    "router",
    "status_for_error",
]
