"""
Collection endpoint.

POST /track accepts one payload object or a JSON array of them (the
collector's batch). A request is all-or-nothing. Responses never carry the
visitor id or anything derived from the caller's address.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from src.api.deps import get_ingestion_service, get_rules
from src.components.analytics import ClientContext, ErrorKind, IngestionService, parse_geo
from src.components.analytics.models import IngestionError, IngestOutput
from src.rules.models import Rules

router = APIRouter()

STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.PRIVACY: 400,
    ErrorKind.UNKNOWN_SITE: 404,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.QUOTA: 429,
    ErrorKind.STORAGE: 500,
}


def get_client_ip(request: Request, trusted_proxy_hops: int) -> str | None:
    """
    Client address as seen by the outermost trusted proxy, else the socket peer.

    Each trusted proxy appends the address it received the request from, so
    the hop trusted_proxy_hops from the right is the client. Entries further
    left were supplied by the client and are ignored.
    """
    if trusted_proxy_hops > 0:
        forwarded = ",".join(request.headers.getlist("x-forwarded-for"))
        hops = [h.strip() for h in forwarded.split(",") if h.strip()]
        if len(hops) >= trusted_proxy_hops:
            return hops[-trusted_proxy_hops]
    return request.client.host if request.client else None


def error_response(kind: ErrorKind, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=STATUS_BY_KIND[kind],
        content={"error": message, "kind": kind.value},
    )


def _primary_error(output: IngestOutput) -> IngestionError:
    kind = output.error_kind
    return next(e for e in output.errors if e.kind == kind)


def _describe(error: IngestionError) -> str:
    if error.field_name and error.kind in (ErrorKind.VALIDATION, ErrorKind.PRIVACY):
        return f"{error.message} ({error.field_name})"
    return error.message


@router.post("/track")
async def track(
    request: Request,
    service: IngestionService = Depends(get_ingestion_service),
    rules: Rules = Depends(get_rules),
) -> Any:
    """
    Ingest one tracking payload or a batch.

    200 {"success": true} (plus "accepted" for arrays); errors are
    {"error": message, "kind": kind}.
    """
    try:
        body = await request.json()
    except ValueError:
        return error_response(ErrorKind.VALIDATION, "Malformed JSON body")

    is_batch = isinstance(body, list)
    payloads = tuple(body) if is_batch else (body,)

    country, region = parse_geo(request.headers)
    client = ClientContext(
        ip=get_client_ip(request, rules.ingestion.trusted_proxy_hops),
        user_agent=request.headers.get("user-agent"),
        country=country,
        region=region,
    )

    records, errors = await run_in_threadpool(service.ingest, payloads, client, is_batch)

    output = IngestOutput(records=tuple(records), errors=errors)
    if not output.success:
        primary = _primary_error(output)
        return error_response(primary.kind, _describe(primary))

    content: dict[str, Any] = {"success": True}
    if is_batch:
        content["accepted"] = output.accepted
    return content
