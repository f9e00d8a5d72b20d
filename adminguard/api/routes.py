from __future__ import annotations

import json
import re
from typing import Any, Optional, Tuple
from uuid import uuid4

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from adminguard.config import get_settings
from adminguard.logging import get_correlation_id, get_logger
from adminguard.service.auth import extract_bearer
from adminguard.service.gateway import GatewayRequest
from adminguard.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/admin", tags=["admin"])

TOKEN_BODY_FIELD = "idToken"
_INTEGER_QUERY = re.compile(r"^-?\d{1,18}$")


class _MalformedBody:
    """Stands in for a body that is not valid JSON; fails validation as a non-object."""

    def __repr__(self) -> str:
        return "<malformed body>"


MALFORMED_BODY = _MalformedBody()


async def _read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except (ValueError, UnicodeDecodeError, RecursionError):
        logger.warning("request_body_malformed", path=request.url.path, size=len(raw))
        return MALFORMED_BODY


def _split_token(authorization: Optional[str], body: Any) -> Tuple[Optional[str], Any]:
    """Separate the credential from the operation payload.

    The Authorization header wins over an ``idToken`` body field; the field
    is removed from the payload either way.
    """
    token = extract_bearer(authorization)
    if isinstance(body, dict) and TOKEN_BODY_FIELD in body:
        body = dict(body)
        body_token = body.pop(TOKEN_BODY_FIELD)
        if token is None and isinstance(body_token, str):
            token = body_token
    return token, body


def client_address(request: Request) -> str:
    if get_settings().trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    return request.client.host if request.client else "unknown"


def _query_payload(request: Request) -> dict:
    payload: dict[str, Any] = {}
    for key, value in request.query_params.multi_items():
        # Query strings carry no types; integer-looking values are decoded as integers
        payload[key] = int(value) if _INTEGER_QUERY.match(value) else value
    return payload


async def _gate(
    request: Request, operation: str, authorization: Optional[str], body: Any
) -> JSONResponse:
    token, payload = _split_token(authorization, body)
    gateway_request = GatewayRequest(
        operation=operation,
        token=token,
        payload=payload,
        client_address=client_address(request),
        request_id=get_correlation_id() or str(uuid4()),
    )
    result = await get_runtime().gateway.handle(gateway_request)
    return JSONResponse(status_code=result.status_code, content=result.body, headers=result.headers)


@router.post("/verify-admin")
async def verify_admin(request: Request, authorization: Optional[str] = Header(None)):
    return await _gate(request, "verify-admin", authorization, await _read_json_body(request))


@router.get("/list-users")
async def list_users(request: Request, authorization: Optional[str] = Header(None)):
    return await _gate(request, "list-users", authorization, _query_payload(request))


@router.post("/list-users")
async def list_users_post(request: Request, authorization: Optional[str] = Header(None)):
    return await _gate(request, "list-users", authorization, await _read_json_body(request))


@router.post("/ban-user")
async def ban_user(request: Request, authorization: Optional[str] = Header(None)):
    return await _gate(request, "ban-user", authorization, await _read_json_body(request))


@router.post("/create-license")
async def create_license(request: Request, authorization: Optional[str] = Header(None)):
    return await _gate(request, "create-license", authorization, await _read_json_body(request))


@router.post("/ban-ip")
async def ban_ip(request: Request, authorization: Optional[str] = Header(None)):
    return await _gate(request, "ban-ip", authorization, await _read_json_body(request))


@router.post("/{operation}")
async def unknown_operation(
    request: Request, operation: str, authorization: Optional[str] = Header(None)
):
    # Registered last; unknown names are still audited by the gateway
    return await _gate(request, operation, authorization, await _read_json_body(request))
