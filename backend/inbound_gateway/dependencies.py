"""Reusable FastAPI dependency providers."""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Annotated, TypeVar

import structlog
from fastapi import Header, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ValidationError

from .config import trust_proxy_headers
from .errors import MalformedRequestError
from .gate import AuthGate, SignedRequest
from .models import Credential
from .provisioning import Provisioner
from .repositories.credentials import CredentialStore
from .repositories.orders import OrderLedger

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def client_ip(request: Request) -> str:
    """Return the caller's address, honouring proxy headers only when trusted."""

    if trust_proxy_headers():
        real_ip = request.headers.get("X-Real-IP", "").strip()
        if real_ip:
            return real_ip
        forwarded = request.headers.get("X-Forwarded-For", "")
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else ""


def _touch_last_used(store: CredentialStore, key: str) -> None:
    try:
        store.touch_last_used(key)
    except sqlite3.Error as exc:
        logger.warning("api_key_touch_failed", api_key=key, error=str(exc))


def schedule_touch(request: Request, store: CredentialStore, key: str) -> None:
    """Record key usage off the request path.

    The update runs even if the handler later fails. Pending tasks live in
    ``app.state.pending_touches`` until they finish; shutdown waits for them.
    """

    pending: set[asyncio.Task[None]] = request.app.state.pending_touches
    task = asyncio.get_running_loop().create_task(run_in_threadpool(_touch_last_used, store, key))
    pending.add(task)
    task.add_done_callback(pending.discard)


async def require_api_credential(
    request: Request,
    x_api_key: Annotated[str | None, Header(alias="X-API-Key")] = None,
    x_timestamp: Annotated[str | None, Header(alias="X-Timestamp")] = None,
    x_nonce: Annotated[str | None, Header(alias="X-Nonce")] = None,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
) -> Credential:
    """Authenticate the request against its signing headers and raw body."""

    gate = get_auth_gate(request)
    signed = SignedRequest(
        api_key=x_api_key or "",
        timestamp=x_timestamp or "",
        nonce=x_nonce or "",
        signature=x_signature or "",
        client_ip=client_ip(request),
    )
    credential = await run_in_threadpool(gate.admit, signed)
    gate.verify_body(credential, signed, await request.body())
    schedule_touch(request, gate.store, credential.key)
    return credential


def get_auth_gate(request: Request) -> AuthGate:
    return request.app.state.auth_gate


def get_provisioner(request: Request) -> Provisioner:
    return request.app.state.provisioner


def get_order_ledger(request: Request) -> OrderLedger:
    return request.app.state.order_ledger


async def read_json_body(request: Request, model: type[ModelT]) -> ModelT:
    """Validate the raw request body against ``model``.

    The body is parsed only after authentication, from the same bytes the
    signature was checked against.
    """

    try:
        return model.model_validate_json(await request.body())
    except ValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        detail = first.get("msg", "invalid body")
        raise MalformedRequestError(f"Invalid request body: {location + ': ' if location else ''}{detail}") from exc
