"""Relay that lets mobile clients provision inbounds without holding a secret.

Clients send only ``{orderId, userId}``. The relay checks the order in the
shared database, fills in the remaining fields and forwards a signed request
to the gateway. It runs as its own FastAPI application.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from fastapi import APIRouter, FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .client import SignedAPIClient
from .config import ProxySettings, load_proxy_settings
from .dependencies import read_json_body
from .errors import MalformedRequestError, OrderError, OrderErrorCode, UpstreamError
from .logging_setup import configure_logging
from .models import Envelope, Order, OrderStatusRequest, RelayCreateInboundRequest
from .repositories.credentials import CredentialStore
from .repositories.orders import OrderLedger
from .schema import init_schema

logger = structlog.get_logger(__name__)

PROXY_KEY_NAME = "backend-proxy"
CORS_ALLOW_HEADERS = [
    "Content-Type",
    "Content-Length",
    "Accept-Encoding",
    "X-CSRF-Token",
    "Authorization",
    "Accept",
    "Origin",
    "Cache-Control",
    "X-Requested-With",
]

router = APIRouter()


def resolve_upstream_credential(settings: ProxySettings, store: CredentialStore) -> tuple[str, str]:
    """Return the key and secret the relay signs with.

    Configured values win. Otherwise an active key named ``backend-proxy`` in
    the shared store is reused, or issued if none exists.
    """

    if settings.api_key and settings.api_secret:
        return settings.api_key, settings.api_secret
    credential = store.find_active_by_name(PROXY_KEY_NAME)
    if credential is None:
        credential = store.create_key(PROXY_KEY_NAME)
        logger.info("proxy_api_key_issued", api_key=credential.key)
    else:
        logger.info("proxy_api_key_reused", api_key=credential.key)
    return credential.key, credential.secret


def generate_remark(order_id: str) -> str:
    return f"node-{order_id[-4:]}"


def build_inbound_request(request: RelayCreateInboundRequest, order: Order, protocol: str) -> dict[str, Any]:
    """Expand a relay request into a full ``/inbound/create`` payload.

    The port is left out so the gateway allocates one; the inbound expires
    with the order.
    """

    return {
        "orderId": request.order_id,
        "userId": request.user_id,
        "protocol": protocol,
        "remark": generate_remark(request.order_id),
        "expiryTime": order.expires_at,
        "total": 0,
    }


def _client(request: Request) -> SignedAPIClient:
    return request.app.state.upstream


@router.get("/health", summary="Relay liveness check")
async def proxy_health() -> dict[str, Any]:
    return Envelope(success=True, msg="ok").to_payload()


@router.post("/api/v1/inbound/create", summary="Create an inbound for a paid order")
async def relay_create_inbound(request: Request) -> dict[str, Any]:
    payload = await read_json_body(request, RelayCreateInboundRequest)
    ledger: OrderLedger = request.app.state.order_ledger
    order = await run_in_threadpool(ledger.get_order, payload.order_id)
    if order.user_id != payload.user_id:
        raise OrderError(OrderErrorCode.USER_MISMATCH)

    settings: ProxySettings = request.app.state.proxy_settings
    upstream_payload = build_inbound_request(payload, order, settings.default_protocol)
    return await _client(request).post("/inbound/create", upstream_payload)


@router.post("/api/v1/order/status", summary="Look up the status of an order")
async def relay_order_status(request: Request) -> dict[str, Any]:
    payload = await read_json_body(request, OrderStatusRequest)
    return await _client(request).post("/order/status", {"orderId": payload.order_id})


async def _bad_request_handler(request: Request, exc: Exception) -> JSONResponse:
    message = exc.message if isinstance(exc, OrderError) else str(exc)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=Envelope(success=False, msg=message).to_payload(),
    )


async def _upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
    logger.error("relay_upstream_failed", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content=Envelope(success=False, msg=f"Upstream request failed: {exc}").to_payload(),
    )


def create_proxy_app(
    settings: ProxySettings | None = None,
    *,
    client: SignedAPIClient | None = None,
    ledger: OrderLedger | None = None,
    store: CredentialStore | None = None,
) -> FastAPI:
    """Create the relay application.

    When ``client`` is omitted the upstream credential is resolved at startup
    (see :func:`resolve_upstream_credential`) and the client is closed on
    shutdown.
    """

    configure_logging()
    settings = settings or load_proxy_settings()
    credential_store = store or CredentialStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await run_in_threadpool(init_schema)
        owned = app.state.upstream is None
        if owned:
            api_key, api_secret = await run_in_threadpool(resolve_upstream_credential, settings, credential_store)
            app.state.upstream = SignedAPIClient(
                settings.upstream_url,
                api_key=api_key,
                api_secret=api_secret,
                timeout=settings.timeout_seconds,
            )
        logger.info("proxy_started", upstream=settings.upstream_url, protocol=settings.default_protocol)
        try:
            yield
        finally:
            if owned:
                await app.state.upstream.aclose()
                app.state.upstream = None

    app = FastAPI(title="Inbound Gateway Relay", version="0.1.0", lifespan=lifespan)
    app.state.proxy_settings = settings
    app.state.order_ledger = ledger or OrderLedger()
    app.state.upstream = client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=CORS_ALLOW_HEADERS,
    )
    app.add_exception_handler(MalformedRequestError, _bad_request_handler)
    app.add_exception_handler(OrderError, _bad_request_handler)
    app.add_exception_handler(UpstreamError, _upstream_error_handler)
    app.include_router(router)
    return app
