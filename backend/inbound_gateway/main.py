"""Entry point for the FastAPI application."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from .config import resolve_sweep_interval
from .errors import GatewayError, MalformedRequestError
from .gate import AuthGate
from .logging_setup import configure_logging
from .models import Envelope
from .provisioning import Provisioner
from .repositories.credentials import CredentialStore
from .repositories.inbounds import InboundRepository, PortAllocator
from .repositories.orders import OrderLedger
from .routes import health
from .routes import inbound
from .routes import order
from .schema import init_schema

logger = structlog.get_logger(__name__)


async def sweep_expired_orders(ledger: OrderLedger, interval: float) -> None:
    """Periodically expire overdue orders. Failures are logged and retried."""

    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(ledger.expire_overdue)
        except Exception:
            logger.exception("expired_order_sweep_failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    await run_in_threadpool(init_schema)
    interval = resolve_sweep_interval()
    task: asyncio.Task[None] | None = None
    if interval > 0:
        task = asyncio.create_task(sweep_expired_orders(app.state.order_ledger, interval))
    try:
        yield
    finally:
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if app.state.pending_touches:
            await asyncio.gather(*app.state.pending_touches)


async def _gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    envelope = Envelope(success=False, msg=exc.message, data={"code": exc.code.value})
    return JSONResponse(status_code=status.HTTP_200_OK, content=envelope.to_payload())


async def _malformed_request_handler(request: Request, exc: MalformedRequestError) -> JSONResponse:
    envelope = Envelope(success=False, msg=str(exc) or "Invalid request body.")
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=envelope.to_payload())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GatewayError, _gateway_error_handler)
    app.add_exception_handler(MalformedRequestError, _malformed_request_handler)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    configure_logging()
    app = FastAPI(
        title="Inbound Gateway",
        version="0.1.0",
        description=(
            "Provisions proxy inbounds in exchange for paid orders. All endpoints "
            "require HMAC request signing with a timestamp and single-use nonce."
        ),
        lifespan=lifespan,
    )

    credential_store = CredentialStore()
    ledger = OrderLedger()
    inbounds = InboundRepository()
    app.state.auth_gate = AuthGate(credential_store)
    app.state.pending_touches = set()
    app.state.order_ledger = ledger
    app.state.provisioner = Provisioner(ledger, inbounds, PortAllocator(inbounds))

    install_error_handlers(app)
    app.include_router(health.router)
    app.include_router(inbound.router)
    app.include_router(order.router)
    return app


app = create_app()
