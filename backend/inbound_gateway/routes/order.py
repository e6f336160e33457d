"""Order status lookup endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..dependencies import get_order_ledger, read_json_body, require_api_credential
from ..models import Credential, Envelope, OrderStatusRequest, OrderStatusResponse
from ..repositories.orders import OrderLedger

router = APIRouter(prefix="/order", tags=["order"])


@router.post("/status", summary="Look up the status of an order")
async def order_status(
    request: Request,
    _: Credential = Depends(require_api_credential),
    ledger: OrderLedger = Depends(get_order_ledger),
) -> dict[str, Any]:
    payload = await read_json_body(request, OrderStatusRequest)
    order = await run_in_threadpool(ledger.get_order, payload.order_id)
    data = OrderStatusResponse(
        order_id=order.order_id,
        status=order.status,
        inbound_id=order.inbound_id,
        paid_at=order.paid_at,
        used_at=order.used_at,
    ).model_dump(by_alias=True, mode="json")
    return Envelope(success=True, msg="", data=data).to_payload()
