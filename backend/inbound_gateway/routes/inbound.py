"""Order-gated inbound provisioning endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool

from ..dependencies import get_provisioner, read_json_body, require_api_credential
from ..models import CreateInboundRequest, CreateInboundResponse, Credential, Envelope
from ..provisioning import Provisioner

router = APIRouter(prefix="/inbound", tags=["inbound"])


@router.post("/create", summary="Create an inbound for a paid order")
async def create_inbound(
    request: Request,
    _: Credential = Depends(require_api_credential),
    provisioner: Provisioner = Depends(get_provisioner),
) -> dict[str, Any]:
    """Consume a paid order and return the inbound it was exchanged for.

    Retrying with the same order returns the inbound created by the first
    successful call instead of provisioning another one.
    """

    payload = await read_json_body(request, CreateInboundRequest)
    inbound = await run_in_threadpool(provisioner.create_inbound, payload)
    data = CreateInboundResponse(inbound=inbound).model_dump(by_alias=True)
    return Envelope(success=True, msg="Inbound created.", data=data).to_payload()
