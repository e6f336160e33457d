"""Health check endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from ..dependencies import get_auth_gate, require_api_credential
from ..gate import AuthGate
from ..models import Credential, Envelope, HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", summary="Service health check")
async def health_check(
    _: Credential = Depends(require_api_credential),
    gate: AuthGate = Depends(get_auth_gate),
) -> dict[str, Any]:
    """Return a signed health status response.

    The dependency enforces request signing even for health checks so that
    unauthenticated callers cannot probe the replay cache.
    """

    entries = gate.replay_guard.active_count()
    data = HealthResponse(status="ok", nonce_cache_entries=entries).model_dump(by_alias=True)
    return Envelope(success=True, msg="ok", data=data).to_payload()
