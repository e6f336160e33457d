from __future__ import annotations

import secrets
import time
from typing import Any

from fastapi.testclient import TestClient

from inbound_gateway.models import Credential
from inbound_gateway.security import canonical_json, compute_signature


def signed_headers(
    credential: Credential,
    body: bytes,
    *,
    timestamp: int | None = None,
    nonce: str | None = None,
) -> dict[str, str]:
    """Generate the four signing headers for ``body``."""

    timestamp = int(time.time()) if timestamp is None else timestamp
    nonce = nonce or secrets.token_hex(16)
    signature = compute_signature(timestamp=timestamp, nonce=nonce, body=body, secret=credential.secret)
    return {
        "Content-Type": "application/json",
        "X-API-Key": credential.key,
        "X-Timestamp": str(timestamp),
        "X-Nonce": nonce,
        "X-Signature": signature,
    }


def post_signed(
    client: TestClient,
    path: str,
    payload: Any,
    credential: Credential,
    **header_overrides: Any,
):
    body = canonical_json(payload)
    headers = signed_headers(credential, body, **header_overrides)
    return client.post(path, content=body, headers=headers)
