"""Async HTTP client that signs requests for the gateway."""

from __future__ import annotations

import secrets
import time
from typing import Any

import httpx
import structlog

from .errors import UpstreamError
from .security import canonical_json, compute_signature

logger = structlog.get_logger(__name__)


class SignedAPIClient:
    """Calls gateway endpoints with ``X-API-Key``/``X-Timestamp``/``X-Nonce``/``X-Signature``.

    The body is serialised once with :func:`canonical_json`; the same bytes
    are signed and sent. Every call carries a fixed timeout and a timeout
    fails the call rather than being retried.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str,
        api_secret: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._api_secret = api_secret
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def signed_headers(self, body: bytes) -> dict[str, str]:
        timestamp = int(time.time())
        nonce = secrets.token_hex(16)
        signature = compute_signature(timestamp=timestamp, nonce=nonce, body=body, secret=self._api_secret)
        return {
            "Content-Type": "application/json",
            "X-API-Key": self._api_key,
            "X-Timestamp": str(timestamp),
            "X-Nonce": nonce,
            "X-Signature": signature,
        }

    async def post(self, path: str, payload: Any) -> dict[str, Any]:
        """POST ``payload`` and return the gateway's response envelope.

        Raises:
            UpstreamError: On timeout, transport failure or a response that is
                not a JSON envelope.
        """

        body = canonical_json(payload)
        try:
            response = await self._client.post(path, content=body, headers=self.signed_headers(body))
        except httpx.TimeoutException as exc:
            logger.warning("upstream_timeout", path=path)
            raise UpstreamError(f"Request to {path} timed out.") from exc
        except httpx.HTTPError as exc:
            logger.warning("upstream_unreachable", path=path, error=str(exc))
            raise UpstreamError(f"Request to {path} failed: {exc}") from exc

        try:
            envelope = response.json()
        except ValueError as exc:
            raise UpstreamError(f"Invalid response from {path} (HTTP {response.status_code}).") from exc
        if not isinstance(envelope, dict):
            raise UpstreamError(f"Invalid response from {path} (HTTP {response.status_code}).")

        if response.status_code != httpx.codes.OK:
            return {
                "success": False,
                "msg": f"Upstream returned HTTP {response.status_code}: {envelope.get('msg', '')}",
            }
        return envelope
