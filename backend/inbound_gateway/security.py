"""Request signing, replay protection and rate limiting.

Clients sign every protected request with the secret paired to their API key:

    signature = hex(HMAC-SHA256(secret, timestamp || nonce || body))

where ``timestamp`` is decimal unix seconds and ``body`` the exact bytes sent
on the wire. The gateway never re-encodes the body before verifying it, so
signers must serialise once (see :func:`canonical_json`) and send those bytes.
"""

from __future__ import annotations

import hmac
import json
import threading
import time
from collections import deque
from hashlib import sha256
from typing import Any, Callable

import structlog

from .config import SECURITY_CONFIG
from .errors import AuthError, AuthErrorCode

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


def canonical_json(payload: Any) -> bytes:
    """Serialise ``payload`` the one way signers are expected to."""

    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False).encode("utf-8")


def compute_signature(*, timestamp: int, nonce: str, body: bytes | str, secret: str) -> str:
    """Compute a lowercase hexadecimal HMAC signature for a request."""

    if isinstance(body, str):
        body = body.encode("utf-8")
    signer = hmac.new(secret.encode("utf-8"), digestmod=sha256)
    signer.update(str(int(timestamp)).encode("ascii"))
    signer.update(nonce.encode("utf-8"))
    signer.update(body)
    return signer.hexdigest()


def verify_signature(
    candidate: str,
    *,
    timestamp: int,
    nonce: str,
    body: bytes | str,
    secret: str,
) -> bool:
    """Check ``candidate`` against the expected signature in constant time."""

    expected = compute_signature(timestamp=timestamp, nonce=nonce, body=body, secret=secret)
    return hmac.compare_digest(expected.encode("ascii"), candidate.encode("utf-8"))


class ReplayGuard:
    """Timestamp window plus a per-credential nonce cache.

    A request is accepted when its timestamp is at most ``max_past_seconds``
    old and at most ``max_future_seconds`` ahead, and its nonce has not been
    seen for the same credential while the window could still accept it.
    """

    def __init__(
        self,
        *,
        max_past_seconds: int = SECURITY_CONFIG.max_past_skew_seconds,
        max_future_seconds: int = SECURITY_CONFIG.max_future_skew_seconds,
        clock: Clock = time.time,
    ) -> None:
        self._max_past = max_past_seconds
        self._max_future = max_future_seconds
        self._ttl = max_past_seconds + max_future_seconds
        self._clock = clock
        self._nonces: dict[str, dict[str, float]] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, credential_key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(credential_key)
            if lock is None:
                lock = self._locks[credential_key] = threading.Lock()
                self._nonces[credential_key] = {}
            return lock

    def accept(self, credential_key: str, timestamp: int, nonce: str) -> None:
        """Accept the request or raise :class:`AuthError`.

        Raises:
            AuthError: ``EXPIRED`` outside the window, ``REPLAYED`` for a
                nonce already recorded for this credential.
        """

        now = self._clock()
        if now - timestamp > self._max_past or timestamp - now > self._max_future:
            raise AuthError(AuthErrorCode.EXPIRED)

        with self._lock_for(credential_key):
            seen = self._nonces[credential_key]
            self._purge(seen, now)
            if nonce in seen:
                logger.warning("replay_detected", api_key=credential_key, nonce=nonce[:8])
                raise AuthError(AuthErrorCode.REPLAYED)
            seen[nonce] = now

    def _purge(self, seen: dict[str, float], now: float) -> None:
        expired = [value for value, recorded in seen.items() if now - recorded > self._ttl]
        for value in expired:
            del seen[value]

    def active_count(self) -> int:
        """Return the number of nonces still inside the replay window."""

        now = self._clock()
        total = 0
        with self._registry_lock:
            keys = list(self._locks)
        for key in keys:
            with self._lock_for(key):
                seen = self._nonces[key]
                self._purge(seen, now)
                total += len(seen)
        return total


class SlidingWindowRateLimiter:
    """Per-credential sliding-window request counter.

    Each key owns a deque of accepted request times guarded by its own lock,
    so callers for different keys never contend.
    """

    def __init__(
        self,
        *,
        window_seconds: int = SECURITY_CONFIG.rate_window_seconds,
        default_limit: int = SECURITY_CONFIG.default_rate_limit,
        clock: Clock = time.time,
    ) -> None:
        self._window = window_seconds
        self._default_limit = default_limit
        self._clock = clock
        self._windows: dict[str, tuple[threading.Lock, deque[float]]] = {}
        self._registry_lock = threading.Lock()

    def _window_for(self, key: str) -> tuple[threading.Lock, deque[float]]:
        with self._registry_lock:
            entry = self._windows.get(key)
            if entry is None:
                entry = self._windows[key] = (threading.Lock(), deque())
            return entry

    def allow(self, key: str, limit: int) -> bool:
        """Record a request for ``key`` and return whether it is within ``limit``."""

        if limit <= 0:
            limit = self._default_limit
        lock, hits = self._window_for(key)
        with lock:
            now = self._clock()
            while hits and now - hits[0] >= self._window:
                hits.popleft()
            if len(hits) >= limit:
                return False
            hits.append(now)
            return True

    def current_count(self, key: str) -> int:
        lock, hits = self._window_for(key)
        with lock:
            now = self._clock()
            return sum(1 for hit in hits if now - hit < self._window)
