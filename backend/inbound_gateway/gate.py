"""Single accept/reject decision for signed API requests."""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from .errors import AuthError, AuthErrorCode
from .models import Credential
from .repositories.credentials import CredentialStore
from .security import ReplayGuard, SlidingWindowRateLimiter, verify_signature

logger = structlog.get_logger(__name__)

_TIMESTAMP_PATTERN = re.compile(r"[0-9]{1,19}")


@dataclass(frozen=True)
class SignedRequest:
    """The signing headers of an HTTP request plus the caller's address."""

    api_key: str
    timestamp: str
    nonce: str
    signature: str
    client_ip: str


class AuthGate:
    """Runs the credential, allow-list, rate, replay and signature checks in order.

    The first failing check raises :class:`AuthError`; later checks never run.
    Rate limiting precedes signature verification, so requests with a bad
    signature still spend the key's budget.

    :meth:`admit` covers everything that only needs headers; the body is read
    and handed to :meth:`verify_body` only once a request has been admitted.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        replay_guard: ReplayGuard | None = None,
        rate_limiter: SlidingWindowRateLimiter | None = None,
    ) -> None:
        self.store = store
        self.replay_guard = replay_guard or ReplayGuard()
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()

    def authenticate(self, request: SignedRequest, body: bytes) -> Credential:
        credential = self.admit(request)
        self.verify_body(credential, request, body)
        return credential

    def admit(self, request: SignedRequest) -> Credential:
        try:
            return self._admit(request)
        except AuthError as exc:
            self._log_rejection(request, exc)
            raise

    def verify_body(self, credential: Credential, request: SignedRequest, body: bytes) -> None:
        if not verify_signature(
            request.signature,
            timestamp=int(request.timestamp),
            nonce=request.nonce,
            body=body,
            secret=credential.secret,
        ):
            exc = AuthError(AuthErrorCode.BAD_SIGNATURE)
            self._log_rejection(request, exc)
            raise exc

    def _admit(self, request: SignedRequest) -> Credential:
        if not request.api_key:
            raise AuthError(AuthErrorCode.MISSING_KEY)

        credential = self.store.get(request.api_key)
        if credential is None:
            raise AuthError(AuthErrorCode.INVALID_KEY)
        if not credential.is_active:
            raise AuthError(AuthErrorCode.KEY_DISABLED)

        if credential.allowed_ips and request.client_ip not in credential.allowed_ips:
            raise AuthError(AuthErrorCode.IP_NOT_ALLOWED)

        if not self.rate_limiter.allow(credential.key, credential.rate_limit):
            raise AuthError(AuthErrorCode.RATE_LIMITED)

        if not _TIMESTAMP_PATTERN.fullmatch(request.timestamp):
            raise AuthError(AuthErrorCode.BAD_TIMESTAMP)
        if not request.nonce or not request.signature:
            raise AuthError(AuthErrorCode.MISSING_SIGNATURE)

        self.replay_guard.accept(credential.key, int(request.timestamp), request.nonce)
        return credential

    def _log_rejection(self, request: SignedRequest, exc: AuthError) -> None:
        logger.warning(
            "api_auth_rejected",
            code=exc.code.value,
            api_key=request.api_key or None,
            client_ip=request.client_ip,
        )
