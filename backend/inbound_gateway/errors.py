"""Error taxonomy shared by authentication, order and provisioning logic.

Every per-request failure is a :class:`GatewayError` carrying a stable,
machine-readable ``code``. The API layer turns these into failure envelopes;
nothing here is fatal to the process.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorCode(str, Enum):
    MISSING_KEY = "missing_key"
    INVALID_KEY = "invalid_key"
    KEY_DISABLED = "key_disabled"
    IP_NOT_ALLOWED = "ip_not_allowed"
    RATE_LIMITED = "rate_limited"
    BAD_TIMESTAMP = "bad_timestamp"
    MISSING_SIGNATURE = "missing_signature"
    EXPIRED = "expired"
    REPLAYED = "replayed"
    BAD_SIGNATURE = "bad_signature"


class OrderErrorCode(str, Enum):
    NOT_FOUND = "order_not_found"
    NOT_PAID = "order_not_paid"
    ALREADY_USED = "order_already_used"
    EXPIRED = "order_expired"
    USER_MISMATCH = "order_user_mismatch"
    DUPLICATE = "order_duplicate"
    INVALID_TRANSITION = "order_invalid_transition"


class ProvisionErrorCode(str, Enum):
    UNSUPPORTED_PROTOCOL = "unsupported_protocol"
    PORT_EXHAUSTED = "port_exhausted"
    PORT_CONFLICT = "port_conflict"
    PERSIST_FAILURE = "persist_failure"


_AUTH_MESSAGES = {
    AuthErrorCode.MISSING_KEY: "Missing X-API-Key header.",
    AuthErrorCode.INVALID_KEY: "Invalid API key.",
    AuthErrorCode.KEY_DISABLED: "API key is disabled.",
    AuthErrorCode.IP_NOT_ALLOWED: "Client IP address is not in the allow-list.",
    AuthErrorCode.RATE_LIMITED: "Too many requests. Retry later.",
    AuthErrorCode.BAD_TIMESTAMP: "Invalid X-Timestamp header.",
    AuthErrorCode.MISSING_SIGNATURE: "Missing X-Nonce or X-Signature header.",
    AuthErrorCode.EXPIRED: "Request timestamp is outside the accepted window.",
    AuthErrorCode.REPLAYED: "Nonce already used.",
    AuthErrorCode.BAD_SIGNATURE: "Invalid request signature.",
}

_ORDER_MESSAGES = {
    OrderErrorCode.NOT_FOUND: "Order not found.",
    OrderErrorCode.NOT_PAID: "Order has not been paid.",
    OrderErrorCode.ALREADY_USED: "Order has already been used.",
    OrderErrorCode.EXPIRED: "Order has expired.",
    OrderErrorCode.USER_MISMATCH: "Order does not belong to this user.",
    OrderErrorCode.DUPLICATE: "An order with this id already exists.",
    OrderErrorCode.INVALID_TRANSITION: "Order status does not allow this change.",
}

_PROVISION_MESSAGES = {
    ProvisionErrorCode.UNSUPPORTED_PROTOCOL: "Unsupported protocol.",
    ProvisionErrorCode.PORT_EXHAUSTED: "No free port available.",
    ProvisionErrorCode.PORT_CONFLICT: "Port is already in use.",
    ProvisionErrorCode.PERSIST_FAILURE: "Failed to create inbound.",
}


class GatewayError(Exception):
    """Base class for recoverable per-request failures."""

    def __init__(self, code: Enum, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value!r}, {self.message!r})"


class AuthError(GatewayError):
    def __init__(self, code: AuthErrorCode, message: str | None = None) -> None:
        super().__init__(code, message or _AUTH_MESSAGES[code])


class OrderError(GatewayError):
    def __init__(self, code: OrderErrorCode, message: str | None = None) -> None:
        super().__init__(code, message or _ORDER_MESSAGES[code])


class ProvisionError(GatewayError):
    def __init__(self, code: ProvisionErrorCode, message: str | None = None) -> None:
        super().__init__(code, message or _PROVISION_MESSAGES[code])


class UpstreamError(Exception):
    """Raised by the signing client when the gateway cannot be reached."""


class MalformedRequestError(Exception):
    """Raised when a request body is not valid JSON or fails schema validation."""
