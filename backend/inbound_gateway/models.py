"""Domain records and Pydantic models used by the gateway API."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator
from pydantic.alias_generators import to_camel


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    USED = "used"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Credential:
    """An API key as seen by the authentication layer.

    The secret only ever feeds signature verification; it is excluded from
    ``repr`` so it cannot leak through logs or tracebacks.
    ``created_at`` and ``last_used_at`` are millisecond epoch values.
    """

    id: int
    key: str
    secret: str = field(repr=False)
    name: str
    status: CredentialStatus
    rate_limit: int
    allowed_ips: frozenset[str]
    created_at: int
    last_used_at: int

    @property
    def is_active(self) -> bool:
        return self.status is CredentialStatus.ACTIVE


class ApiModel(BaseModel):
    """Base model serialising snake_case attributes as camelCase JSON keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Order(ApiModel):
    """Paid entitlement gating the creation of exactly one inbound.

    All timestamps are millisecond epoch values; ``0`` means "unset" (and for
    ``expires_at``, "never expires").
    """

    order_id: str
    user_id: str
    status: OrderStatus
    amount: int = 0
    paid_at: int = 0
    expires_at: int = 0
    inbound_id: int = 0
    created_at: int = 0
    used_at: int = 0
    remark: str = ""


class Inbound(ApiModel):
    """A provisioned proxy listener."""

    id: int
    port: int
    protocol: str
    tag: str
    remark: str = ""
    enable: bool = True
    expiry_time: int = 0
    total: int = 0
    up: int = 0
    down: int = 0
    listen: str = ""
    settings: str
    stream_settings: str
    sniffing: str


IdStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]


class CreateInboundRequest(ApiModel):
    """Payload for ``POST /inbound/create``.

    ``settings``, ``stream_settings`` and ``sniffing`` are opaque proxy-engine
    blobs. They may be sent as JSON strings or objects; objects are stored in
    compact form. A missing or zero ``port`` asks the gateway to allocate one.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    order_id: IdStr
    user_id: IdStr
    protocol: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    port: int | None = Field(None, ge=0, le=65535)
    remark: str = ""
    expiry_time: int = Field(0, ge=0)
    total: int = Field(0, ge=0)
    settings: str | None = None
    stream_settings: str | None = None
    sniffing: str | None = None
    listen: str = ""

    @field_validator("settings", "stream_settings", "sniffing", mode="before")
    @classmethod
    def serialise_blob(cls, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("port")
    @classmethod
    def zero_port_means_auto(cls, value: int | None) -> int | None:
        return value or None


class CreateInboundResponse(ApiModel):
    inbound: Inbound


class OrderStatusRequest(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    order_id: IdStr


class OrderStatusResponse(ApiModel):
    order_id: str
    status: OrderStatus
    inbound_id: int
    paid_at: int
    used_at: int


class RelayCreateInboundRequest(ApiModel):
    """What a mobile client sends to the relay: just the order and the user."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    order_id: IdStr
    user_id: IdStr


class HealthResponse(ApiModel):
    """Response payload for service health checks."""

    status: str = Field(..., description="Human-readable service status message.")
    nonce_cache_entries: int = Field(
        ..., description="Number of nonces retained for replay protection."
    )


class Envelope(BaseModel):
    """Uniform response wrapper: ``{success, msg, data?}``."""

    success: bool
    msg: str = ""
    data: Any = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)
