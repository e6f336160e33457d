"""Order-gated inbound provisioning.

:meth:`Provisioner.create_inbound` exchanges a paid order for exactly one
inbound. The inbound insert and the order's ``paid -> used`` update run in one
immediate transaction: either both land, or the order stays ``paid``.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Callable

import structlog

from .config import PROVISION_CONFIG
from .db import sqlite_transaction
from .errors import OrderError, OrderErrorCode, ProvisionError, ProvisionErrorCode
from .models import CreateInboundRequest, Inbound, Order, OrderStatus
from .repositories.credentials import random_token
from .repositories.inbounds import InboundRepository, NewInbound, PortAllocator
from .repositories.orders import OrderLedger

logger = structlog.get_logger(__name__)

DEFAULT_STREAM_SETTINGS = "{}"
DEFAULT_SNIFFING = '{"enabled":true,"destOverride":["http","tls"]}'


@dataclass(frozen=True)
class ProtocolDefaults:
    """Default ``settings`` blob for a protocol and the credential it embeds."""

    settings: str
    credential: str


ProtocolStrategy = Callable[[], ProtocolDefaults]

_PROTOCOLS: dict[str, ProtocolStrategy] = {}


def register_protocol(name: str) -> Callable[[ProtocolStrategy], ProtocolStrategy]:
    """Register a default-settings strategy under ``name``."""

    def decorator(strategy: ProtocolStrategy) -> ProtocolStrategy:
        _PROTOCOLS[name] = strategy
        return strategy

    return decorator


def supported_protocols() -> frozenset[str]:
    return frozenset(_PROTOCOLS)


def default_settings(protocol: str) -> ProtocolDefaults:
    try:
        strategy = _PROTOCOLS[protocol]
    except KeyError:
        raise ProvisionError(
            ProvisionErrorCode.UNSUPPORTED_PROTOCOL, f"Unsupported protocol: {protocol}"
        ) from None
    return strategy()


def _compact(payload: dict) -> str:
    return json.dumps(payload, separators=(",", ":"))


@register_protocol("vmess")
def _vmess_defaults() -> ProtocolDefaults:
    client_id = str(uuid.uuid4())
    settings = {"clients": [{"id": client_id, "alterId": 0}], "disableInsecureEncryption": False}
    return ProtocolDefaults(_compact(settings), client_id)


@register_protocol("vless")
def _vless_defaults() -> ProtocolDefaults:
    client_id = str(uuid.uuid4())
    settings = {"clients": [{"id": client_id, "flow": ""}], "decryption": "none"}
    return ProtocolDefaults(_compact(settings), client_id)


@register_protocol("trojan")
def _trojan_defaults() -> ProtocolDefaults:
    password = random_token(16)
    return ProtocolDefaults(_compact({"clients": [{"password": password}]}), password)


@register_protocol("shadowsocks")
def _shadowsocks_defaults() -> ProtocolDefaults:
    password = random_token(16)
    return ProtocolDefaults(_compact({"method": "aes-256-gcm", "password": password}), password)


class _ClaimLost(Exception):
    """The order left ``paid`` between the claim check and the commit."""


class _PortTaken(Exception):
    """An allocated port was bound by another writer before our insert."""


class Provisioner:
    """Builds and persists inbounds for claimed orders."""

    def __init__(
        self,
        ledger: OrderLedger,
        inbounds: InboundRepository,
        allocator: PortAllocator,
        *,
        retry_limit: int = PROVISION_CONFIG.port_retry_limit,
    ) -> None:
        self._ledger = ledger
        self._inbounds = inbounds
        self._allocator = allocator
        self._retry_limit = retry_limit

    def create_inbound(self, request: CreateInboundRequest) -> Inbound:
        """Exchange the request's order for an inbound.

        Calling this again for an order this user already consumed returns
        the inbound created the first time.

        Raises:
            OrderError: The order cannot be claimed by this user.
            ProvisionError: The protocol is unknown, the port is taken or
                exhausted, or persistence failed.
        """

        try:
            self._ledger.claim(request.order_id, request.user_id)
        except OrderError as exc:
            if exc.code is not OrderErrorCode.ALREADY_USED:
                raise
            existing = self._existing_inbound(request.order_id, request.user_id)
            if existing is None:
                raise
            logger.info("inbound_reused", order_id=request.order_id, inbound_id=existing.id)
            return existing

        if request.protocol not in _PROTOCOLS:
            raise ProvisionError(
                ProvisionErrorCode.UNSUPPORTED_PROTOCOL, f"Unsupported protocol: {request.protocol}"
            )

        if request.port is not None:
            if self._allocator.is_port_taken(request.port):
                raise ProvisionError(ProvisionErrorCode.PORT_CONFLICT, f"Port {request.port} is already in use.")
            return self._persist(request, request.port, explicit_port=True)

        for attempt in range(1, self._retry_limit + 1):
            port = self._allocator.reserve()
            try:
                return self._persist(request, port, explicit_port=False)
            except _PortTaken:
                logger.info("port_collision_retry", port=port, attempt=attempt, order_id=request.order_id)
            finally:
                self._allocator.release(port)
        raise ProvisionError(ProvisionErrorCode.PORT_EXHAUSTED, "Could not reserve a free port.")

    def _existing_inbound(self, order_id: str, user_id: str) -> Inbound | None:
        try:
            order = self._ledger.get_order(order_id)
        except OrderError:
            return None
        return self._inbound_for(order, user_id)

    def _inbound_for(self, order: Order, user_id: str) -> Inbound | None:
        if order.status is not OrderStatus.USED or order.inbound_id <= 0 or order.user_id != user_id:
            return None
        return self._inbounds.get(order.inbound_id)

    def _build(self, request: CreateInboundRequest, port: int) -> NewInbound:
        settings = request.settings
        if settings is None:
            settings = default_settings(request.protocol).settings
        return NewInbound(
            port=port,
            protocol=request.protocol,
            remark=request.remark,
            expiry_time=request.expiry_time,
            total=request.total,
            listen=request.listen,
            settings=settings,
            stream_settings=request.stream_settings or DEFAULT_STREAM_SETTINGS,
            sniffing=request.sniffing or DEFAULT_SNIFFING,
        )

    def _persist(self, request: CreateInboundRequest, port: int, *, explicit_port: bool) -> Inbound:
        new_inbound = self._build(request, port)
        try:
            with sqlite_transaction() as connection:
                inbound_id = self._inbounds.insert(connection, new_inbound)
                if not self._ledger.commit(connection, request.order_id, inbound_id):
                    raise _ClaimLost()
        except _ClaimLost:
            return self._resolve_lost_claim(request)
        except sqlite3.IntegrityError as exc:
            if not InboundRepository.is_port_violation(exc):
                logger.error("inbound_persist_failed", order_id=request.order_id, error=str(exc))
                raise ProvisionError(ProvisionErrorCode.PERSIST_FAILURE) from exc
            if explicit_port:
                raise ProvisionError(ProvisionErrorCode.PORT_CONFLICT, f"Port {port} is already in use.") from exc
            raise _PortTaken() from exc
        except sqlite3.Error as exc:
            logger.error("inbound_persist_failed", order_id=request.order_id, error=str(exc))
            raise ProvisionError(ProvisionErrorCode.PERSIST_FAILURE) from exc

        inbound = self._inbounds.get(inbound_id)
        if inbound is None:  # pragma: no cover - committed row vanished
            raise ProvisionError(ProvisionErrorCode.PERSIST_FAILURE)
        logger.info(
            "inbound_created",
            order_id=request.order_id,
            user_id=request.user_id,
            inbound_id=inbound.id,
            port=inbound.port,
            protocol=inbound.protocol,
        )
        return inbound

    def _resolve_lost_claim(self, request: CreateInboundRequest) -> Inbound:
        """Another request consumed the order first; hand back its inbound if ours."""

        order = self._ledger.get_order(request.order_id)
        inbound = self._inbound_for(order, request.user_id)
        if inbound is not None:
            logger.info("inbound_reused", order_id=request.order_id, inbound_id=inbound.id)
            return inbound
        # Raises the reason the order can no longer be consumed.
        self._ledger.claim(request.order_id, request.user_id)
        raise OrderError(OrderErrorCode.ALREADY_USED)
