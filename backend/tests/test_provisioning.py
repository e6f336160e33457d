from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from typing import Any, Callable

import pytest

from inbound_gateway.errors import OrderError, OrderErrorCode, ProvisionError, ProvisionErrorCode
from inbound_gateway.models import CreateInboundRequest, Inbound, Order, OrderStatus
from inbound_gateway.provisioning import (
    DEFAULT_SNIFFING,
    Provisioner,
    default_settings,
    supported_protocols,
)
from inbound_gateway.repositories.inbounds import InboundRepository, PortAllocator
from inbound_gateway.repositories.orders import OrderLedger


@pytest.fixture()
def inbounds() -> InboundRepository:
    return InboundRepository()


@pytest.fixture()
def allocator(inbounds: InboundRepository) -> PortAllocator:
    return PortAllocator(inbounds, low=20000, high=20099)


@pytest.fixture()
def provisioner(ledger: OrderLedger, inbounds: InboundRepository, allocator: PortAllocator) -> Provisioner:
    return Provisioner(ledger, inbounds, allocator)


def make_request(order_id: str = "O1", user_id: str = "U1", **fields: Any) -> CreateInboundRequest:
    payload = {"orderId": order_id, "userId": user_id, "protocol": "vless", **fields}
    return CreateInboundRequest.model_validate(payload)


def test_supported_protocols() -> None:
    assert supported_protocols() == {"vmess", "vless", "trojan", "shadowsocks"}


@pytest.mark.parametrize("protocol", ["vmess", "vless"])
def test_uuid_protocols_embed_fresh_client_id(protocol: str) -> None:
    first = default_settings(protocol)
    second = default_settings(protocol)

    assert str(uuid.UUID(first.credential)) == first.credential
    assert first.credential != second.credential
    assert json.loads(first.settings)["clients"][0]["id"] == first.credential


@pytest.mark.parametrize("protocol", ["trojan", "shadowsocks"])
def test_password_protocols_embed_fresh_password(protocol: str) -> None:
    first = default_settings(protocol)
    second = default_settings(protocol)

    assert len(first.credential) == 16
    assert first.credential.isalnum()
    assert first.credential != second.credential
    assert first.credential in first.settings


def test_unknown_protocol_defaults() -> None:
    with pytest.raises(ProvisionError) as excinfo:
        default_settings("wireguard")
    assert excinfo.value.code is ProvisionErrorCode.UNSUPPORTED_PROTOCOL


def test_create_inbound_consumes_order(
    provisioner: Provisioner, ledger: OrderLedger, paid_order: Callable[..., Order]
) -> None:
    paid_order("O1", "U1")

    inbound = provisioner.create_inbound(make_request(remark="node-0001", expiryTime=1_900_000_000_000))

    assert inbound.protocol == "vless"
    assert inbound.port == 20000
    assert inbound.tag == "inbound-20000"
    assert inbound.remark == "node-0001"
    assert inbound.expiry_time == 1_900_000_000_000
    assert inbound.sniffing == DEFAULT_SNIFFING
    assert json.loads(inbound.settings)["decryption"] == "none"

    order = ledger.get_order("O1")
    assert order.status is OrderStatus.USED
    assert order.inbound_id == inbound.id


def test_create_inbound_keeps_override_settings(provisioner: Provisioner, paid_order: Callable[..., Order]) -> None:
    paid_order()
    settings = {"clients": [{"id": "11111111-2222-3333-4444-555555555555"}], "decryption": "none"}

    inbound = provisioner.create_inbound(
        make_request(settings=settings, streamSettings='{"network":"ws"}', listen="127.0.0.1")
    )

    assert json.loads(inbound.settings) == settings
    assert inbound.stream_settings == '{"network":"ws"}'
    assert inbound.listen == "127.0.0.1"


def test_create_inbound_is_idempotent(
    provisioner: Provisioner, inbounds: InboundRepository, paid_order: Callable[..., Order]
) -> None:
    paid_order()

    first = provisioner.create_inbound(make_request())
    second = provisioner.create_inbound(make_request(protocol="trojan"))

    assert second == first
    assert inbounds.count() == 1


def test_used_order_is_not_returned_to_other_user(provisioner: Provisioner, paid_order: Callable[..., Order]) -> None:
    paid_order()
    provisioner.create_inbound(make_request())

    with pytest.raises(OrderError) as excinfo:
        provisioner.create_inbound(make_request(user_id="U2"))
    assert excinfo.value.code is OrderErrorCode.ALREADY_USED


@pytest.mark.parametrize(
    "setup, code",
    [
        (lambda ledger, paid: None, OrderErrorCode.NOT_FOUND),
        (lambda ledger, paid: ledger.create_order("O1", "U1"), OrderErrorCode.NOT_PAID),
        (lambda ledger, paid: paid("O1", "U2"), OrderErrorCode.USER_MISMATCH),
        (lambda ledger, paid: paid("O1", "U1", expires_at=1), OrderErrorCode.EXPIRED),
    ],
)
def test_order_must_be_claimable(
    provisioner: Provisioner,
    inbounds: InboundRepository,
    ledger: OrderLedger,
    paid_order: Callable[..., Order],
    setup: Callable[..., object],
    code: OrderErrorCode,
) -> None:
    setup(ledger, paid_order)

    with pytest.raises(OrderError) as excinfo:
        provisioner.create_inbound(make_request())

    assert excinfo.value.code is code
    assert inbounds.count() == 0


def test_unsupported_protocol_leaves_order_paid(
    provisioner: Provisioner, ledger: OrderLedger, paid_order: Callable[..., Order]
) -> None:
    paid_order()

    with pytest.raises(ProvisionError) as excinfo:
        provisioner.create_inbound(make_request(protocol="wireguard"))

    assert excinfo.value.code is ProvisionErrorCode.UNSUPPORTED_PROTOCOL
    assert ledger.get_order("O1").status is OrderStatus.PAID


def test_explicit_port_is_used_and_conflicts_are_rejected(
    provisioner: Provisioner, ledger: OrderLedger, paid_order: Callable[..., Order]
) -> None:
    paid_order("O1")
    paid_order("O2")

    inbound = provisioner.create_inbound(make_request("O1", port=443))
    assert inbound.port == 443

    with pytest.raises(ProvisionError) as excinfo:
        provisioner.create_inbound(make_request("O2", port=443))
    assert excinfo.value.code is ProvisionErrorCode.PORT_CONFLICT
    assert ledger.get_order("O2").status is OrderStatus.PAID


def test_zero_port_means_allocate(provisioner: Provisioner, paid_order: Callable[..., Order]) -> None:
    paid_order()

    inbound = provisioner.create_inbound(make_request(port=0))

    assert inbound.port == 20000


def test_allocated_ports_skip_taken_ones(provisioner: Provisioner, paid_order: Callable[..., Order]) -> None:
    for order_id in ("O1", "O2", "O3"):
        paid_order(order_id)

    provisioner.create_inbound(make_request("O1", port=20000))
    second = provisioner.create_inbound(make_request("O2"))
    third = provisioner.create_inbound(make_request("O3"))

    assert (second.port, third.port) == (20001, 20002)


def test_port_exhaustion(
    ledger: OrderLedger, inbounds: InboundRepository, paid_order: Callable[..., Order]
) -> None:
    provisioner = Provisioner(ledger, inbounds, PortAllocator(inbounds, low=30000, high=30001))
    for order_id in ("O1", "O2", "O3"):
        paid_order(order_id)
    provisioner.create_inbound(make_request("O1"))
    provisioner.create_inbound(make_request("O2"))

    with pytest.raises(ProvisionError) as excinfo:
        provisioner.create_inbound(make_request("O3"))

    assert excinfo.value.code is ProvisionErrorCode.PORT_EXHAUSTED
    assert ledger.get_order("O3").status is OrderStatus.PAID


def test_allocator_pending_ports_are_not_handed_out_twice(inbounds: InboundRepository) -> None:
    allocator = PortAllocator(inbounds, low=40000, high=40001)

    first = allocator.reserve()
    second = allocator.reserve()

    assert first != second
    assert allocator.is_port_taken(first)
    with pytest.raises(ProvisionError):
        allocator.reserve()

    allocator.release(first)
    assert allocator.reserve() == first


class StaleAllocator(PortAllocator):
    """Hands out a port another writer already bound, then behaves normally."""

    def __init__(self, repository: InboundRepository, stale_port: int) -> None:
        super().__init__(repository, low=20000, high=20099)
        self._stale = [stale_port]

    def reserve(self, low: int | None = None, high: int | None = None) -> int:
        if self._stale:
            return self._stale.pop()
        return super().reserve(low, high)


def test_port_collision_at_insert_retries_with_another_port(
    ledger: OrderLedger, inbounds: InboundRepository, provisioner: Provisioner, paid_order: Callable[..., Order]
) -> None:
    paid_order("O1")
    paid_order("O2")
    taken = provisioner.create_inbound(make_request("O1")).port

    retrying = Provisioner(ledger, inbounds, StaleAllocator(inbounds, taken))
    inbound = retrying.create_inbound(make_request("O2"))

    assert inbound.port != taken
    assert inbounds.count() == 2
    assert ledger.get_order("O2").inbound_id == inbound.id


def test_persist_failure_leaves_order_paid(
    provisioner: Provisioner,
    inbounds: InboundRepository,
    ledger: OrderLedger,
    paid_order: Callable[..., Order],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    paid_order()

    def broken_insert(connection: sqlite3.Connection, inbound: object) -> int:
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(inbounds, "insert", broken_insert)

    with pytest.raises(ProvisionError) as excinfo:
        provisioner.create_inbound(make_request())

    assert excinfo.value.code is ProvisionErrorCode.PERSIST_FAILURE
    assert ledger.get_order("O1").status is OrderStatus.PAID


def test_concurrent_requests_for_one_order_share_one_inbound(
    provisioner: Provisioner, inbounds: InboundRepository, paid_order: Callable[..., Order]
) -> None:
    paid_order()
    results: list[Inbound] = []
    errors: list[Exception] = []
    lock = threading.Lock()
    barrier = threading.Barrier(6)

    def worker() -> None:
        barrier.wait()
        try:
            inbound = provisioner.create_inbound(make_request())
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            with lock:
                errors.append(exc)
            return
        with lock:
            results.append(inbound)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len({inbound.id for inbound in results}) == 1
    assert inbounds.count() == 1


def test_concurrent_orders_get_distinct_ports(
    provisioner: Provisioner, inbounds: InboundRepository, paid_order: Callable[..., Order]
) -> None:
    order_ids = [f"O{i}" for i in range(8)]
    for order_id in order_ids:
        paid_order(order_id, f"U{order_id}")
    ports: list[int] = []
    lock = threading.Lock()
    barrier = threading.Barrier(len(order_ids))

    def worker(order_id: str) -> None:
        barrier.wait()
        inbound = provisioner.create_inbound(make_request(order_id, f"U{order_id}"))
        with lock:
            ports.append(inbound.port)

    threads = [threading.Thread(target=worker, args=(order_id,)) for order_id in order_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(ports) == len(order_ids)
    assert len(set(ports)) == len(ports)
    assert inbounds.count() == len(order_ids)
