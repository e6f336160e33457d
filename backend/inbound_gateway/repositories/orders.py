"""SQLite-backed order ledger.

Orders move ``pending -> paid -> used``, or to ``expired`` once ``expires_at``
passes before they are used. All times are millisecond epoch integers.

The ``paid -> used`` step is a single conditional ``UPDATE`` executed on the
provisioning transaction (see :meth:`OrderLedger.commit`), so the check and
the write cannot be separated by a concurrent request.
"""

from __future__ import annotations

import sqlite3
import time
from typing import Callable

import structlog

from ..db import sqlite_connection, sqlite_transaction
from ..errors import OrderError, OrderErrorCode
from ..models import Order, OrderStatus

logger = structlog.get_logger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


_ORDER_COLUMNS = """
    order_id, user_id, status, amount, paid_at, expires_at,
    inbound_id, created_at, used_at, remark
"""


class OrderLedger:
    """Owns the ``orders`` table and its state machine."""

    def __init__(self, clock: Callable[[], int] = now_ms) -> None:
        self._clock = clock

    def create_order(
        self,
        order_id: str,
        user_id: str,
        *,
        amount: int = 0,
        expires_at: int = 0,
        remark: str = "",
    ) -> Order:
        """Record a new ``pending`` order.

        Raises:
            OrderError: ``DUPLICATE`` if ``order_id`` already exists.
        """

        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            try:
                connection.execute(
                    """
                    INSERT INTO orders (order_id, user_id, status, amount, expires_at, created_at, remark)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (order_id, user_id, OrderStatus.PENDING.value, amount, expires_at, self._clock(), remark),
                )
            except sqlite3.IntegrityError as exc:
                if "UNIQUE constraint failed: orders.order_id" in str(exc):
                    raise OrderError(OrderErrorCode.DUPLICATE) from exc
                raise
            row = self._select(connection, order_id)

        return self._row_to_order(row)

    def mark_paid(self, order_id: str) -> Order:
        """Confirm payment for a ``pending`` order.

        Raises:
            OrderError: ``NOT_FOUND`` for unknown orders, ``INVALID_TRANSITION``
                if the order is not ``pending``.
        """

        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            cursor = connection.execute(
                "UPDATE orders SET status = ?, paid_at = ? WHERE order_id = ? AND status = ?",
                (OrderStatus.PAID.value, self._clock(), order_id, OrderStatus.PENDING.value),
            )
            changed = cursor.rowcount
            row = self._select(connection, order_id)

        if row is None:
            raise OrderError(OrderErrorCode.NOT_FOUND)
        if not changed:
            raise OrderError(OrderErrorCode.INVALID_TRANSITION)
        logger.info("order_paid", order_id=order_id)
        return self._row_to_order(row)

    def get_order(self, order_id: str) -> Order:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            row = self._select(connection, order_id)
        if row is None:
            raise OrderError(OrderErrorCode.NOT_FOUND)
        return self._row_to_order(row)

    def verify_order(self, order_id: str) -> Order:
        """Return the order if it can be exchanged for an inbound right now.

        An order found past its ``expires_at`` is flipped to ``expired`` as a
        side effect.
        """

        order = self.get_order(order_id)
        if order.status is OrderStatus.USED:
            raise OrderError(OrderErrorCode.ALREADY_USED)
        if order.status is OrderStatus.EXPIRED:
            raise OrderError(OrderErrorCode.EXPIRED)
        if order.status is not OrderStatus.PAID:
            raise OrderError(OrderErrorCode.NOT_PAID)
        if order.expires_at > 0 and order.expires_at < self._clock():
            self._expire(order_id)
            raise OrderError(OrderErrorCode.EXPIRED)
        return order

    def claim(self, order_id: str, user_id: str) -> Order:
        """Check that ``user_id`` may consume the order.

        This does not change the order. The ``used`` transition only happens
        through :meth:`commit`, once the inbound exists.
        """

        order = self.verify_order(order_id)
        if order.user_id != user_id:
            logger.warning(
                "order_user_mismatch",
                order_id=order_id,
                order_user_id=order.user_id,
                request_user_id=user_id,
            )
            raise OrderError(OrderErrorCode.USER_MISMATCH)
        return order

    def commit(self, connection: sqlite3.Connection, order_id: str, inbound_id: int) -> bool:
        """Flip a ``paid``, unexpired order to ``used`` on the caller's transaction.

        Returns ``True`` only for the caller whose update changed the row.
        """

        now = self._clock()
        self.ensure_schema(connection)
        cursor = connection.execute(
            """
            UPDATE orders
            SET status = ?, inbound_id = ?, used_at = ?
            WHERE order_id = ? AND status = ? AND (expires_at = 0 OR expires_at >= ?)
            """,
            (OrderStatus.USED.value, inbound_id, now, order_id, OrderStatus.PAID.value, now),
        )
        return cursor.rowcount == 1

    def expire_overdue(self) -> int:
        """Expire every unused order whose deadline has passed."""

        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            cursor = connection.execute(
                """
                UPDATE orders SET status = ?
                WHERE expires_at > 0 AND expires_at < ? AND status IN (?, ?)
                """,
                (
                    OrderStatus.EXPIRED.value,
                    self._clock(),
                    OrderStatus.PENDING.value,
                    OrderStatus.PAID.value,
                ),
            )
            expired = cursor.rowcount
        if expired:
            logger.info("expired_orders_swept", count=expired)
        return expired

    def _expire(self, order_id: str) -> None:
        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            connection.execute(
                "UPDATE orders SET status = ? WHERE order_id = ? AND status IN (?, ?)",
                (OrderStatus.EXPIRED.value, order_id, OrderStatus.PENDING.value, OrderStatus.PAID.value),
            )
        logger.info("order_expired", order_id=order_id)

    def _select(self, connection: sqlite3.Connection, order_id: str) -> sqlite3.Row | None:
        return connection.execute(
            f"SELECT {_ORDER_COLUMNS} FROM orders WHERE order_id = ?",
            (order_id,),
        ).fetchone()

    def ensure_schema(self, connection: sqlite3.Connection) -> None:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ('pending', 'paid', 'used', 'expired')),
                amount INTEGER NOT NULL DEFAULT 0,
                paid_at INTEGER NOT NULL DEFAULT 0,
                expires_at INTEGER NOT NULL DEFAULT 0,
                inbound_id INTEGER NOT NULL DEFAULT 0,
                created_at INTEGER NOT NULL DEFAULT 0,
                used_at INTEGER NOT NULL DEFAULT 0,
                remark TEXT NOT NULL DEFAULT '',
                CHECK(status != 'used' OR inbound_id > 0)
            )
            """
        )
        connection.execute("CREATE INDEX IF NOT EXISTS idx_orders_user_id ON orders (user_id)")

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        return Order(
            order_id=row["order_id"],
            user_id=row["user_id"],
            status=OrderStatus(row["status"]),
            amount=row["amount"],
            paid_at=row["paid_at"],
            expires_at=row["expires_at"],
            inbound_id=row["inbound_id"],
            created_at=row["created_at"],
            used_at=row["used_at"],
            remark=row["remark"],
        )
