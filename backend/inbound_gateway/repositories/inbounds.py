"""SQLite-backed inbound storage and port allocation."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass

from ..config import PROVISION_CONFIG
from ..db import sqlite_connection
from ..errors import ProvisionError, ProvisionErrorCode
from ..models import Inbound

_INBOUND_COLUMNS = """
    id, port, protocol, tag, remark, enable, expiry_time, total, up, down,
    listen, settings, stream_settings, sniffing
"""


@dataclass(frozen=True)
class NewInbound:
    """Inbound fields known before the row exists."""

    port: int
    protocol: str
    remark: str
    expiry_time: int
    total: int
    listen: str
    settings: str
    stream_settings: str
    sniffing: str
    enable: bool = True

    @property
    def tag(self) -> str:
        return f"inbound-{self.port}"


class InboundRepository:
    """Owns the ``inbounds`` table. Port and tag are unique at the schema level."""

    def insert(self, connection: sqlite3.Connection, inbound: NewInbound) -> int:
        """Insert on the caller's transaction and return the new row id.

        ``sqlite3.IntegrityError`` propagates so the caller can tell a port
        collision from other failures.
        """

        self.ensure_schema(connection)
        cursor = connection.execute(
            """
            INSERT INTO inbounds (
                port, protocol, tag, remark, enable, expiry_time, total, up, down,
                listen, settings, stream_settings, sniffing
            ) VALUES (?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?, ?, ?)
            """,
            (
                inbound.port,
                inbound.protocol,
                inbound.tag,
                inbound.remark,
                int(inbound.enable),
                inbound.expiry_time,
                inbound.total,
                inbound.listen,
                inbound.settings,
                inbound.stream_settings,
                inbound.sniffing,
            ),
        )
        return int(cursor.lastrowid)

    def get(self, inbound_id: int) -> Inbound | None:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            row = connection.execute(
                f"SELECT {_INBOUND_COLUMNS} FROM inbounds WHERE id = ?",
                (inbound_id,),
            ).fetchone()
        return self._row_to_inbound(row) if row is not None else None

    def count(self) -> int:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            return connection.execute("SELECT COUNT(*) FROM inbounds").fetchone()[0]

    def is_port_taken(self, port: int) -> bool:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            row = connection.execute("SELECT 1 FROM inbounds WHERE port = ?", (port,)).fetchone()
        return row is not None

    def ports_in_range(self, low: int, high: int) -> set[int]:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            rows = connection.execute(
                "SELECT port FROM inbounds WHERE port BETWEEN ? AND ?",
                (low, high),
            ).fetchall()
        return {row[0] for row in rows}

    @staticmethod
    def is_port_violation(exc: sqlite3.IntegrityError) -> bool:
        message = str(exc)
        return "inbounds.port" in message or "inbounds.tag" in message

    def ensure_schema(self, connection: sqlite3.Connection) -> None:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS inbounds (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                port INTEGER NOT NULL UNIQUE,
                protocol TEXT NOT NULL,
                tag TEXT NOT NULL UNIQUE,
                remark TEXT NOT NULL DEFAULT '',
                enable INTEGER NOT NULL DEFAULT 1,
                expiry_time INTEGER NOT NULL DEFAULT 0,
                total INTEGER NOT NULL DEFAULT 0,
                up INTEGER NOT NULL DEFAULT 0,
                down INTEGER NOT NULL DEFAULT 0,
                listen TEXT NOT NULL DEFAULT '',
                settings TEXT NOT NULL,
                stream_settings TEXT NOT NULL,
                sniffing TEXT NOT NULL
            )
            """
        )

    def _row_to_inbound(self, row: sqlite3.Row) -> Inbound:
        return Inbound(
            id=row["id"],
            port=row["port"],
            protocol=row["protocol"],
            tag=row["tag"],
            remark=row["remark"],
            enable=bool(row["enable"]),
            expiry_time=row["expiry_time"],
            total=row["total"],
            up=row["up"],
            down=row["down"],
            listen=row["listen"],
            settings=row["settings"],
            stream_settings=row["stream_settings"],
            sniffing=row["sniffing"],
        )


class PortAllocator:
    """Hands out the lowest free port in a bounded range.

    Ports already given to an in-flight provisioning call in this process are
    skipped until :meth:`release`, so concurrent requests here do not pick the
    same candidate. Other processes are only fenced off by the ``UNIQUE``
    constraint, which the provisioner answers by reserving again.
    """

    def __init__(
        self,
        repository: InboundRepository,
        *,
        low: int = PROVISION_CONFIG.port_range_low,
        high: int = PROVISION_CONFIG.port_range_high,
    ) -> None:
        if low > high:
            raise ValueError("Port range is empty.")
        self._repository = repository
        self.low = low
        self.high = high
        self._pending: set[int] = set()
        self._lock = threading.Lock()

    def reserve(self, low: int | None = None, high: int | None = None) -> int:
        """Return a free port and mark it pending.

        Raises:
            ProvisionError: ``PORT_EXHAUSTED`` when every port in the range is
                bound or pending.
        """

        low = self.low if low is None else low
        high = self.high if high is None else high
        taken = self._repository.ports_in_range(low, high)
        with self._lock:
            for port in range(low, high + 1):
                if port in taken or port in self._pending:
                    continue
                self._pending.add(port)
                return port
        raise ProvisionError(ProvisionErrorCode.PORT_EXHAUSTED)

    def release(self, port: int) -> None:
        with self._lock:
            self._pending.discard(port)

    def is_port_taken(self, port: int) -> bool:
        with self._lock:
            if port in self._pending:
                return True
        return self._repository.is_port_taken(port)
