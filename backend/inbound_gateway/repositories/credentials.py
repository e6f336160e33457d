"""SQLite-backed store of API credentials."""

from __future__ import annotations

import secrets
import sqlite3
import string

import structlog

from ..config import SECURITY_CONFIG
from ..db import sqlite_connection, sqlite_transaction
from ..models import Credential, CredentialStatus
from .orders import now_ms

logger = structlog.get_logger(__name__)

_ALPHABET = string.ascii_letters + string.digits


def random_token(length: int) -> str:
    """Return a random alphanumeric string from the system CSPRNG."""

    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def _parse_allowed_ips(raw: str | None) -> frozenset[str]:
    if not raw:
        return frozenset()
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


class CredentialStore:
    """Owns the ``api_keys`` table: lookup, issuance and status toggles."""

    def create_key(
        self,
        name: str,
        *,
        rate_limit: int = 0,
        allowed_ips: set[str] | frozenset[str] | None = None,
    ) -> Credential:
        """Issue a new active key with a freshly generated secret."""

        if rate_limit <= 0:
            rate_limit = SECURITY_CONFIG.default_rate_limit
        key = f"xui_{random_token(32)}"
        secret = random_token(64)
        created_at = now_ms()
        ips = ",".join(sorted(allowed_ips or ()))

        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            connection.execute(
                """
                INSERT INTO api_keys (key, secret, name, status, created_at, last_used_at, rate_limit, allowed_ips)
                VALUES (?, ?, ?, ?, ?, 0, ?, ?)
                """,
                (key, secret, name, CredentialStatus.ACTIVE.value, created_at, rate_limit, ips),
            )
            row = self._select(connection, key)

        logger.info("api_key_created", api_key=key, name=name)
        return self._row_to_credential(row)

    def get(self, key: str) -> Credential | None:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            row = self._select(connection, key)
        return self._row_to_credential(row) if row is not None else None

    def find_active_by_name(self, name: str) -> Credential | None:
        with sqlite_connection() as connection:
            self.ensure_schema(connection)
            row = connection.execute(
                """
                SELECT id, key, secret, name, status, created_at, last_used_at, rate_limit, allowed_ips
                FROM api_keys
                WHERE name = ? AND status = ?
                ORDER BY id
                LIMIT 1
                """,
                (name, CredentialStatus.ACTIVE.value),
            ).fetchone()
        return self._row_to_credential(row) if row is not None else None

    def set_status(self, key: str, status: CredentialStatus | str) -> bool:
        """Enable or disable a key. Returns ``False`` if the key is unknown."""

        status = CredentialStatus(status)
        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            cursor = connection.execute(
                "UPDATE api_keys SET status = ? WHERE key = ?",
                (status.value, key),
            )
            updated = cursor.rowcount
        if updated:
            logger.info("api_key_status_changed", api_key=key, status=status.value)
        return updated > 0

    def touch_last_used(self, key: str) -> None:
        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            connection.execute(
                "UPDATE api_keys SET last_used_at = ? WHERE key = ?",
                (now_ms(), key),
            )

    def delete_key(self, key: str) -> bool:
        with sqlite_transaction() as connection:
            self.ensure_schema(connection)
            cursor = connection.execute("DELETE FROM api_keys WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def _select(self, connection: sqlite3.Connection, key: str) -> sqlite3.Row | None:
        return connection.execute(
            """
            SELECT id, key, secret, name, status, created_at, last_used_at, rate_limit, allowed_ips
            FROM api_keys
            WHERE key = ?
            """,
            (key,),
        ).fetchone()

    def ensure_schema(self, connection: sqlite3.Connection) -> None:
        connection.execute(
            """
            CREATE TABLE IF NOT EXISTS api_keys (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                key TEXT NOT NULL UNIQUE,
                secret TEXT NOT NULL,
                name TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'active' CHECK(status IN ('active', 'inactive')),
                created_at INTEGER NOT NULL DEFAULT 0,
                last_used_at INTEGER NOT NULL DEFAULT 0,
                rate_limit INTEGER NOT NULL DEFAULT 100,
                allowed_ips TEXT NOT NULL DEFAULT ''
            )
            """
        )

    def _row_to_credential(self, row: sqlite3.Row) -> Credential:
        return Credential(
            id=row["id"],
            key=row["key"],
            secret=row["secret"],
            name=row["name"],
            status=CredentialStatus(row["status"]),
            rate_limit=row["rate_limit"],
            allowed_ips=_parse_allowed_ips(row["allowed_ips"]),
            created_at=row["created_at"],
            last_used_at=row["last_used_at"],
        )
