"""One-shot creation of every table the gateway uses."""

from __future__ import annotations

from .db import sqlite_transaction
from .repositories.credentials import CredentialStore
from .repositories.inbounds import InboundRepository
from .repositories.orders import OrderLedger


def init_schema() -> None:
    """Create missing tables in a single write transaction.

    Repositories also create their own table on first use; running this at
    startup keeps concurrent first requests from racing to do so.
    """

    with sqlite_transaction() as connection:
        CredentialStore().ensure_schema(connection)
        OrderLedger().ensure_schema(connection)
        InboundRepository().ensure_schema(connection)
