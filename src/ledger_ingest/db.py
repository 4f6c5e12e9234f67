"""Database connection helper."""

from __future__ import annotations

import math

import psycopg
from psycopg.rows import dict_row

from ledger_ingest.config import get_database_url


def get_connection(
    *, timeout: float | None = None
) -> psycopg.Connection[dict[str, object]]:
    """Create and return a new database connection.

    With a timeout (seconds), both the connect and every statement on the
    connection are bounded by it.
    """
    if timeout is None:
        return psycopg.connect(get_database_url(), row_factory=dict_row)

    statement_ms = int(timeout * 1000)
    return psycopg.connect(
        get_database_url(),
        row_factory=dict_row,
        connect_timeout=max(1, math.ceil(timeout)),
        options=f"-c statement_timeout={statement_ms}",
    )
