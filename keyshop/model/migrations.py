# keyshop/model/migrations.py
"""
Boot-time schema migration.

Stores created by older releases may lack the reservation columns on
`cards` or the quantity/points columns on `orders`. Everything here is
idempotent and runs once at startup, so request handlers can assume the
current schema.
"""

from __future__ import annotations
import logging
from typing import Dict, Set

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .db import Base

logger = logging.getLogger(__name__)

# (table, column, column DDL)
LATE_COLUMNS = [
    ("cards", "reserved_order_id", "TEXT"),
    ("cards", "reserved_at", "DOUBLE PRECISION"),
    ("cards", "used_at", "DOUBLE PRECISION"),
    ("orders", "quantity", "INTEGER NOT NULL DEFAULT 1"),
    ("orders", "points_used", "INTEGER NOT NULL DEFAULT 0"),
    ("orders", "current_payment_id", "TEXT"),
    ("orders", "payee", "TEXT"),
    ("login_users", "points", "INTEGER NOT NULL DEFAULT 0"),
    ("login_users", "is_blocked", "BOOLEAN NOT NULL DEFAULT FALSE"),
]

SQL_LATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS cards_reserved_order_idx "
    "ON cards(reserved_order_id)",
    "CREATE INDEX IF NOT EXISTS orders_current_payment_idx "
    "ON orders(current_payment_id)",
]

# cards imported before is_used had a default
SQL_BACKFILL_IS_USED = r"""
UPDATE cards SET is_used = FALSE WHERE is_used IS NULL
"""


def _columns_by_table(sync_conn) -> Dict[str, Set[str]]:
    insp = inspect(sync_conn)
    out: Dict[str, Set[str]] = {}
    for table in {t for t, _, _ in LATE_COLUMNS}:
        if insp.has_table(table):
            out[table] = {c["name"] for c in insp.get_columns(table)}
    return out


async def add_missing_columns(conn: AsyncConnection) -> list[str]:
    """
    Add every late column the store does not have yet. Returns the
    "table.column" names that were added.
    """
    is_pg = conn.dialect.name == "postgresql"
    existing = await conn.run_sync(_columns_by_table)
    added = []
    for table, column, ddl in LATE_COLUMNS:
        if column in existing.get(table, set()):
            continue
        if is_pg:
            stmt = f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {column} {ddl}"
        else:
            stmt = f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"
        await conn.execute(text(stmt))
        added.append(f"{table}.{column}")
    return added


async def migrate(conn: AsyncConnection) -> list[str]:
    await conn.run_sync(Base.metadata.create_all)
    added = await add_missing_columns(conn)
    for stmt in SQL_LATE_INDEXES:
        await conn.execute(text(stmt))
    await conn.execute(text(SQL_BACKFILL_IS_USED))
    if added:
        logger.warning("schema migrated, added columns: %s", ", ".join(added))
    return added


async def migrate_engine(engine: AsyncEngine) -> list[str]:
    async with engine.begin() as conn:
        return await migrate(conn)
