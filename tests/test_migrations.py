from sqlalchemy import inspect, text

from keyshop.infra.sql import make_async_engine
from keyshop.model.migrations import migrate_engine

LEGACY = [
    "CREATE TABLE cards (id INTEGER PRIMARY KEY, product_id TEXT NOT NULL, "
    "card_key TEXT NOT NULL, is_used BOOLEAN, created_at FLOAT)",
    "INSERT INTO cards (product_id, card_key, is_used) VALUES ('p1', 'K', NULL)",
    "CREATE TABLE orders (order_id TEXT PRIMARY KEY, product_id TEXT NOT NULL, "
    "product_name TEXT NOT NULL, amount NUMERIC(10, 2) NOT NULL, "
    "email TEXT, user_id TEXT, username TEXT, status TEXT NOT NULL, "
    "trade_no TEXT, card_key TEXT, created_at FLOAT NOT NULL, "
    "paid_at FLOAT, delivered_at FLOAT)",
]


def _columns(sync_conn, table):
    return {c["name"] for c in inspect(sync_conn).get_columns(table)}


async def test_legacy_store_is_upgraded(tmp_path):
    engine, *_ = make_async_engine(f"sqlite:///{tmp_path / 'old.db'}")
    try:
        async with engine.begin() as conn:
            for stmt in LEGACY:
                await conn.execute(text(stmt))

        added = await migrate_engine(engine)

        assert "cards.reserved_order_id" in added
        assert "orders.points_used" in added
        async with engine.begin() as conn:
            cols = await conn.run_sync(_columns, "cards")
            assert {"reserved_order_id", "reserved_at", "used_at"} <= cols
            cols = await conn.run_sync(_columns, "orders")
            assert {"quantity", "points_used", "current_payment_id"} <= cols
            is_used = (await conn.execute(
                text("SELECT is_used FROM cards")
            )).scalar_one()
            assert is_used in (0, False)

        # second boot is a no-op
        assert await migrate_engine(engine) == []
    finally:
        await engine.dispose()
