"""
Shared fixtures: a migrated SQLite store per test, seed helpers and
in-memory stand-ins for the payment provider.
"""
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from keyshop.epay import CheckoutForm, NotifyEvent, OracleStatus, PaymentAdapter
from keyshop.helpers import now_ts
from keyshop.infra.sql import GatedAsyncSession, make_async_engine
from keyshop.model.db import Card, Order, Product, User, PENDING
from keyshop.model.inventory import Verdict
from keyshop.model.migrations import migrate_engine


# =============================================================================
# Store
# =============================================================================

class Store:
    """One migrated database; hands out independent gated sessions."""

    def __init__(self, engine, SessionAsync, gated):
        self.engine = engine
        self.SessionAsync = SessionAsync
        self.gated = gated
        self._open: List = []

    def session(self) -> GatedAsyncSession:
        s = self.SessionAsync()
        self._open.append(s)
        return GatedAsyncSession(session=s, gated=self.gated)

    async def close(self) -> None:
        for s in self._open:
            await s.close()
        await self.engine.dispose()


@pytest_asyncio.fixture
async def store(tmp_path) -> AsyncGenerator[Store, None]:
    url = f"sqlite:///{tmp_path / 'shop.db'}"
    engine, SessionAsync, gated = make_async_engine(url)
    await migrate_engine(engine)
    st = Store(engine, SessionAsync, gated)
    yield st
    await st.close()


@pytest.fixture
def db(store) -> GatedAsyncSession:
    return store.session()


# =============================================================================
# Seed helpers
# =============================================================================

async def seed_product(db: GatedAsyncSession, product_id: str = "p1",
                       price: str = "10.00",
                       purchase_limit: Optional[int] = None) -> None:
    async with db.session.begin():
        db.session.add(Product(
            id=product_id, name=f"Product {product_id}",
            price=Decimal(price), purchase_limit=purchase_limit,
            is_active=True, created_at=now_ts(),
        ))


async def seed_cards(db: GatedAsyncSession, product_id: str = "p1",
                     n: int = 1) -> List[int]:
    async with db.session.begin():
        cards = [
            Card(product_id=product_id, card_key=f"KEY-{product_id}-{i}",
                 is_used=False, created_at=now_ts())
            for i in range(n)
        ]
        db.session.add_all(cards)
        await db.session.flush()
        return [c.id for c in cards]


async def seed_user(db: GatedAsyncSession, user_id: str = "u1",
                    points: int = 0, blocked: bool = False) -> None:
    async with db.session.begin():
        db.session.add(User(user_id=user_id, username=user_id, points=points,
                            is_blocked=blocked, created_at=now_ts()))


async def seed_order(db: GatedAsyncSession, order_id: str,
                     product_id: str = "p1", amount: str = "10.00",
                     quantity: int = 1, status: str = PENDING,
                     created_at: Optional[float] = None,
                     **kw) -> None:
    async with db.session.begin():
        db.session.add(Order(
            order_id=order_id, product_id=product_id,
            product_name=f"Product {product_id}", amount=Decimal(amount),
            quantity=quantity, status=status,
            points_used=kw.pop("points_used", 0),
            current_payment_id=kw.pop("current_payment_id", order_id),
            created_at=created_at if created_at is not None else now_ts(),
            **kw,
        ))


async def reserve_card(db: GatedAsyncSession, card_id: int, order_id: str,
                       at: float) -> None:
    async with db.session.begin():
        await db.session.execute(
            update(Card).where(Card.id == card_id)
            .values(reserved_order_id=order_id, reserved_at=at)
        )


async def fetch_cards(db: GatedAsyncSession,
                      product_id: str = "p1") -> List[Card]:
    async with db.session.begin():
        return list((await db.session.execute(
            select(Card).where(Card.product_id == product_id)
            .order_by(Card.id)
            .execution_options(populate_existing=True)
        )).scalars().all())


async def fetch_order(db: GatedAsyncSession, order_id: str) -> Optional[Order]:
    async with db.session.begin():
        return (await db.session.execute(
            select(Order).where(Order.order_id == order_id)
            .execution_options(populate_existing=True)
        )).scalars().first()


async def fetch_points(db: GatedAsyncSession, user_id: str = "u1") -> int:
    async with db.session.begin():
        return (await db.session.execute(
            select(User.points).where(User.user_id == user_id)
        )).scalar_one()


# =============================================================================
# Provider stand-ins
# =============================================================================

class FakeArbiter:
    def __init__(self, verdicts: Optional[Dict[str, Verdict]] = None,
                 default: Verdict = Verdict.UNPAID):
        self.verdicts = verdicts or {}
        self.default = default
        self.asked: List[str] = []

    async def verdict(self, payment_id: str) -> Verdict:
        self.asked.append(payment_id)
        return self.verdicts.get(payment_id, self.default)


class FakeAdapter(PaymentAdapter):
    """Provider whose order query answers from a dict."""

    def __init__(self, statuses: Optional[Dict[str, OracleStatus]] = None):
        self.statuses = statuses or {}
        self.queried: List[str] = []

    def build_checkout(self, out_trade_no, name, amount,
                       return_url) -> CheckoutForm:
        return {
            "url": "https://pay.test/submit.php",
            "params": {
                "out_trade_no": out_trade_no,
                "name": name,
                "money": f"{Decimal(str(amount)):.2f}",
                "return_url": return_url,
            },
        }

    def verify_notify(self, params) -> NotifyEvent:
        return NotifyEvent(
            out_trade_no=params["out_trade_no"],
            trade_no=params.get("trade_no", ""),
            money=params.get("money", "0"),
            trade_status=params.get("trade_status", ""),
        )

    async def query_status(self, trade_id: str) -> OracleStatus:
        self.queried.append(trade_id)
        return self.statuses.get(
            trade_id, OracleStatus(reachable=True, success=False,
                                   error="order not found")
        )

    def mark_paid(self, trade_id: str, money: str, trade_no: str = "T1"):
        self.statuses[trade_id] = OracleStatus(
            reachable=True, success=True, status=1,
            raw={"code": 1, "status": 1, "money": money,
                 "trade_no": trade_no},
        )


@pytest.fixture
def arbiter() -> FakeArbiter:
    return FakeArbiter()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()
