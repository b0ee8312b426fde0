from __future__ import annotations
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Order, Product, User


async def load_order(
    session: AsyncSession, order_id: str, lock: bool = False
) -> Optional[Order]:
    stmt = (
        select(Order)
        .where(Order.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    if lock:
        # wait for, don't skip: concurrent deliveries of one order serialize
        stmt = stmt.with_for_update()
    return (await session.execute(stmt)).scalars().first()


async def load_product(
    session: AsyncSession, product_id: str
) -> Optional[Product]:
    return (await session.execute(
        select(Product)
        .where(Product.id == product_id)
        .execution_options(populate_existing=True)
    )).scalars().first()


async def load_user(session: AsyncSession, user_id: str) -> Optional[User]:
    return (await session.execute(
        select(User)
        .where(User.user_id == user_id)
        .execution_options(populate_existing=True)
    )).scalars().first()


async def debit_points(session: AsyncSession, user_id: str, points: int) -> bool:
    """
    Conditional debit. False means the balance no longer covers it
    (a concurrent spend won).
    """
    res = await session.execute(
        update(User)
        .where(User.user_id == user_id, User.points >= points)
        .values(points=User.points - points)
        .execution_options(synchronize_session=False)
    )
    return bool(res.rowcount)


async def credit_points(session: AsyncSession, user_id: str, points: int) -> None:
    await session.execute(
        update(User)
        .where(User.user_id == user_id)
        .values(points=User.points + points)
        .execution_options(synchronize_session=False)
    )
