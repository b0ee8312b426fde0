# keyshop/model/fulfillment.py
"""
Turns a confirmed payment into delivered cards, exactly once per order.

Webhook retries, the buyer's status polling and an admin's manual check may
all call fulfill() for the same order at nearly the same time. The order
row is locked for the whole transaction and its status re-read under that
lock, so the first caller delivers and every later one sees a non-pending
order and returns "already_processed" without touching anything.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from ..errors import AmountMismatch, OrderNotFound, OrderStateError
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory
from .db import Order, PENDING, PAID, DELIVERED, CANCELLED
from .inventory import FULFILLMENT_GRACE_SECONDS
from .queries import load_order, debit_points

logger = logging.getLogger(__name__)

# paid amounts within this of the ledger amount are rounding noise
AMOUNT_EPSILON = Decimal("0.01")

PROCESSED = "processed"
ALREADY_PROCESSED = "already_processed"


@dataclass
class FulfillResult:
    status: str
    order_status: str
    delivered: int = 0

    @property
    def already_processed(self) -> bool:
        return self.status == ALREADY_PROCESSED


def check_amount(order: Order, paid_amount) -> None:
    expected = Decimal(str(order.amount))
    paid = Decimal(str(paid_amount))
    if abs(paid - expected) >= AMOUNT_EPSILON:
        logger.error(
            "order %s: amount mismatch, ledger %s, paid %s",
            order.order_id, expected, paid,
        )
        raise AmountMismatch(order.order_id, expected, paid)


async def recharge_points(session, order: Order) -> None:
    # a cancelled order had its points refunded; being paid after all
    # means they are spent again
    if order.user_id and order.points_used:
        if not await debit_points(session, order.user_id, order.points_used):
            logger.warning(
                "order %s: paid after cancellation but user %s can no "
                "longer cover %d points",
                order.order_id, order.user_id, order.points_used,
            )


async def fulfill(
    db: GatedAsyncSession,
    order_id: str,
    paid_amount,
    trade_no: str,
    *,
    grace: float = FULFILLMENT_GRACE_SECONDS,
) -> FulfillResult:
    """
    Deliver a paid order. Raises OrderNotFound and AmountMismatch before
    any write; callers retry other failures, which roll back completely.
    """
    now = now_ts()
    async with timeit("fulfillment.fulfill"):
        async with db.gated():
            async with db.session.begin():
                s = db.session
                order = await load_order(s, order_id, lock=True)
                if order is None:
                    raise OrderNotFound(order_id)
                check_amount(order, paid_amount)

                if order.status not in (PENDING, CANCELLED):
                    return FulfillResult(ALREADY_PROCESSED, order.status)

                if order.status == CANCELLED:
                    await recharge_points(s, order)

                if order.is_payment_order:
                    order.status = PAID
                    order.paid_at = now
                    order.trade_no = trade_no
                    logger.info("payment order %s paid", order_id)
                    return FulfillResult(PROCESSED, PAID)

                quantity = order.quantity or 1
                cards = await inventory.lock_cards_for_order(
                    s, order.order_id, order.product_id, quantity,
                    grace=grace, now=now,
                )
                logger.info(
                    "order %s: cards claimed %d/%d",
                    order_id, len(cards), quantity,
                )

                order.paid_at = now
                order.trade_no = trade_no
                if len(cards) >= quantity:
                    await inventory.consume_cards(s, cards, now)
                    order.status = DELIVERED
                    order.delivered_at = now
                    order.card_key = inventory.join_keys(cards)
                    return FulfillResult(PROCESSED, DELIVERED, len(cards))

                # paid but out of stock: nothing consumed, an admin
                # redelivers after restock or refunds
                order.status = PAID
                logger.warning(
                    "order %s marked as paid (no stock, %d/%d)",
                    order_id, len(cards), quantity,
                )
                return FulfillResult(PROCESSED, PAID)


async def redeliver(
    db: GatedAsyncSession,
    order_id: str,
    *,
    grace: float = FULFILLMENT_GRACE_SECONDS,
) -> Optional[Order]:
    """
    Retry the card claim for an order stuck in `paid`, e.g. after a
    restock. Returns the delivered order, or None if stock is still short.
    """
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await load_order(s, order_id, lock=True)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status != PAID or order.is_payment_order:
                raise OrderStateError(
                    f"order {order_id} is {order.status}, not awaiting cards"
                )

            have = order.card_key.split("\n") if order.card_key else []
            needed = (order.quantity or 1) - len(have)
            cards = []
            if needed > 0:
                cards = await inventory.lock_cards_for_order(
                    s, order.order_id, order.product_id, needed,
                    grace=grace, now=now,
                )
                if len(cards) < needed:
                    logger.info(
                        "order %s: still short, %d/%d",
                        order_id, len(cards), needed,
                    )
                    return None
                await inventory.consume_cards(s, cards, now)

            order.card_key = "\n".join(have + [c.card_key for c in cards])
            order.status = DELIVERED
            order.delivered_at = now
            logger.info("order %s redelivered", order_id)
            return order
