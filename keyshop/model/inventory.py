# keyshop/model/inventory.py
"""
Reservation engine over the `cards` table.

A card is free (`reserved_at IS NULL`), reserved by an in-flight order
(`reserved_order_id`, `reserved_at`) or consumed (`is_used`). Every
mutation happens inside the caller's transaction with locking reads that
skip rows already locked by a concurrent transaction, so two buyers never
select the same free row and losers move on to the next candidate instead
of queueing.

Reservations have a TTL. Past it a reservation may be taken over, but only
after the arbiter has confirmed that the reserving order was not paid in
the meantime (slow payment redirect). The arbiter is asked before the
reservation transaction starts and outside the DB gate; inside the
transaction the reserving order is re-read under a row lock, and a verdict
only applies if that order is still pending on the same payment attempt.
Fulfillment re-claims with a much shorter grace window since it runs on a
confirmed payment.
"""

from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Sequence,
    Set, TypeVar,
)

from sqlalchemy import select, update, func, false, literal, or_
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CheckoutFailure, CheckoutAborted
from ..helpers import now_ts
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from .db import Card, Order, PENDING, PAID, CANCELLED

logger = logging.getLogger(__name__)

RESERVATION_TTL_SECONDS = 5 * 60
FULFILLMENT_GRACE_SECONDS = 60
STALE_CANDIDATES_PER_ATTEMPT = 5

# cards imported by old releases may carry is_used = NULL
_UNUSED = func.coalesce(Card.is_used, false()) == false()

T = TypeVar("T")


class Verdict(str, Enum):
    PAID = "paid"
    UNPAID = "unpaid"
    UNKNOWN = "unknown"


class ReservationArbiter(Protocol):
    """Decides whether an expired reservation may be taken over."""

    async def verdict(self, payment_id: str) -> Verdict: ...


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.0

    async def pause(self, attempt: int) -> None:
        if self.backoff_seconds > 0:
            await asyncio.sleep(self.backoff_seconds * attempt)


@dataclass
class ClaimedCard:
    id: int
    card_key: str


@dataclass
class ReserveResult:
    cards: List[ClaimedCard] = field(default_factory=list)
    error: Optional[CheckoutFailure] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def keys(self) -> List[str]:
        return [c.card_key for c in self.cards]


def join_keys(cards: Sequence[ClaimedCard]) -> str:
    return "\n".join(c.card_key for c in cards)


# ------------------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------------------

async def count_available(
    session: AsyncSession, product_id: str, cutoff: float
) -> int:
    """Unused cards that are free or whose reservation expired by cutoff."""
    n = (await session.execute(
        select(func.count(Card.id)).where(
            Card.product_id == product_id,
            _UNUSED,
            or_(Card.reserved_at.is_(None), Card.reserved_at <= cutoff),
        )
    )).scalar_one()
    return int(n)


async def available_stock(
    db: GatedAsyncSession,
    product_id: str,
    ttl: float = RESERVATION_TTL_SECONDS,
) -> int:
    async with db.gated():
        async with db.session.begin():
            return await count_available(
                db.session, product_id, now_ts() - ttl
            )


# ------------------------------------------------------------------------------
# Arbitration (no transaction or DB gate held while the provider answers)
# ------------------------------------------------------------------------------

async def stale_payment_ids(
    session: AsyncSession, product_id: str, cutoff: float, limit: int
) -> List[str]:
    """Latest payment attempts of pending orders holding expired cards."""
    rows = (await session.execute(
        select(Order.order_id, Order.current_payment_id)
        .join(Card, Card.reserved_order_id == Order.order_id)
        .where(
            Card.product_id == product_id,
            _UNUSED,
            Card.reserved_at <= cutoff,
            Order.status == PENDING,
        )
        .order_by(Card.reserved_at)
        .limit(limit)
    )).all()
    ids: List[str] = []
    for r in rows:
        payment_id = r.current_payment_id or r.order_id
        if payment_id not in ids:
            ids.append(payment_id)
    return ids


async def arbitrate(
    db: GatedAsyncSession,
    arbiter: ReservationArbiter,
    product_id: str,
    quantity: int,
    cutoff: float,
) -> Dict[str, Verdict]:
    """
    Verdicts keyed by payment id for the expired reservations a checkout of
    `quantity` cards may have to take over. Empty when free stock suffices.
    """
    async with db.gated():
        async with db.session.begin():
            s = db.session
            free = (await s.execute(
                select(func.count(Card.id)).where(
                    Card.product_id == product_id,
                    _UNUSED,
                    Card.reserved_at.is_(None),
                )
            )).scalar_one()
            needed = quantity - int(free)
            if needed <= 0:
                return {}
            payment_ids = await stale_payment_ids(
                s, product_id, cutoff, needed * STALE_CANDIDATES_PER_ATTEMPT
            )
    if not payment_ids:
        return {}
    async with timeit("inventory.arbitrate"):
        verdicts = await asyncio.gather(
            *(arbiter.verdict(p) for p in payment_ids)
        )
    return dict(zip(payment_ids, verdicts))


async def with_arbitration(
    db: GatedAsyncSession,
    arbiter: ReservationArbiter,
    product_id: str,
    quantity: int,
    attempt: Callable[[Mapping[str, Verdict]], Awaitable[T]],
    *,
    cutoff: float,
    policy: RetryPolicy = RetryPolicy(),
) -> T:
    """
    Run `attempt(verdicts)` with fresh verdicts, retrying on STOCK_LOCKED
    up to policy.max_attempts. Other CheckoutAborted failures propagate.
    """
    n = 0
    while True:
        n += 1
        verdicts = await arbitrate(db, arbiter, product_id, quantity, cutoff)
        try:
            return await attempt(verdicts)
        except CheckoutAborted as e:
            if (e.failure is not CheckoutFailure.STOCK_LOCKED
                    or n >= policy.max_attempts):
                raise
        await policy.pause(n)


# ------------------------------------------------------------------------------
# Reservation (runs inside the caller's transaction)
# ------------------------------------------------------------------------------

async def _claim_free(
    session: AsyncSession, product_id: str, order_id: str, now: float
) -> Optional[ClaimedCard]:
    row = (await session.execute(
        select(Card.id, Card.card_key)
        .where(
            Card.product_id == product_id,
            _UNUSED,
            Card.reserved_at.is_(None),
        )
        .order_by(Card.id)
        .limit(1)
        .with_for_update(skip_locked=True)
    )).first()
    if row is None:
        return None
    await session.execute(
        update(Card)
        .where(Card.id == row.id)
        .values(reserved_order_id=order_id, reserved_at=now)
        .execution_options(synchronize_session=False)
    )
    return ClaimedCard(id=row.id, card_key=row.card_key)


async def _stale_candidates(
    session: AsyncSession,
    product_id: str,
    cutoff: float,
    limit: int,
    skip: Set[int],
):
    stmt = (
        select(Card.id, Card.card_key, Card.reserved_order_id)
        .where(
            Card.product_id == product_id,
            _UNUSED,
            Card.reserved_at <= cutoff,
        )
        .order_by(Card.reserved_at)
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    if skip:
        stmt = stmt.where(Card.id.not_in(skip))
    return (await session.execute(stmt)).all()


# owner row locked by a concurrent transaction (fulfill, cancel)
_BUSY = object()


async def _lock_owner(session: AsyncSession, order_id: Optional[str]):
    """
    Status and latest payment id of the reserving order, read under a row
    lock. None when there is no such order, _BUSY when the row is locked.
    """
    if not order_id:
        return None
    row = (await session.execute(
        select(Order.status, Order.current_payment_id)
        .where(Order.order_id == order_id)
        .with_for_update(skip_locked=True)
    )).first()
    if row is not None:
        return row
    exists = (await session.execute(
        select(Order.order_id).where(Order.order_id == order_id)
    )).first()
    return _BUSY if exists is not None else None


async def _steal(
    session: AsyncSession, card_id: int, order_id: str, now: float
) -> None:
    await session.execute(
        update(Card)
        .where(Card.id == card_id)
        .values(reserved_order_id=order_id, reserved_at=now)
        .execution_options(synchronize_session=False)
    )


async def _finalize_lost_race(
    session: AsyncSession, order_id: str, now: float
) -> int:
    """
    The reserving order was paid after its reservation expired: all of its
    reserved cards are consumed for it and it moves to `paid`, so an admin
    can deliver the recorded keys. Nothing changes unless the order is
    still pending or cancelled.
    """
    rows = (await session.execute(
        select(Card.id, Card.card_key)
        .where(Card.reserved_order_id == order_id, _UNUSED)
        .order_by(Card.id)
        .with_for_update(skip_locked=True)
    )).all()
    if not rows:
        return 0
    cards = [ClaimedCard(id=r.id, card_key=r.card_key) for r in rows]
    res = await session.execute(
        update(Order)
        .where(
            Order.order_id == order_id,
            Order.status.in_([PENDING, CANCELLED]),
        )
        .values(
            status=PAID,
            paid_at=now,
            card_key=(
                func.coalesce(Order.card_key + literal("\n"), literal(""))
                + literal(join_keys(cards))
            ),
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        return 0
    await consume_cards(session, cards, now)
    logger.warning(
        "order %s was paid after its reservation expired; consumed %d "
        "cards for it", order_id, len(cards)
    )
    return len(cards)


async def reserve_in_tx(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    order_id: str,
    verdicts: Mapping[str, Verdict],
    *,
    ttl: float = RESERVATION_TTL_SECONDS,
    now: Optional[float] = None,
) -> List[ClaimedCard]:
    """
    Reserve `quantity` cards for `order_id`, all or nothing, taking over
    expired reservations according to `verdicts` (see arbitrate()). A
    payment id without a verdict counts as UNKNOWN. Raises
    CheckoutAborted; the caller's transaction must then be rolled back.
    """
    now = now_ts() if now is None else now
    cutoff = now - ttl
    claimed: List[ClaimedCard] = []
    skipped: Set[int] = set()

    for _ in range(quantity):
        # A. strictly free card
        card = await _claim_free(session, product_id, order_id, now)

        # B. expired reservations, arbitrated
        while card is None:
            candidates = await _stale_candidates(
                session, product_id, cutoff, STALE_CANDIDATES_PER_ATTEMPT,
                skipped,
            )
            if not candidates:
                break
            for cand in candidates:
                skipped.add(cand.id)
                owner = await _lock_owner(session, cand.reserved_order_id)
                if owner is _BUSY:
                    continue
                if owner is None or owner.status != PENDING:
                    # orphaned: no live order behind it
                    await _steal(session, cand.id, order_id, now)
                    card = ClaimedCard(id=cand.id, card_key=cand.card_key)
                    break

                payment_id = owner.current_payment_id or cand.reserved_order_id
                verdict = verdicts.get(payment_id, Verdict.UNKNOWN)
                if verdict is Verdict.PAID:
                    await _finalize_lost_race(
                        session, cand.reserved_order_id, now
                    )
                    # its other cards in this batch are consumed now
                    break
                if verdict is Verdict.UNKNOWN:
                    # can't tell, leave it alone
                    continue

                await _steal(session, cand.id, order_id, now)
                logger.info(
                    "card %s: took over expired reservation of %s for %s",
                    cand.id, cand.reserved_order_id, order_id,
                )
                card = ClaimedCard(id=cand.id, card_key=cand.card_key)
                break

        if card is None:
            # nothing left to try; rows locked by others still count
            if await count_available(session, product_id, cutoff) == 0:
                raise CheckoutAborted(CheckoutFailure.OUT_OF_STOCK)
            raise CheckoutAborted(CheckoutFailure.STOCK_LOCKED)
        claimed.append(card)

    return claimed


async def reserve(
    db: GatedAsyncSession,
    product_id: str,
    quantity: int,
    order_id: str,
    arbiter: ReservationArbiter,
    *,
    ttl: float = RESERVATION_TTL_SECONDS,
    policy: RetryPolicy = RetryPolicy(),
    now: Optional[float] = None,
) -> ReserveResult:
    """
    Standalone reservation in its own transaction. Nothing is kept on
    failure.
    """
    now = now_ts() if now is None else now

    async def attempt(verdicts: Mapping[str, Verdict]) -> List[ClaimedCard]:
        async with db.gated():
            async with db.session.begin():
                return await reserve_in_tx(
                    db.session, product_id, quantity, order_id, verdicts,
                    ttl=ttl, now=now,
                )

    try:
        async with timeit("inventory.reserve"):
            cards = await with_arbitration(
                db, arbiter, product_id, quantity, attempt,
                cutoff=now - ttl, policy=policy,
            )
    except CheckoutAborted as e:
        return ReserveResult(error=e.failure)
    return ReserveResult(cards=cards)


# ------------------------------------------------------------------------------
# Fulfillment-time claim (inside the caller's transaction)
# ------------------------------------------------------------------------------

async def lock_cards_for_order(
    session: AsyncSession,
    order_id: str,
    product_id: str,
    quantity: int,
    *,
    grace: float = FULFILLMENT_GRACE_SECONDS,
    now: Optional[float] = None,
) -> List[ClaimedCard]:
    """
    Lock up to `quantity` cards for a paid order: its own reserved cards
    first, then free cards or cards whose reservation is older than
    `grace`. Nothing is consumed yet, see consume_cards().
    """
    now = now_ts() if now is None else now
    own = (await session.execute(
        select(Card.id, Card.card_key)
        .where(Card.reserved_order_id == order_id, _UNUSED)
        .order_by(Card.id)
        .limit(quantity)
        .with_for_update(skip_locked=True)
    )).all()
    cards = [ClaimedCard(id=r.id, card_key=r.card_key) for r in own]

    needed = quantity - len(cards)
    if needed > 0:
        logger.info(
            "order %s: found %d reserved cards, need %d more",
            order_id, len(cards), needed,
        )
        stmt = (
            select(Card.id, Card.card_key)
            .where(
                Card.product_id == product_id,
                _UNUSED,
                or_(
                    Card.reserved_at.is_(None),
                    Card.reserved_at <= now - grace,
                ),
            )
            .order_by(Card.id)
            .limit(needed)
            .with_for_update(skip_locked=True)
        )
        if cards:
            stmt = stmt.where(Card.id.not_in([c.id for c in cards]))
        extra = (await session.execute(stmt)).all()
        cards.extend(ClaimedCard(id=r.id, card_key=r.card_key) for r in extra)
    return cards


async def consume_cards(
    session: AsyncSession, cards: Sequence[ClaimedCard], now: float
) -> None:
    if not cards:
        return
    await session.execute(
        update(Card)
        .where(Card.id.in_([c.id for c in cards]))
        .values(
            is_used=True, used_at=now,
            reserved_order_id=None, reserved_at=None,
        )
        .execution_options(synchronize_session=False)
    )


# ------------------------------------------------------------------------------
# Release
# ------------------------------------------------------------------------------

async def release_reservations(session: AsyncSession, order_id: str) -> int:
    """Release the order's reservations; consumed cards stay consumed."""
    res = await session.execute(
        update(Card)
        .where(Card.reserved_order_id == order_id, _UNUSED)
        .values(reserved_order_id=None, reserved_at=None)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount or 0


async def release_orphaned_reservations(
    db: GatedAsyncSession, ttl: float = RESERVATION_TTL_SECONDS
) -> int:
    """
    Release expired reservations whose order is gone or no longer pending.
    Reservations of live pending orders are left to the arbitrated
    takeover in reserve_in_tx().
    """
    live = select(Order.order_id).where(Order.status == PENDING)
    async with db.gated():
        async with db.session.begin():
            res = await db.session.execute(
                update(Card)
                .where(
                    Card.reserved_order_id.is_not(None),
                    _UNUSED,
                    Card.reserved_at <= now_ts() - ttl,
                    Card.reserved_order_id.not_in(live),
                )
                .values(reserved_order_id=None, reserved_at=None)
                .execution_options(synchronize_session=False)
            )
    n = res.rowcount or 0
    if n:
        logger.info("released %d orphaned card reservations", n)
    return n
