# keyshop/model/ledger.py
"""
Order ledger: checkout, the order status machine and its compensations.

    pending --payment confirmed, stock-------> delivered
    pending --payment confirmed, no stock----> paid
    pending --points cover the price---------> delivered (at checkout)
    pending --abandoned (expiry sweep)-------> cancelled
    pending --owner or admin cancels---------> cancelled
    paid    --admin delivers-----------------> delivered
    paid, delivered --refund-----------------> refunded

Points are debited at checkout and credited back exactly once: on cancel,
on refund, or on delete of an order that never completed.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional

from sqlalchemy import select, delete, func, or_

from ..epay import CheckoutForm, PaymentAdapter, paid_amount_of
from ..errors import (
    CheckoutAborted,
    CheckoutFailure,
    NotOrderOwner,
    OrderNotFound,
    OrderStateError,
    RefundRequestNotFound,
)
from ..helpers import (
    ceil_units, new_order_id, new_payment_id, now_ts, to_iso, to_money
)
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory
from .db import (
    Order,
    Product,
    RefundRequest,
    PAYMENT_PRODUCT_ID,
    PAYMENT_PRODUCT_NAME,
    PENDING,
    PAID,
    DELIVERED,
    CANCELLED,
    REFUNDED,
)
from .fulfillment import fulfill, recharge_points
from .inventory import (
    FULFILLMENT_GRACE_SECONDS,
    RESERVATION_TTL_SECONDS,
    ReservationArbiter,
    RetryPolicy,
    Verdict,
)
from .queries import credit_points, debit_points, load_order, load_product, \
    load_user

logger = logging.getLogger(__name__)

ORDER_EXPIRY_SECONDS = 15 * 60
SWEEP_INTERVAL_SECONDS = 60
SWEEP_JOB = "cancel_expired_orders"
POINTS_REDEMPTION_TRADE_NO = "POINTS_REDEMPTION"

# statuses whose points were never consumed for good
_POINTS_REFUNDABLE_ON_DELETE = (PENDING, PAID)
# refund requests still waiting for an outcome
_OPEN_REFUND = ("pending", "approved")


@dataclass(frozen=True)
class LedgerConfig:
    app_url: str = "http://localhost:8000"
    reservation_ttl: float = RESERVATION_TTL_SECONDS
    fulfillment_grace: float = FULFILLMENT_GRACE_SECONDS
    order_expiry: float = ORDER_EXPIRY_SECONDS
    sweep_interval: float = SWEEP_INTERVAL_SECONDS
    retry: RetryPolicy = RetryPolicy()

    def return_url(self, order_id: str) -> str:
        return f"{self.app_url.rstrip('/')}/callback/{order_id}"


DEFAULT_CONFIG = LedgerConfig()


@dataclass
class Buyer:
    user_id: Optional[str] = None
    username: Optional[str] = None
    email: Optional[str] = None


@dataclass
class CheckoutResult:
    success: bool
    order_id: Optional[str] = None
    error: Optional[CheckoutFailure] = None
    is_zero_price: bool = False
    amount: Optional[Decimal] = None
    points_used: int = 0
    form: Optional[CheckoutForm] = None

    @classmethod
    def failed(cls, failure: CheckoutFailure) -> "CheckoutResult":
        return cls(success=False, error=failure)


def order_view(order: Order) -> Dict[str, Any]:
    return {
        "order_id": order.order_id,
        "status": order.status,
        "product_id": order.product_id,
        "product_name": order.product_name,
        "amount": f"{to_money(order.amount):.2f}",
        "quantity": order.quantity,
        "points_used": order.points_used or 0,
        "email": order.email or "",
        "trade_no": order.trade_no or "",
        "card_key": order.card_key if order.status == DELIVERED else None,
        "created_at": to_iso(order.created_at),
        "paid_at": to_iso(order.paid_at),
        "delivered_at": to_iso(order.delivered_at),
    }


# ------------------------------------------------------------------------------
# Checkout
# ------------------------------------------------------------------------------

async def _check_purchase_limit(
    session, product: Product, quantity: int, buyer: Buyer
) -> None:
    limit = product.purchase_limit
    if not limit or limit <= 0:
        return
    who = []
    if buyer.user_id:
        who.append(Order.user_id == buyer.user_id)
    if buyer.email:
        # guests are recognized by email
        who.append(Order.email == buyer.email)
    if not who:
        return
    bought = (await session.execute(
        select(func.coalesce(func.sum(Order.quantity), 0)).where(
            Order.product_id == product.id,
            or_(*who),
            Order.status.in_([PAID, DELIVERED]),
        )
    )).scalar_one()
    if int(bought) + quantity > limit:
        raise CheckoutAborted(CheckoutFailure.LIMIT_EXCEEDED)


async def create_order(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    arbiter: ReservationArbiter,
    product_id: str,
    quantity: int = 1,
    buyer: Buyer = Buyer(),
    use_points: bool = False,
    *,
    throttle=None,
    cfg: LedgerConfig = DEFAULT_CONFIG,
) -> CheckoutResult:
    """
    Reserve cards and record the order in one transaction. If the buyer's
    points cover the whole price the order is delivered right away,
    otherwise it is pending and the signed payment form is returned.
    """
    if quantity < 1:
        return CheckoutResult.failed(CheckoutFailure.INVALID_QUANTITY)

    if throttle is not None:
        try:
            await sweep(db, throttle, cfg=cfg)
        except Exception:
            # abandoned orders get another chance on the next request
            logger.exception("expiry sweep failed")

    # minted before any side effect so logs can correlate on it
    order_id = new_order_id()
    now = now_ts()

    async def attempt(verdicts: Mapping[str, Verdict]) -> Order:
        async with db.gated():
            async with db.session.begin():
                s = db.session
                product = await load_product(s, product_id)
                if product is None or not product.is_active:
                    raise CheckoutAborted(CheckoutFailure.PRODUCT_NOT_FOUND)
                user = None
                if buyer.user_id:
                    user = await load_user(s, buyer.user_id)
                if user is not None and user.is_blocked:
                    raise CheckoutAborted(CheckoutFailure.USER_BLOCKED)

                # 1 point = 1 currency unit
                total = to_money(Decimal(product.price) * quantity)
                points_to_use = 0
                if use_points and user is not None and user.points > 0:
                    points_to_use = min(user.points, ceil_units(total))
                amount = max(Decimal("0.00"), to_money(total - points_to_use))

                available = await inventory.count_available(
                    s, product_id, now - cfg.reservation_ttl
                )
                if available < quantity:
                    raise CheckoutAborted(CheckoutFailure.OUT_OF_STOCK)
                await _check_purchase_limit(s, product, quantity, buyer)

                cards = await inventory.reserve_in_tx(
                    s, product_id, quantity, order_id, verdicts,
                    ttl=cfg.reservation_ttl, now=now,
                )

                if points_to_use > 0:
                    ok = await debit_points(s, buyer.user_id, points_to_use)
                    if not ok:
                        raise CheckoutAborted(
                            CheckoutFailure.INSUFFICIENT_POINTS
                        )

                order = Order(
                    order_id=order_id,
                    product_id=product.id,
                    product_name=product.name,
                    amount=amount,
                    quantity=quantity,
                    email=buyer.email,
                    user_id=buyer.user_id,
                    username=buyer.username,
                    points_used=points_to_use,
                    created_at=now,
                )
                if amount <= 0:
                    await inventory.consume_cards(s, cards, now)
                    order.status = DELIVERED
                    order.card_key = inventory.join_keys(cards)
                    order.paid_at = now
                    order.delivered_at = now
                    order.trade_no = POINTS_REDEMPTION_TRADE_NO
                else:
                    order.status = PENDING
                    order.current_payment_id = order_id
                s.add(order)
        return order

    try:
        async with timeit("ledger.create_order"):
            order = await inventory.with_arbitration(
                db, arbiter, product_id, quantity, attempt,
                cutoff=now - cfg.reservation_ttl, policy=cfg.retry,
            )
    except CheckoutAborted as e:
        logger.info(
            "checkout %s for %s x%d aborted: %s",
            order_id, product_id, quantity, e.failure.value,
        )
        return CheckoutResult.failed(e.failure)

    is_zero_price = order.status == DELIVERED
    result = CheckoutResult(
        success=True,
        order_id=order_id,
        is_zero_price=is_zero_price,
        amount=order.amount,
        points_used=order.points_used,
    )
    if is_zero_price:
        logger.info("order %s redeemed with %d points", order_id,
                    order.points_used)
    else:
        result.form = adapter.build_checkout(
            order_id, order.product_name, order.amount,
            cfg.return_url(order_id),
        )
    return result


async def create_payment_order(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    amount,
    buyer: Buyer = Buyer(),
    payee: Optional[str] = None,
    *,
    cfg: LedgerConfig = DEFAULT_CONFIG,
) -> CheckoutResult:
    """Payment-link order: an arbitrary amount, no cards involved."""
    try:
        amount = to_money(amount)
    except ArithmeticError:
        return CheckoutResult.failed(CheckoutFailure.INVALID_AMOUNT)
    if amount <= 0:
        return CheckoutResult.failed(CheckoutFailure.INVALID_AMOUNT)

    order_id = new_order_id()
    async with db.gated():
        async with db.session.begin():
            db.session.add(Order(
                order_id=order_id,
                product_id=PAYMENT_PRODUCT_ID,
                product_name=PAYMENT_PRODUCT_NAME,
                amount=amount,
                quantity=1,
                email=buyer.email,
                user_id=buyer.user_id,
                username=buyer.username,
                payee=payee,
                status=PENDING,
                points_used=0,
                current_payment_id=order_id,
                created_at=now_ts(),
            ))
    return CheckoutResult(
        success=True,
        order_id=order_id,
        amount=amount,
        form=adapter.build_checkout(
            order_id, PAYMENT_PRODUCT_NAME, amount, cfg.return_url(order_id)
        ),
    )


async def retry_payment(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    order_id: str,
    user_id: Optional[str],
    *,
    cfg: LedgerConfig = DEFAULT_CONFIG,
) -> CheckoutResult:
    """
    New payment attempt for a pending order. The provider rejects a reused
    out_trade_no, so every attempt gets its own id and the order remembers
    the latest one.
    """
    payment_id = new_payment_id(order_id)
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id, lock=True)
            if order is None:
                raise OrderNotFound(order_id)
            if not user_id or order.user_id != user_id:
                raise NotOrderOwner(order_id)
            if order.status != PENDING:
                raise OrderStateError(f"order {order_id} is {order.status}")
            order.current_payment_id = payment_id
            name, amount = order.product_name, order.amount

    return CheckoutResult(
        success=True,
        order_id=order_id,
        amount=to_money(amount),
        form=adapter.build_checkout(
            payment_id, name, amount, cfg.return_url(order_id)
        ),
    )


# ------------------------------------------------------------------------------
# Status polling
# ------------------------------------------------------------------------------

async def check_order_status(
    db: GatedAsyncSession,
    adapter: PaymentAdapter,
    order_id: str,
    user_id: Optional[str] = None,
    *,
    cfg: LedgerConfig = DEFAULT_CONFIG,
) -> Dict[str, Any]:
    """
    Buyer-side poll. Asks the provider about the latest payment attempt and
    fulfills on a confirmed payment. An unreachable provider leaves the
    order pending.
    """
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    if order.user_id and order.user_id != user_id:
        raise NotOrderOwner(order_id)
    if order.status not in (PENDING, CANCELLED):
        return order_view(order)

    status = await adapter.query_status(
        order.current_payment_id or order.order_id
    )
    if not status.paid:
        view = order_view(order)
        view["payment"] = "unknown" if not status.reachable else "unpaid"
        return view

    trade_no = (
        status.raw.get("trade_no")
        or status.raw.get("transaction_id")
        or f"MANUAL_CHECK_{int(now_ts() * 1000)}"
    )
    await fulfill(
        db, order_id, paid_amount_of(status, order.amount), str(trade_no),
        grace=cfg.fulfillment_grace,
    )
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
    return order_view(order)


# ------------------------------------------------------------------------------
# Cancellation and expiry
# ------------------------------------------------------------------------------

async def _refund_points(session, order: Order) -> None:
    if order.user_id and order.points_used and order.points_used > 0:
        await credit_points(session, order.user_id, order.points_used)


async def _cancel_locked(session, order: Order) -> int:
    await _refund_points(session, order)
    order.status = CANCELLED
    return await inventory.release_reservations(session, order.order_id)


async def cancel_order(
    db: GatedAsyncSession,
    order_id: str,
    *,
    user_id: Optional[str] = None,
    admin: bool = False,
) -> Order:
    """Owner or admin cancel of a pending order."""
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id, lock=True)
            if order is None:
                raise OrderNotFound(order_id)
            if not admin and (not user_id or order.user_id != user_id):
                raise NotOrderOwner(order_id)
            if order.status != PENDING:
                raise OrderStateError(
                    f"order {order_id} is {order.status}, not pending"
                )
            released = await _cancel_locked(db.session, order)
    logger.info("order %s cancelled, %d cards released", order_id, released)
    return order


async def cancel_expired(
    db: GatedAsyncSession,
    *,
    product_id: Optional[str] = None,
    window: float = ORDER_EXPIRY_SECONDS,
    now: Optional[float] = None,
) -> List[str]:
    """
    Cancel pending orders older than `window`: refund points, release their
    unused reservations. Rows locked by a concurrent fulfillment are left
    for the next sweep.
    """
    now = now_ts() if now is None else now
    stmt = (
        select(Order)
        .where(Order.status == PENDING, Order.created_at < now - window)
        .with_for_update(skip_locked=True)
        .execution_options(populate_existing=True)
    )
    if product_id:
        stmt = stmt.where(Order.product_id == product_id)

    async with timeit("ledger.cancel_expired"):
        async with db.gated():
            async with db.session.begin():
                orders = (await db.session.execute(stmt)).scalars().all()
                for order in orders:
                    await _cancel_locked(db.session, order)
    ids = [o.order_id for o in orders]
    if ids:
        logger.info("cancelled %d expired orders", len(ids))
    return ids


async def sweep(
    db: GatedAsyncSession,
    throttle,
    *,
    cfg: LedgerConfig = DEFAULT_CONFIG,
    force: bool = False,
) -> Optional[Dict[str, Any]]:
    """
    Expiry sweep, at most once per `cfg.sweep_interval` across all
    workers. Returns None when another run is too recent.
    """
    if not force and not await throttle.acquire(SWEEP_JOB,
                                                cfg.sweep_interval):
        return None
    cancelled = await cancel_expired(db, window=cfg.order_expiry)
    released = await inventory.release_orphaned_reservations(
        db, ttl=cfg.reservation_ttl
    )
    return {"cancelled": cancelled, "released": released}


# ------------------------------------------------------------------------------
# Admin transitions
# ------------------------------------------------------------------------------

async def mark_paid(db: GatedAsyncSession, order_id: str) -> Order:
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id, lock=True)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status not in (PENDING, CANCELLED):
                raise OrderStateError(f"order {order_id} is {order.status}")
            if order.status == CANCELLED:
                await recharge_points(db.session, order)
            order.status = PAID
            order.paid_at = now_ts()
    return order


async def mark_delivered(db: GatedAsyncSession, order_id: str) -> Order:
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id, lock=True)
            if order is None:
                raise OrderNotFound(order_id)
            if not order.card_key:
                raise OrderStateError(
                    "Missing card key; cannot mark delivered"
                )
            if order.status != PAID:
                raise OrderStateError(f"order {order_id} is {order.status}")
            have = len(order.card_key.split("\n"))
            if have < (order.quantity or 1):
                raise OrderStateError(
                    f"order {order_id} holds {have}/{order.quantity} card "
                    "keys; redeliver it instead"
                )
            order.status = DELIVERED
            order.delivered_at = now_ts()
    return order


async def _refund_locked(session, order: Order) -> None:
    await _refund_points(session, order)
    order.status = REFUNDED
    now = now_ts()
    reqs = (await session.execute(
        select(RefundRequest).where(
            RefundRequest.order_id == order.order_id,
            RefundRequest.status.in_(_OPEN_REFUND),
        )
    )).scalars().all()
    for req in reqs:
        req.status = "processed"
        req.processed_at = now
        req.updated_at = now


async def mark_refunded(db: GatedAsyncSession, order_id: str) -> Order:
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id, lock=True)
            if order is None:
                raise OrderNotFound(order_id)
            if order.status not in (PAID, DELIVERED):
                raise OrderStateError(f"order {order_id} is {order.status}")
            await _refund_locked(db.session, order)
    logger.info("order %s refunded", order_id)
    return order


async def verify_refund_status(
    db: GatedAsyncSession, adapter: PaymentAdapter, order_id: str
) -> Dict[str, Any]:
    """Ask the provider; status 0 on a paid order means it was refunded."""
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
    if order is None:
        raise OrderNotFound(order_id)

    res = await adapter.query_status(order.current_payment_id or order_id)
    if not res.reachable or not res.success:
        return {"success": False, "error": res.error or "Query failed"}
    if res.refunded:
        if order.status in (PAID, DELIVERED):
            await mark_refunded(db, order_id)
        return {"success": True, "status": 0, "msg": "Refunded (Verified)"}
    if res.paid:
        return {"success": True, "status": 1, "msg": "Paid (Not Refunded)"}
    return {"success": True, "status": res.status,
            "msg": f"Status: {res.status}"}


async def _delete_locked(session, order_id: str) -> bool:
    order = await load_order(session, order_id, lock=True)
    if order is None:
        return False
    if order.status in _POINTS_REFUNDABLE_ON_DELETE:
        await _refund_points(session, order)
    await inventory.release_reservations(session, order_id)
    await session.execute(
        delete(RefundRequest).where(RefundRequest.order_id == order_id)
    )
    await session.delete(order)
    return True


async def delete_orders(
    db: GatedAsyncSession, order_ids: Iterable[str]
) -> int:
    """
    Delete orders with their compensations (points, reservations, refund
    requests) in a single transaction. Unknown ids are skipped.
    """
    ids = [str(i).strip() for i in order_ids if str(i).strip()]
    if not ids:
        return 0
    deleted = 0
    async with db.gated():
        async with db.session.begin():
            for order_id in ids:
                if await _delete_locked(db.session, order_id):
                    deleted += 1
    logger.info("deleted %d orders", deleted)
    return deleted


async def delete_order(db: GatedAsyncSession, order_id: str) -> bool:
    return await delete_orders(db, [order_id]) == 1


# ------------------------------------------------------------------------------
# Refund requests
# ------------------------------------------------------------------------------

async def request_refund(
    db: GatedAsyncSession,
    order_id: str,
    user_id: Optional[str],
    username: Optional[str] = None,
    reason: Optional[str] = None,
) -> RefundRequest:
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            s = db.session
            order = await load_order(s, order_id)
            if order is None:
                raise OrderNotFound(order_id)
            if not user_id or order.user_id != user_id:
                raise NotOrderOwner(order_id)
            if order.status not in (PAID, DELIVERED):
                raise OrderStateError("Order is not refundable")

            existing = (await s.execute(
                select(RefundRequest)
                .where(
                    RefundRequest.order_id == order_id,
                    RefundRequest.user_id == user_id,
                )
                .order_by(RefundRequest.created_at.desc())
                .limit(1)
            )).scalars().first()
            if existing is not None and existing.status in _OPEN_REFUND:
                return existing

            req = RefundRequest(
                order_id=order_id,
                user_id=user_id,
                username=username,
                reason=(reason or "").strip() or None,
                status="pending",
                created_at=now,
                updated_at=now,
            )
            s.add(req)
    return req


async def _load_request(session, request_id: int) -> RefundRequest:
    req = (await session.execute(
        select(RefundRequest)
        .where(RefundRequest.id == request_id)
        .with_for_update()
    )).scalars().first()
    if req is None:
        raise RefundRequestNotFound(request_id)
    return req


async def approve_refund(
    db: GatedAsyncSession,
    request_id: int,
    admin_username: Optional[str] = None,
    note: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Orders that never reached the provider (points redemption, zero amount)
    are refunded on the spot; the rest wait until verify_refund_status()
    sees the provider's refund.
    """
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            s = db.session
            req = await _load_request(s, request_id)
            if req.status != "pending":
                raise OrderStateError(
                    f"refund request {request_id} is {req.status}"
                )
            order = await load_order(s, req.order_id, lock=True)
            if order is None:
                raise OrderNotFound(req.order_id)
            req.status = "approved"
            req.admin_username = admin_username
            req.admin_note = note or None
            req.updated_at = now

            no_provider = (
                not order.trade_no
                or order.trade_no == POINTS_REDEMPTION_TRADE_NO
                or to_money(order.amount) <= 0
            )
            processed = False
            if no_provider and order.status in (PAID, DELIVERED):
                await _refund_locked(s, order)
                processed = True
    return {"ok": True, "processed": processed}


async def reject_refund(
    db: GatedAsyncSession,
    request_id: int,
    admin_username: Optional[str] = None,
    note: Optional[str] = None,
) -> RefundRequest:
    async with db.gated():
        async with db.session.begin():
            req = await _load_request(db.session, request_id)
            req.status = "rejected"
            req.admin_username = admin_username
            req.admin_note = (note or "").strip()[:200] or None
            req.updated_at = now_ts()
    return req
