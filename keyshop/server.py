from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
import redis.asyncio as redis

from fastapi import APIRouter, Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import (
    HTMLResponse, ORJSONResponse, PlainTextResponse, RedirectResponse
)
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .config import Settings
from .epay import EPay, OracleArbiter, PaymentAdapter
from .errors import (
    AmountMismatch,
    NotOrderOwner,
    OrderNotFound,
    OrderStateError,
    RefundRequestNotFound,
)
from .helpers import ct_equal, is_valid_email, order_id_of
from .infra import timings
from .infra.sql import GatedAsyncSession, make_async_engine
from .infra.timings import timeit
from .model import ledger
from .model.db import PENDING
from .model.fulfillment import fulfill, redeliver
from .model.migrations import migrate_engine
from .model.queries import load_order
from .model.throttle import new_store

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

CRON_TOKEN_HEADER = "x-cron-cleanup-token"

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request):
    st = request.app.state
    async with st.SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=st.gated)


async def throttle_store(request: Request):
    st = request.app.state
    if st.settings.throttle_backend == "redis":
        yield new_store(r=st.redis, backend="redis")
    else:
        async with st.SessionAsync() as session:
            yield new_store(db=session, gated=st.gated, backend="pg")


def get_adapter(request: Request) -> PaymentAdapter:
    return request.app.state.adapter


def get_cfg(request: Request) -> ledger.LedgerConfig:
    return request.app.state.cfg


def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="admin login required")
    return request.session["admin_user"]


def session_user(request: Request) -> Optional[str]:
    return request.session.get("user_id")


def buyer_of(request: Request, email: Optional[str]) -> ledger.Buyer:
    return ledger.Buyer(
        user_id=request.session.get("user_id"),
        username=request.session.get("username"),
        email=email or None,
    )


def _checkout_response(res: ledger.CheckoutResult):
    if not res.success:
        return ORJSONResponse(
            {"success": False, "error": res.error.value}, status_code=400
        )
    return {
        "success": True,
        "order_id": res.order_id,
        "amount": f"{res.amount:.2f}",
        "points_used": res.points_used,
        "is_zero_price": res.is_zero_price,
        "form": res.form,
    }


# ----------------------------
# Storefront
# ----------------------------
@router.post("/api/checkout")
async def create_checkout(
    payload: dict,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    throttle=Depends(throttle_store),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    product_id = str(payload.get("product_id") or "").strip()
    if not product_id:
        raise HTTPException(400, detail="product_id is required")
    raw_quantity = payload.get("quantity")
    try:
        quantity = 1 if raw_quantity is None else int(raw_quantity)
    except (TypeError, ValueError):
        raise HTTPException(400, detail="quantity must be an integer")

    email = (payload.get("email") or "").strip()
    if email and not is_valid_email(email):
        raise HTTPException(400, detail="email must be a valid email address")
    buyer = buyer_of(request, email)
    if not buyer.user_id and not email:
        raise HTTPException(400, detail="email is required for guest orders")

    res = await ledger.create_order(
        db, adapter, request.app.state.arbiter, product_id, quantity,
        buyer, bool(payload.get("use_points")),
        throttle=throttle, cfg=cfg,
    )
    return _checkout_response(res)


@router.post("/api/pay")
async def create_payment(
    payload: dict,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    email = (payload.get("email") or "").strip()
    if email and not is_valid_email(email):
        raise HTTPException(400, detail="email must be a valid email address")
    res = await ledger.create_payment_order(
        db, adapter, payload.get("amount"), buyer_of(request, email),
        payee=(payload.get("payee") or None), cfg=cfg,
    )
    return _checkout_response(res)


@router.post("/paying", response_class=HTMLResponse)
async def paying_page(
    request: Request,
    order_id: str = Form(...),
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
    if order is None:
        raise HTTPException(404, detail="order not found")
    if order.status != PENDING:
        raise HTTPException(409, detail=f"order is {order.status}")
    form = adapter.build_checkout(
        order.current_payment_id or order.order_id,
        order.product_name, order.amount, cfg.return_url(order.order_id),
    )
    return templates.TemplateResponse(
        request, "paying.html", {"order_id": order.order_id, "form": form}
    )


@router.get("/api/orders/{order_id}")
async def get_order(
    order_id: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    async with timeit("api.get_order"):
        return await ledger.check_order_status(
            db, adapter, order_id, session_user(request), cfg=cfg
        )


@router.get("/callback/{order_id}")
async def payment_return(
    order_id: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    # the buyer lands here before the notify may have arrived
    return await ledger.check_order_status(
        db, adapter, order_id, session_user(request), cfg=cfg
    )


@router.post("/api/orders/{order_id}/retry")
async def retry_order_payment(
    order_id: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    res = await ledger.retry_payment(
        db, adapter, order_id, session_user(request), cfg=cfg
    )
    return _checkout_response(res)


@router.post("/api/orders/{order_id}/cancel")
async def cancel_own_order(
    order_id: str,
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
):
    order = await ledger.cancel_order(
        db, order_id, user_id=session_user(request)
    )
    return {"ok": True, "order_status": order.status}


@router.post("/api/orders/{order_id}/refund")
async def request_order_refund(
    order_id: str,
    request: Request,
    payload: Optional[dict] = None,
    db: GatedAsyncSession = Depends(get_db),
):
    payload = payload or {}
    req = await ledger.request_refund(
        db, order_id, session_user(request),
        username=request.session.get("username"),
        reason=payload.get("reason"),
    )
    return {"ok": True, "request_id": req.id, "status": req.status}


# ----------------------------
# Provider notify (async webhook)
# ----------------------------
@router.api_route("/api/notify", methods=["GET", "POST"])
async def payment_notify(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    if request.method == "POST":
        params = {k: str(v) for k, v in (await request.form()).items()}
    else:
        params = dict(request.query_params)

    event = adapter.verify_notify(params)
    if not event.succeeded:
        # acknowledged, nothing to do until a successful trade
        return PlainTextResponse("success")

    try:
        async with timeit("api.notify"):
            await fulfill(
                db, order_id_of(event.out_trade_no), event.money,
                event.trade_no, grace=cfg.fulfillment_grace,
            )
    except OrderNotFound:
        return PlainTextResponse("fail", status_code=404)
    except AmountMismatch:
        return PlainTextResponse("fail", status_code=400)
    return PlainTextResponse("success")


# ----------------------------
# Maintenance
# ----------------------------
@router.post("/api/internal/cron/cleanup")
async def cron_cleanup(
    request: Request,
    db: GatedAsyncSession = Depends(get_db),
    throttle=Depends(throttle_store),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    expected = request.app.state.settings.cron_cleanup_token.strip()
    if not expected:
        return ORJSONResponse(
            {"success": False, "error": "cleanup_token_not_configured"},
            status_code=500,
        )
    received = (request.headers.get(CRON_TOKEN_HEADER) or "").strip()
    if not received or not ct_equal(received, expected):
        return ORJSONResponse(
            {"success": False, "error": "unauthorized"}, status_code=401
        )

    t0 = time.perf_counter()
    res = await ledger.sweep(db, throttle, cfg=cfg, force=True)
    return {
        "success": True,
        "durationMs": int((time.perf_counter() - t0) * 1000),
        "cancelledOrderCount": len(res["cancelled"]),
        "releasedReservations": res["released"],
    }


# ----------------------------
# Admin session
# ----------------------------
@router.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin"),
):
    settings: Settings = request.app.state.settings
    ok_user = ct_equal(username.strip(), settings.admin_username)
    ok_pass = ct_equal(password, settings.admin_password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # only local redirects
        dest = next if next.startswith("/") else "/admin"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    return ORJSONResponse({"error": "Invalid credentials."}, status_code=401)


@router.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.pop("admin_user", None)
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


# ----------------------------
# Admin controls
# ----------------------------
admin = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


@admin.post("/orders/{order_id}/paid")
async def admin_mark_paid(
    order_id: str, db: GatedAsyncSession = Depends(get_db)
):
    order = await ledger.mark_paid(db, order_id)
    return {"ok": True, "order_status": order.status}


@admin.post("/orders/{order_id}/delivered")
async def admin_mark_delivered(
    order_id: str, db: GatedAsyncSession = Depends(get_db)
):
    order = await ledger.mark_delivered(db, order_id)
    return {"ok": True, "order_status": order.status}


@admin.post("/orders/{order_id}/redeliver")
async def admin_redeliver(
    order_id: str,
    db: GatedAsyncSession = Depends(get_db),
    cfg: ledger.LedgerConfig = Depends(get_cfg),
):
    order = await redeliver(db, order_id, grace=cfg.fulfillment_grace)
    if order is None:
        raise HTTPException(409, detail="not enough stock to deliver")
    return {"ok": True, "order_status": order.status}


@admin.post("/orders/{order_id}/cancel")
async def admin_cancel(
    order_id: str, db: GatedAsyncSession = Depends(get_db)
):
    order = await ledger.cancel_order(db, order_id, admin=True)
    return {"ok": True, "order_status": order.status}


@admin.post("/orders/{order_id}/verify-refund")
async def admin_verify_refund(
    order_id: str,
    db: GatedAsyncSession = Depends(get_db),
    adapter: PaymentAdapter = Depends(get_adapter),
):
    return await ledger.verify_refund_status(db, adapter, order_id)


@admin.delete("/orders/{order_id}")
async def admin_delete_order(
    order_id: str, db: GatedAsyncSession = Depends(get_db)
):
    if not await ledger.delete_order(db, order_id):
        raise HTTPException(404, detail="order not found")
    return {"ok": True}


@admin.post("/orders/delete")
async def admin_delete_orders(
    payload: dict, db: GatedAsyncSession = Depends(get_db)
):
    ids = payload.get("order_ids") or []
    if not isinstance(ids, list):
        raise HTTPException(400, detail="order_ids must be a list")
    return {"ok": True, "deleted": await ledger.delete_orders(db, ids)}


@admin.post("/refunds/{request_id}/approve")
async def admin_approve_refund(
    request_id: int,
    payload: Optional[dict] = None,
    db: GatedAsyncSession = Depends(get_db),
    admin_user: str = Depends(require_admin),
):
    note = (payload or {}).get("note")
    return await ledger.approve_refund(db, request_id, admin_user, note)


@admin.post("/refunds/{request_id}/reject")
async def admin_reject_refund(
    request_id: int,
    payload: Optional[dict] = None,
    db: GatedAsyncSession = Depends(get_db),
    admin_user: str = Depends(require_admin),
):
    note = (payload or {}).get("note")
    req = await ledger.reject_refund(db, request_id, admin_user, note)
    return {"ok": True, "status": req.status}


@admin.get("/timings")
async def admin_timings():
    return {"items": timings.snapshot()}


# ----------------------------
# Error mapping
# ----------------------------
def _error(status: int):
    async def handler(request: Request, exc: Exception):
        return ORJSONResponse({"detail": str(exc)}, status_code=status)
    return handler


ERROR_STATUS = {
    OrderNotFound: 404,
    RefundRequestNotFound: 404,
    NotOrderOwner: 403,
    OrderStateError: 409,
    AmountMismatch: 400,
}


# ---
# startup / shutdown
# ---
def _say_hello(settings: Settings) -> None:
    print('\n' * 3)
    print('=' * 50)
    db = settings.database_url.split("://", 1)[0]
    T = 'PostgreSQL' if settings.throttle_backend == 'pg' else 'Redis'
    print('KeyShop is starting up...')
    print(f'   - Database: {db}')
    print(f'   - Maintenance Throttle Backend: {T}')
    print('=' * 50)
    print('\n' * 3)


@asynccontextmanager
async def lifespan(app: FastAPI):
    st = app.state
    settings: Settings = st.settings
    _say_hello(settings)

    await migrate_engine(st.engine)

    st.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )
    if st.adapter is None:
        st.adapter = EPay(
            merchant_id=settings.merchant_id,
            merchant_key=settings.merchant_key,
            notify_url=settings.notify_url,
            pay_url=settings.pay_url,
            http=st.http,
        )
    st.arbiter = OracleArbiter(st.adapter)

    st.redis = None
    if settings.throttle_backend == "redis":
        st.redis = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    try:
        yield
    finally:
        await st.http.aclose()
        st.http = None
        if st.redis is not None:
            await st.redis.aclose()
            st.redis = None
        await st.engine.dispose()


def create_app(
    settings: Optional[Settings] = None,
    adapter: Optional[PaymentAdapter] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    app = FastAPI(
        title="KeyShop",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    engine, SessionAsync, gated = make_async_engine(settings.database_url)
    app.state.settings = settings
    app.state.cfg = settings.ledger()
    app.state.engine = engine
    app.state.SessionAsync = SessionAsync
    app.state.gated = gated
    app.state.adapter = adapter

    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    for exc, status in ERROR_STATUS.items():
        app.add_exception_handler(exc, _error(status))
    app.include_router(router)
    app.include_router(admin)
    return app
