from typing import AsyncGenerator

import httpx
import pytest_asyncio

from keyshop.config import Settings
from keyshop.epay import EPay, sign_params
from keyshop.infra.sql import GatedAsyncSession
from keyshop.server import CRON_TOKEN_HEADER, create_app

from conftest import fetch_order, seed_cards, seed_order, seed_product

KEY = "merchant-secret"


def _provider(request: httpx.Request) -> httpx.Response:
    # the provider knows no trade; paid orders arrive through notify
    return httpx.Response(200, json={"code": -1, "msg": "not found"})


@pytest_asyncio.fixture
async def app(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'shop.db'}",
        merchant_id="1001",
        merchant_key=KEY,
        app_url="http://shop.test",
        admin_username="admin",
        admin_password="pw",
        cron_cleanup_token="cron-token",
    )
    adapter = EPay(
        "1001", KEY, settings.notify_url,
        http=httpx.AsyncClient(transport=httpx.MockTransport(_provider)),
    )
    app = create_app(settings, adapter=adapter)
    async with app.router.lifespan_context(app):
        yield app
    await adapter.http.aclose()


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://shop.test") as c:
        yield c


@pytest_asyncio.fixture
async def db(app):
    st = app.state
    async with st.SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=st.gated)


def _notify(order_id: str, money: str, **extra):
    params = {
        "pid": "1001", "type": "epay", "out_trade_no": order_id,
        "trade_no": "TXN1", "money": money, "trade_status": "TRADE_SUCCESS",
        **extra,
    }
    params["sign"] = sign_params(params, KEY)
    params["sign_type"] = "MD5"
    return params


async def test_guest_checkout_to_delivery(client, db):
    await seed_product(db, price="10.00")
    await seed_cards(db, n=1)

    r = await client.post("/api/checkout", json={
        "product_id": "p1", "email": "guest@example.com",
    })
    assert r.status_code == 200
    body = r.json()
    order_id = body["order_id"]
    assert body["amount"] == "10.00"
    assert body["form"]["params"]["sign"]

    r = await client.post("/paying", data={"order_id": order_id})
    assert r.status_code == 200
    assert 'action="https://credit.linux.do/epay/pay/submit.php"' in r.text

    r = await client.get(f"/api/orders/{order_id}")
    assert r.json()["status"] == "pending"

    r = await client.post("/api/notify", data=_notify(order_id, "10.00"))
    assert r.status_code == 200
    assert r.text == "success"

    r = await client.get(f"/api/orders/{order_id}")
    assert r.json()["status"] == "delivered"
    assert r.json()["card_key"] == "KEY-p1-0"

    # replays are acknowledged without side effects
    r = await client.get("/api/notify", params=_notify(order_id, "10.00"))
    assert r.text == "success"


async def test_checkout_failures(client, db):
    await seed_product(db)

    r = await client.post("/api/checkout", json={"product_id": "p1"})
    assert r.status_code == 400

    r = await client.post("/api/checkout", json={
        "product_id": "p1", "email": "guest@example.com",
    })
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "buy.outOfStock"}

    r = await client.post("/api/checkout", json={
        "product_id": "p1", "email": "guest@example.com", "quantity": 0,
    })
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "buy.invalidQuantity"}


async def test_notify_rejects_bad_signature_and_amount(client, db):
    await seed_product(db)
    await seed_order(db, "o1", amount="10.00")

    params = _notify("o1", "10.00")
    params["money"] = "1.00"
    r = await client.post("/api/notify", data=params)
    assert r.status_code == 400

    r = await client.post("/api/notify", data=_notify("o1", "9.99"))
    assert r.text == "fail"
    assert (await fetch_order(db, "o1")).status == "pending"

    r = await client.post("/api/notify", data=_notify("missing", "1.00"))
    assert r.status_code == 404


async def test_notify_for_retried_payment(client, db):
    await seed_product(db)
    await seed_cards(db, n=1)
    await seed_order(db, "o1", current_payment_id="o1_retry17")

    r = await client.post("/api/notify", data=_notify("o1_retry17", "10.00"))

    assert r.text == "success"
    assert (await fetch_order(db, "o1")).status == "delivered"


async def test_payment_link(client, db):
    r = await client.post("/api/pay", json={"amount": "5", "payee": "bob"})
    assert r.status_code == 200
    order_id = r.json()["order_id"]

    await client.post("/api/notify", data=_notify(order_id, "5.00"))

    assert (await fetch_order(db, order_id)).status == "paid"


async def test_admin_requires_login(client, db):
    await seed_order(db, "o1")

    r = await client.post("/api/admin/orders/o1/paid")
    assert r.status_code == 401

    r = await client.post("/admin/login", data={
        "username": "admin", "password": "wrong",
    })
    assert r.status_code == 401

    r = await client.post("/admin/login", data={
        "username": "admin", "password": "pw", "next": "/admin",
    })
    assert r.status_code == 303

    r = await client.post("/api/admin/orders/o1/paid")
    assert r.json() == {"ok": True, "order_status": "paid"}

    r = await client.post("/api/admin/orders/o1/paid")
    assert r.status_code == 409

    r = await client.post("/api/admin/orders/o1/delivered")
    assert r.status_code == 409

    r = await client.delete("/api/admin/orders/o1")
    assert r.json() == {"ok": True}
    r = await client.delete("/api/admin/orders/o1")
    assert r.status_code == 404

    r = await client.get("/api/admin/timings")
    assert r.status_code == 200
    assert all(
        {"kind", "n", "mean", "std", "max"} <= set(t) for t in r.json()["items"]
    )

    await client.get("/admin/logout")
    r = await client.post("/api/admin/orders/delete", json={"order_ids": []})
    assert r.status_code == 401


async def test_buyer_endpoints_need_ownership(client, db):
    await seed_order(db, "o1", user_id="u1")

    r = await client.post("/api/orders/o1/cancel")
    assert r.status_code == 403
    r = await client.get("/api/orders/o1")
    assert r.status_code == 403
    r = await client.get("/api/orders/nope")
    assert r.status_code == 404


async def test_cron_cleanup_token(client, db):
    r = await client.post("/api/internal/cron/cleanup")
    assert r.status_code == 401

    r = await client.post("/api/internal/cron/cleanup",
                          headers={CRON_TOKEN_HEADER: "cron-token"})
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert r.json()["cancelledOrderCount"] == 0
