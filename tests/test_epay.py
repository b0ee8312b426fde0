import hashlib

import httpx
import pytest
from fastapi import HTTPException

from keyshop.epay import (
    EPay, OracleArbiter, OracleStatus, api_url_for, paid_amount_of,
    sign_params,
)
from keyshop.model.inventory import Verdict

KEY = "secret"


def _epay(handler=None) -> EPay:
    http = None
    if handler is not None:
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return EPay("1001", KEY, "https://shop.test/api/notify",
                pay_url="https://pay.test/epay/pay/submit.php", http=http)


def test_sign_params_skips_empty_and_sign_fields():
    params = {"b": "2", "a": "1", "c": "", "sign": "x", "sign_type": "MD5"}
    expected = hashlib.md5(b"a=1&b=2" + KEY.encode()).hexdigest()
    assert sign_params(params, KEY) == expected


def test_api_url_follows_pay_url():
    assert api_url_for("https://pay.test/epay/pay/submit.php") == \
        "https://pay.test/epay/api.php"
    assert api_url_for("not a url") == "https://credit.linux.do/epay/api.php"


def test_checkout_form_is_signed():
    form = _epay().build_checkout("o1", "Key", "9.5", "https://shop.test/cb")
    params = form["params"]

    assert form["url"] == "https://pay.test/epay/pay/submit.php"
    assert params["money"] == "9.50"
    assert params["sign_type"] == "MD5"
    assert params["sign"] == sign_params(params, KEY)


def _notify(**overrides):
    params = {
        "pid": "1001", "out_trade_no": "o1", "trade_no": "T1",
        "money": "9.50", "trade_status": "TRADE_SUCCESS", "type": "epay",
    }
    params.update(overrides)
    params["sign"] = sign_params(params, KEY)
    params["sign_type"] = "MD5"
    return params


def test_verify_notify_accepts_signed_params():
    event = _epay().verify_notify(_notify())
    assert event.succeeded
    assert (event.out_trade_no, event.trade_no, event.money) == \
        ("o1", "T1", "9.50")


def test_verify_notify_rejects_tampering():
    params = _notify()
    params["money"] = "0.01"
    with pytest.raises(HTTPException) as exc:
        _epay().verify_notify(params)
    assert exc.value.status_code == 400


def test_verify_notify_rejects_foreign_merchant():
    with pytest.raises(HTTPException):
        _epay().verify_notify(_notify(pid="999"))


async def test_query_status_paid():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(request.url.params)
        return httpx.Response(200, json={
            "code": 1, "status": 1, "money": "9.50", "trade_no": "T1",
        })

    res = await _epay(handler).query_status("o1_retry5")

    assert res.reachable and res.paid
    assert seen["act"] == "order"
    assert seen["out_trade_no"] == "o1_retry5"
    assert str(paid_amount_of(res, "0")) == "9.50"


async def test_query_status_unknown_trade_is_reachable():
    res = await _epay(
        lambda r: httpx.Response(200, json={"code": -1, "msg": "no order"})
    ).query_status("o1")

    assert res.reachable
    assert not res.paid
    assert res.error == "no order"


@pytest.mark.parametrize("handler", [
    lambda r: httpx.Response(502, text="bad gateway"),
    lambda r: httpx.Response(200, text="<html>"),
])
async def test_query_status_unreachable(handler):
    res = await _epay(handler).query_status("o1")
    assert not res.reachable


async def test_query_status_transport_error():
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    res = await _epay(handler).query_status("o1")
    assert not res.reachable


class _Adapter:
    def __init__(self, status: OracleStatus):
        self.status = status

    async def query_status(self, trade_id):
        return self.status


@pytest.mark.parametrize("status,verdict", [
    (OracleStatus(reachable=True, success=True, status=1), Verdict.PAID),
    (OracleStatus(reachable=True, success=True, status=0), Verdict.UNPAID),
    (OracleStatus(reachable=True, success=False), Verdict.UNPAID),
    (OracleStatus(reachable=False), Verdict.UNKNOWN),
])
async def test_oracle_arbiter(status, verdict):
    assert await OracleArbiter(_Adapter(status)).verdict("o1") is verdict
