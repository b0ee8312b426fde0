from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, TypedDict
from urllib.parse import urlsplit
from fastapi import HTTPException
import hashlib
import logging

import httpx

from .helpers import ct_equal, format_money, to_money
from .infra.timings import timeit
from .model.inventory import Verdict

logger = logging.getLogger(__name__)

DEFAULT_PAY_URL = "https://credit.linux.do/epay/pay/submit.php"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutForm(TypedDict):
    url: str
    params: Dict[str, str]


@dataclass
class NotifyEvent:
    out_trade_no: str
    trade_no: str
    money: str
    trade_status: str

    @property
    def succeeded(self) -> bool:
        return self.trade_status == "TRADE_SUCCESS"


@dataclass
class OracleStatus:
    """
    Normalized answer of the provider's order query.

    reachable=False means we don't know: network error, non-2xx, garbage
    body. It must never be read as "unpaid".
    """
    reachable: bool
    success: bool = False
    # provider status: 1 = paid, 0 = refunded / unpaid
    status: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def paid(self) -> bool:
        return self.success and self.status == 1

    @property
    def refunded(self) -> bool:
        return self.success and self.status == 0


class PaymentAdapter(ABC):
    @abstractmethod
    def build_checkout(
        self, out_trade_no: str, name: str, amount, return_url: str
    ) -> CheckoutForm: ...

    @abstractmethod
    def verify_notify(self, params: Dict[str, str]) -> NotifyEvent: ...

    @abstractmethod
    async def query_status(self, trade_id: str) -> OracleStatus: ...


def sign_params(params: Dict[str, Any], key: str) -> str:
    """
    MD5 over the non-empty params sorted by name, `sign` and `sign_type`
    excluded, merchant key appended.
    """
    items = sorted(
        (k, str(v)) for k, v in params.items()
        if k not in ("sign", "sign_type") and v is not None and str(v) != ""
    )
    payload = "&".join(f"{k}={v}" for k, v in items) + key
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def api_url_for(pay_url: str) -> str:
    parts = urlsplit(pay_url)
    if not parts.scheme or not parts.netloc:
        return "https://credit.linux.do/epay/api.php"
    path = parts.path.replace("/pay/submit.php", "/api.php")
    path = path.replace("/submit.php", "/api.php")
    if not path.endswith("api.php"):
        path = "/epay/api.php"
    return f"{parts.scheme}://{parts.netloc}{path}"


# ----------------------------
# EPay implementation
# ----------------------------
class EPay(PaymentAdapter):

    def __init__(
        self,
        merchant_id: str,
        merchant_key: str,
        notify_url: str,
        pay_url: str = DEFAULT_PAY_URL,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 5.0,
    ) -> None:
        self.merchant_id = merchant_id
        self.merchant_key = merchant_key
        self.notify_url = notify_url
        self.pay_url = pay_url
        self.api_url = api_url_for(pay_url)
        self.http = http
        self.timeout = timeout

    def build_checkout(
        self, out_trade_no: str, name: str, amount, return_url: str
    ) -> CheckoutForm:
        params = {
            "pid": self.merchant_id,
            "type": "epay",
            "out_trade_no": out_trade_no,
            "notify_url": self.notify_url,
            "return_url": return_url,
            "name": name,
            "money": format_money(amount),
            "sign_type": "MD5",
        }
        params["sign"] = sign_params(params, self.merchant_key)
        return {"url": self.pay_url, "params": params}

    def verify_notify(self, params: Dict[str, str]) -> NotifyEvent:
        sig = params.get("sign") or ""
        expected = sign_params(params, self.merchant_key)
        if not sig or not ct_equal(expected, sig.lower()):
            raise HTTPException(status_code=400, detail="Invalid signature")
        if str(params.get("pid", "")) != str(self.merchant_id):
            raise HTTPException(status_code=400, detail="Unknown merchant")
        out_trade_no = params.get("out_trade_no") or ""
        if not out_trade_no:
            raise HTTPException(status_code=400, detail="missing out_trade_no")
        try:
            money = format_money(params.get("money") or "0")
        except ArithmeticError:
            raise HTTPException(status_code=400, detail="Invalid money")
        return NotifyEvent(
            out_trade_no=out_trade_no,
            trade_no=params.get("trade_no") or "",
            money=money,
            trade_status=params.get("trade_status") or "",
        )

    async def _get(self, params: Dict[str, str]) -> httpx.Response:
        if self.http is not None:
            return await self.http.get(
                self.api_url, params=params, timeout=self.timeout
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.api_url, params=params)

    async def query_status(self, trade_id: str) -> OracleStatus:
        query = {
            "act": "order",
            "pid": self.merchant_id,
            "key": self.merchant_key,
            "out_trade_no": trade_id,
        }
        try:
            async with timeit("epay.query_status"):
                r = await self._get(query)
        except httpx.HTTPError as e:
            logger.warning("order query for %s failed: %s", trade_id, e)
            return OracleStatus(reachable=False, error=str(e))

        if not r.is_success:
            logger.warning(
                "order query for %s: HTTP %s", trade_id, r.status_code
            )
            return OracleStatus(
                reachable=False, error=f"HTTP {r.status_code}"
            )
        try:
            data = r.json()
        except ValueError:
            return OracleStatus(reachable=False, error="invalid JSON")
        if not isinstance(data, dict):
            return OracleStatus(reachable=False, error="invalid JSON")

        if str(data.get("code")) != "1":
            # provider answered, but doesn't know a paid trade
            return OracleStatus(
                reachable=True, success=False, raw=data,
                error=data.get("msg") or "Query failed",
            )
        try:
            status = int(data.get("status"))
        except (TypeError, ValueError):
            status = None
        return OracleStatus(
            reachable=True, success=True, status=status, raw=data
        )


def paid_amount_of(status: OracleStatus, fallback) -> Any:
    money = status.raw.get("money")
    if money in (None, ""):
        return to_money(fallback)
    return to_money(money)


class OracleArbiter:
    """ReservationArbiter backed by the provider's order query."""

    def __init__(self, adapter: PaymentAdapter) -> None:
        self.adapter = adapter

    async def verdict(self, payment_id: str) -> Verdict:
        res = await self.adapter.query_status(payment_id)
        if not res.reachable:
            return Verdict.UNKNOWN
        if res.paid:
            return Verdict.PAID
        return Verdict.UNPAID
