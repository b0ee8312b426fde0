# keyshop/config.py
from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .epay import DEFAULT_PAY_URL
from .model.inventory import (
    FULFILLMENT_GRACE_SECONDS, RESERVATION_TTL_SECONDS, RetryPolicy
)
from .model.ledger import (
    LedgerConfig, ORDER_EXPIRY_SECONDS, SWEEP_INTERVAL_SECONDS
)


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    return default if raw in (None, "") else float(raw)


def _int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    return default if raw in (None, "") else int(raw)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./keyshop.db"
    merchant_id: str = ""
    merchant_key: str = ""
    pay_url: str = DEFAULT_PAY_URL
    app_url: str = "http://localhost:8000"

    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    # empty disables the cron endpoint
    cron_cleanup_token: str = ""

    reservation_ttl: float = RESERVATION_TTL_SECONDS
    fulfillment_grace: float = FULFILLMENT_GRACE_SECONDS
    order_expiry: float = ORDER_EXPIRY_SECONDS
    sweep_interval: float = SWEEP_INTERVAL_SECONDS
    reserve_max_attempts: int = 3
    reserve_backoff: float = 0.0

    throttle_backend: str = "pg"  # 'pg' | 'redis'
    redis_url: str = "redis://127.0.0.1:6379"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        d = cls()
        return cls(
            database_url=env.get("DATABASE_URL") or d.database_url,
            merchant_id=env.get("MERCHANT_ID", d.merchant_id),
            merchant_key=env.get("MERCHANT_KEY", d.merchant_key),
            pay_url=env.get("PAY_URL") or d.pay_url,
            app_url=(env.get("APP_URL") or d.app_url).rstrip("/"),
            session_secret=env.get("SESSION_SECRET", d.session_secret),
            admin_username=env.get("ADMIN_USERNAME", d.admin_username),
            admin_password=env.get("ADMIN_PASSWORD", d.admin_password),
            cron_cleanup_token=env.get(
                "CRON_CLEANUP_TOKEN", d.cron_cleanup_token
            ),
            reservation_ttl=_float(
                env, "RESERVATION_TTL_SECONDS", d.reservation_ttl
            ),
            fulfillment_grace=_float(
                env, "FULFILLMENT_GRACE_SECONDS", d.fulfillment_grace
            ),
            order_expiry=_float(env, "ORDER_EXPIRY_SECONDS", d.order_expiry),
            sweep_interval=_float(
                env, "SWEEP_INTERVAL_SECONDS", d.sweep_interval
            ),
            reserve_max_attempts=_int(
                env, "RESERVE_MAX_ATTEMPTS", d.reserve_max_attempts
            ),
            reserve_backoff=_float(
                env, "RESERVE_BACKOFF_SECONDS", d.reserve_backoff
            ),
            throttle_backend=(
                env.get("THROTTLE_BACKEND") or d.throttle_backend
            ).lower(),
            redis_url=env.get("REDIS_URL") or d.redis_url,
        )

    @property
    def notify_url(self) -> str:
        return f"{self.app_url}/api/notify"

    def ledger(self) -> LedgerConfig:
        return LedgerConfig(
            app_url=self.app_url,
            reservation_ttl=self.reservation_ttl,
            fulfillment_grace=self.fulfillment_grace,
            order_expiry=self.order_expiry,
            sweep_interval=self.sweep_interval,
            retry=RetryPolicy(
                max_attempts=max(1, self.reserve_max_attempts),
                backoff_seconds=self.reserve_backoff,
            ),
        )
