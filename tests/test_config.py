from keyshop.config import Settings


def test_defaults_without_env():
    s = Settings.from_env({})
    assert s.database_url == "sqlite:///./keyshop.db"
    assert s.order_expiry == 900
    assert s.sweep_interval == 60
    assert s.throttle_backend == "pg"


def test_env_overrides_feed_ledger_config():
    s = Settings.from_env({
        "APP_URL": "https://shop.example/",
        "RESERVATION_TTL_SECONDS": "120",
        "RESERVE_MAX_ATTEMPTS": "5",
        "RESERVE_BACKOFF_SECONDS": "0.5",
        "THROTTLE_BACKEND": "Redis",
    })

    cfg = s.ledger()

    assert s.notify_url == "https://shop.example/api/notify"
    assert s.throttle_backend == "redis"
    assert cfg.reservation_ttl == 120
    assert cfg.retry.max_attempts == 5
    assert cfg.retry.backoff_seconds == 0.5
    assert cfg.return_url("o1") == "https://shop.example/callback/o1"
