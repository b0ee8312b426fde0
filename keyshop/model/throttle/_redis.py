from __future__ import annotations
import time
import redis.asyncio as redis


# ---- keys
def k_throttle(name: str) -> str: return f"throttle:{name}"


class ThrottleStore:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def acquire(self, name: str, interval: float) -> bool:
        # NX lease that expires after the interval
        ok = await self.r.set(
            k_throttle(name), str(time.time()),
            nx=True, px=max(1, int(interval * 1000)),
        )
        return bool(ok)
