from __future__ import annotations
from typing import Callable, AsyncContextManager
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

# one row per maintenance job; the row is the lease
SQL_ACQUIRE = r"""
INSERT INTO maintenance_runs(name, last_run_at) VALUES(:name, :now)
ON CONFLICT (name) DO UPDATE SET last_run_at = EXCLUDED.last_run_at
WHERE maintenance_runs.last_run_at <= :cutoff
RETURNING name
"""


class ThrottleStore:
    def __init__(
        self, *, db: AsyncSession,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.gated = gated

    async def acquire(self, name: str, interval: float) -> bool:
        """
        True if `name` did not run within the last `interval` seconds, in
        which case the run is recorded now. Survives restarts and is shared
        by every worker on the same store.
        """
        now = time.time()
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text(SQL_ACQUIRE), {
                    "name": name, "now": now, "cutoff": now - interval,
                })).first()
        return row is not None
