import os
from typing import Optional
import redis.asyncio as redis

from ...infra.sql import Database
from ._record import RedemptionRecord, STATUS_USED, STATUS_REVOKED

BACKEND = os.getenv("REDEMPTION_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import RedemptionStore as _RedemptionStore
else:
    from ._sql import RedemptionStore as _RedemptionStore


# the chosen backend decides which handle it needs
def new_store(*, db: Optional[Database] = None,
              r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "RedemptionStore(redis) requires r=redis.Redis"
            )
        return _RedemptionStore(r=r)
    else:
        if db is None:
            raise RuntimeError("RedemptionStore(sql) requires db=Database")
        return _RedemptionStore(db=db)


# the selected backend class, for annotations
RedemptionStore = _RedemptionStore
__all__ = [
    "RedemptionStore", "RedemptionRecord", "new_store", "BACKEND",
    "STATUS_USED", "STATUS_REVOKED",
]
