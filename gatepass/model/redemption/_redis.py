# redemption/_redis.py
from __future__ import annotations
import logging
from typing import List, Optional, Tuple
import redis.asyncio as redis
from redis import exceptions as rexc

from ...errors import StoreUnavailable
from ._record import RedemptionRecord

logger = logging.getLogger(__name__)

# ---- keys
def k_redemption(serial: str) -> str: return f"redemption:{serial}"
def k_gate(gate: str) -> str: return f"redemptions:gate:{gate}"


ALL_INDEX = "redemptions:all"


class RedemptionStore:
    def __init__(self, *, r: redis.Redis) -> None:
        self.r = r

    async def claim(
        self, record: RedemptionRecord
    ) -> Tuple[bool, RedemptionRecord]:
        # SET NX is the claim; the reporting indexes are written only by
        # the winner and are not part of the decision
        try:
            won = await self.r.set(
                k_redemption(record.serial), record.to_json(), nx=True
            )
        except (rexc.ConnectionError, rexc.TimeoutError) as e:
            raise StoreUnavailable("redis unavailable (redemption.claim)") \
                from e

        if won:
            try:
                pipe = self.r.pipeline(transaction=True)
                pipe.zadd(ALL_INDEX, {record.serial: record.used_at})
                pipe.zadd(k_gate(record.gate), {record.serial: record.used_at})
                await pipe.execute()
            except (rexc.ConnectionError, rexc.TimeoutError):
                logger.warning("claimed %s but could not index it",
                               record.serial, exc_info=True)
            return True, record

        existing = await self.get(record.serial)
        if existing is None:
            raise RuntimeError(f"lost claim on {record.serial} but no key")
        return False, existing

    async def get(self, serial: str) -> Optional[RedemptionRecord]:
        try:
            raw = await self.r.get(k_redemption(serial))
        except (rexc.ConnectionError, rexc.TimeoutError) as e:
            raise StoreUnavailable("redis unavailable (redemption.get)") \
                from e
        return RedemptionRecord.from_json(raw) if raw else None

    async def list_recent(
        self, gate: Optional[str] = None, limit: int = 100
    ) -> List[RedemptionRecord]:
        index = k_gate(gate) if gate else ALL_INDEX
        try:
            serials = await self.r.zrevrange(
                index, 0, max(0, min(limit, 500) - 1)
            )
            if not serials:
                return []
            rows = await self.r.mget([k_redemption(s) for s in serials])
        except (rexc.ConnectionError, rexc.TimeoutError) as e:
            raise StoreUnavailable("redis unavailable (redemption.list)") \
                from e
        return [RedemptionRecord.from_json(raw) for raw in rows if raw]
