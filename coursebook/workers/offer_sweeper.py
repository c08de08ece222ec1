from __future__ import annotations
import asyncio
import logging

from ..config import get_settings
from ..db import SessionLocal
from ..observability.heartbeat import HB_OFFER_SWEEPER, beat
from ..observability.logging import setup_logging
from ..redis_client import redis
from ..services.notifier import get_notifier
from ..services.offer_sweeper import sweep_all_expired_offers

S = get_settings()
log = logging.getLogger("worker.offer_sweeper")

def _lock_key() -> str: return "lock:offer_sweeper"

async def _acquire_lock() -> bool:
    # Only one instance performs the scan; others idle
    return await redis.set(_lock_key(), "1", ex=S.SWEEP_LOCK_TTL_SEC, nx=True) is True

async def run_once() -> int:
    if not await _acquire_lock():
        return 0
    async with SessionLocal() as db:
        expired = await sweep_all_expired_offers(db, batch=S.SWEEP_BATCH, notifier=get_notifier())
    if expired:
        log.info("offers_expired", extra={"count": expired})
    return expired

async def run_forever():
    asyncio.create_task(beat(HB_OFFER_SWEEPER))
    while True:
        try:
            await run_once()
        except Exception as e:
            log.exception("offer_sweeper error: %s", e)
        await asyncio.sleep(S.SWEEP_INTERVAL_SEC)

def main():
    setup_logging()
    asyncio.run(run_forever())

if __name__ == "__main__":
    main()
