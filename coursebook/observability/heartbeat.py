from __future__ import annotations
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional
from ..redis_client import redis

log = logging.getLogger(__name__)

HB_OFFER_SWEEPER = "hb:offer_sweeper"
HB_OUTBOX_DISPATCHER = "hb:outbox_dispatcher"
WORKER_KEYS = {
    "offer_sweeper": HB_OFFER_SWEEPER,
    "outbox_dispatcher": HB_OUTBOX_DISPATCHER,
}


async def beat(key: str, interval_sec: int = 5, ttl_sec: int = 20):
    while True:
        try:
            await redis.set(key, datetime.now(timezone.utc).isoformat(), ex=ttl_sec)
        except Exception as exc:
            log.warning("heartbeat_failed", extra={"key": key, "error": str(exc)})
        await asyncio.sleep(interval_sec)


async def worker_heartbeats() -> Dict[str, Optional[str]]:
    """Last beat per worker; None once the key has expired (worker down or Redis unreachable)."""
    out: Dict[str, Optional[str]] = {}
    try:
        values = await redis.mget(list(WORKER_KEYS.values()))
    except Exception:
        log.warning("heartbeat_read_failed", exc_info=True)
        values = [None] * len(WORKER_KEYS)
    for name, value in zip(WORKER_KEYS, values):
        out[name] = value
    return out
