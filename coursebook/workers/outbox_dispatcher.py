from __future__ import annotations
import asyncio
import logging

from ..config import get_settings
from ..db import SessionLocal
from ..observability.heartbeat import HB_OUTBOX_DISPATCHER, beat
from ..observability.logging import setup_logging
from ..services.notifier import Notifier, deliver_outbox, get_notifier

S = get_settings()
log = logging.getLogger("worker.outbox_dispatcher")

SLEEP_EMPTY = 1.0  # seconds
SLEEP_ERROR = 2.0


async def publish_once(notifier: Notifier | None = None) -> int:
    """Deliver one batch of unsent notifications (including ones an earlier attempt failed)."""
    async with SessionLocal() as db:
        return await deliver_outbox(db, notifier or get_notifier(), batch=S.OUTBOX_BATCH)


async def run_forever():
    notifier = get_notifier()
    while True:
        try:
            sent = await publish_once(notifier)
            await asyncio.sleep(SLEEP_EMPTY if sent == 0 else 0.05)
        except Exception:
            log.exception("outbox_dispatcher error")
            await asyncio.sleep(SLEEP_ERROR)


async def amain():
    asyncio.create_task(beat(HB_OUTBOX_DISPATCHER))
    await run_forever()

def main():
    setup_logging()
    asyncio.run(amain())


if __name__ == "__main__":
    main()
