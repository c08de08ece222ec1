from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from ...db import db_health, get_db
from ...observability.heartbeat import worker_heartbeats
from ...redis_client import redis_health
from ...repos.outbox import outbox_backlog
from ...services.notifier import MAX_ATTEMPTS

router = APIRouter(prefix="/health", tags=["health"])


@router.get("")
async def health():
    db_ok, redis_ok = await db_health(), await redis_health()
    return {
        "status": "ok" if (db_ok and redis_ok) else "degraded",
        "dependencies": {"database": db_ok, "redis": redis_ok},
    }


@router.get("/readiness")
async def readiness(db: AsyncSession = Depends(get_db)):
    db_ok = await db_health()
    backlog = None
    if db_ok:
        backlog = await outbox_backlog(db, max_attempts=MAX_ATTEMPTS)
        await db.commit()
    return {"ready": db_ok, "database": db_ok, "notifications": backlog}


@router.get("/workers")
async def workers():
    beats = await worker_heartbeats()
    return {"workers": {name: {"alive": at is not None, "last_beat": at} for name, at in beats.items()}}


@router.get("/liveness")
async def liveness():
    return {"alive": True}
