from __future__ import annotations
import uuid

from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Session as SessionModel


async def begin_locked_tx(db: AsyncSession) -> None:
    """
    Ensure we're not inside an active transaction, then start a new READ COMMITTED one.
    Callers lock the session row first (see lock_session), so every statement after the
    lock sees rows committed by whoever held it before us.

    An auto-begun transaction left over from earlier reads is committed, not rolled back,
    so objects the caller still holds are not expired (AsyncSession cannot lazily
    reload them).
    """
    if db.in_transaction():
        await db.commit()

    if db.get_bind().dialect.name == "postgresql":
        await db.execute(text("SET TRANSACTION ISOLATION LEVEL READ COMMITTED"))


async def release_tx(db: AsyncSession) -> None:
    """End a locked transaction that wrote nothing, keeping loaded objects readable."""
    await db.commit()


async def lock_session(db: AsyncSession, session_id: uuid.UUID) -> SessionModel | None:
    row = await db.execute(
        select(SessionModel)
        .where(SessionModel.id == session_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return row.scalar_one_or_none()
