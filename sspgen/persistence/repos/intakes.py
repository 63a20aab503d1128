from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.core.errors import PersistenceError
from sspgen.domain.models import Intake


async def get_intake(session: AsyncSession, system_id: str) -> Intake | None:
    result = await session.execute(select(Intake).where(Intake.system_id == system_id))
    return result.scalar_one_or_none()


async def upsert_intake(session: AsyncSession, system_id: str, answers: dict[str, Any]) -> Intake:
    now = datetime.now(timezone.utc)
    existing = await get_intake(session, system_id)
    if existing is not None:
        existing.answers_json = answers
        existing.updated_at = now
        return existing

    intake = Intake(system_id=system_id, answers_json=answers, updated_at=now)
    session.add(intake)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent request inserted first; rollback and update its row instead.
        await session.rollback()
        existing = await get_intake(session, system_id)
        if existing is None:
            raise PersistenceError("intake upsert failed unexpectedly")
        existing.answers_json = answers
        existing.updated_at = now
        return existing
    return intake
