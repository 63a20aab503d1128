from __future__ import annotations

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.domain.models import System


async def get_system(session: AsyncSession, system_id: str) -> System | None:
    result = await session.execute(select(System).where(System.id == system_id))
    return result.scalar_one_or_none()


async def get_system_for_owner(session: AsyncSession, system_id: str, owner_id: str) -> System | None:
    # Scope by owner so callers cannot see other users' systems.
    result = await session.execute(
        select(System).where(System.id == system_id, System.owner_id == owner_id)
    )
    return result.scalar_one_or_none()


async def list_systems_for_owner(session: AsyncSession, owner_id: str) -> list[System]:
    result = await session.execute(
        select(System)
        .where(System.owner_id == owner_id)
        .order_by(System.created_at.desc(), System.id)
    )
    return list(result.scalars().all())


async def create_system(
    session: AsyncSession,
    *,
    name: str,
    impact_level: str,
    owner_id: str,
    system_id: str | None = None,
) -> System:
    system = System(
        id=system_id or uuid4().hex,
        name=name,
        impact_level=impact_level,
        owner_id=owner_id,
    )
    session.add(system)
    return system
