from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.domain.models import Run, Section
from sspgen.domain.state import RUN_STATUS_COMPLETED


async def add_section(
    session: AsyncSession,
    *,
    section_id: str,
    run_id: str,
    system_id: str,
    control_id: str,
    narrative: str,
    evidence: list[str],
    citations: list[str],
) -> Section:
    section = Section(
        id=section_id,
        run_id=run_id,
        system_id=system_id,
        control_id=control_id,
        narrative=narrative,
        evidence=list(evidence),
        citations=list(citations),
    )
    session.add(section)
    return section


async def list_sections_for_run(session: AsyncSession, run_id: str) -> list[Section]:
    # Only completed runs expose sections; a section row alone is not proof of success.
    result = await session.execute(
        select(Section)
        .join(Run, Section.run_id == Run.id)
        .where(Section.run_id == run_id, Run.status == RUN_STATUS_COMPLETED)
        .order_by(Section.control_id, Section.created_at, Section.id)
    )
    return list(result.scalars().all())


async def list_raw_sections_for_run(session: AsyncSession, run_id: str) -> list[Section]:
    # Unfiltered view for consistency checks and maintenance.
    result = await session.execute(
        select(Section).where(Section.run_id == run_id).order_by(Section.created_at, Section.id)
    )
    return list(result.scalars().all())


async def delete_sections_for_run(session: AsyncSession, run_id: str) -> int:
    result = await session.execute(
        delete(Section)
        .where(Section.run_id == run_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
