from __future__ import annotations

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.domain.models import Run, System
from sspgen.domain.state import RUN_ACTIVE_STATUSES, RUN_STATUS_RUNNING


async def add_run(
    session: AsyncSession,
    *,
    run_id: str,
    system_id: str,
    control_id: str,
    created_at: datetime,
    status: str = RUN_STATUS_RUNNING,
) -> Run:
    run = Run(
        id=run_id,
        system_id=system_id,
        control_id=control_id,
        status=status,
        created_at=created_at,
    )
    session.add(run)
    return run


async def transition_run(
    session: AsyncSession,
    run_id: str,
    *,
    status: str,
    completed_at: datetime | None = None,
    error_message: str | None = None,
) -> bool:
    # Guard on the current status so terminal runs are never rewritten.
    values: dict[str, object] = {"status": status}
    if completed_at is not None:
        values["completed_at"] = completed_at
    if error_message is not None:
        values["error_message"] = error_message
    result = await session.execute(
        update(Run)
        .where(Run.id == run_id, Run.status.in_(sorted(RUN_ACTIVE_STATUSES)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) == 1


async def get_run_for_owner(
    session: AsyncSession, run_id: str, owner_id: str
) -> tuple[Run, System] | None:
    result = await session.execute(
        select(Run, System)
        .join(System, Run.system_id == System.id)
        .where(Run.id == run_id, System.owner_id == owner_id)
    )
    row = result.first()
    if row is None:
        return None
    return row[0], row[1]


async def list_runs_for_owner(
    session: AsyncSession,
    owner_id: str,
    *,
    system_id: str | None = None,
    limit: int = 50,
) -> list[tuple[Run, System]]:
    # Newest first; id breaks ties for runs created in the same instant.
    stmt = (
        select(Run, System)
        .join(System, Run.system_id == System.id)
        .where(System.owner_id == owner_id)
    )
    if system_id is not None:
        stmt = stmt.where(Run.system_id == system_id)
    stmt = stmt.order_by(Run.created_at.desc(), Run.id.desc()).limit(limit)
    result = await session.execute(stmt)
    return [(row[0], row[1]) for row in result.all()]
