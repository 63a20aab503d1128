from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.apps.api.deps import Principal, get_current_principal, get_db
from sspgen.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from sspgen.apps.api.response import SuccessEnvelope, success_response
from sspgen.core.errors import NotFoundError, PersistenceError
from sspgen.persistence.repos import runs as runs_repo
from sspgen.persistence.repos import sections as sections_repo


router = APIRouter(tags=["runs"], responses=DEFAULT_ERROR_RESPONSES)


class RunSummary(BaseModel):
    id: str
    system_id: str
    system_name: str
    status: str
    control_id: str
    created_at: str
    completed_at: str | None = None
    error_message: str | None = None


class SectionResponse(BaseModel):
    id: str
    control_id: str
    narrative: str
    evidence: list[str]
    citations: list[str]
    created_at: str


class SystemSummary(BaseModel):
    id: str
    name: str
    impact_level: str


class RunDetailResponse(BaseModel):
    run: RunSummary
    system: SystemSummary
    sections: list[SectionResponse]


def _isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def _run_summary(run, system) -> RunSummary:
    return RunSummary(
        id=run.id,
        system_id=run.system_id,
        system_name=system.name,
        status=run.status,
        control_id=run.control_id,
        created_at=_isoformat(run.created_at),
        completed_at=_isoformat(run.completed_at),
        error_message=run.error_message,
    )


@router.get("/runs", response_model=SuccessEnvelope[list[RunSummary]])
async def list_runs(
    request: Request,
    system_id: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        rows = await runs_repo.list_runs_for_owner(
            db, principal.subject_id, system_id=system_id, limit=limit
        )
    except SQLAlchemyError as exc:
        raise PersistenceError("Database error while listing runs") from exc
    return success_response(
        request=request,
        data=[_run_summary(run, system).model_dump() for run, system in rows],
    )


@router.get("/runs/{run_id}", response_model=SuccessEnvelope[RunDetailResponse])
async def get_run(
    run_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        row = await runs_repo.get_run_for_owner(db, run_id, principal.subject_id)
        if row is None:
            raise NotFoundError(f"Run not found: {run_id}")
        run, system = row
        # Sections of a run that never completed are hidden.
        sections = await sections_repo.list_sections_for_run(db, run.id)
    except SQLAlchemyError as exc:
        raise PersistenceError("Database error while fetching run") from exc

    detail = RunDetailResponse(
        run=_run_summary(run, system),
        system=SystemSummary(id=system.id, name=system.name, impact_level=system.impact_level),
        sections=[
            SectionResponse(
                id=section.id,
                control_id=section.control_id,
                narrative=section.narrative,
                evidence=list(section.evidence or []),
                citations=list(section.citations or []),
                created_at=_isoformat(section.created_at),
            )
            for section in sections
        ],
    )
    return success_response(request=request, data=detail)
