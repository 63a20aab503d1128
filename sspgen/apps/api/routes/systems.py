from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.apps.api.deps import Principal, get_current_principal, get_db
from sspgen.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from sspgen.apps.api.response import SuccessEnvelope, success_response
from sspgen.core.errors import BadRequestError, NotFoundError, PersistenceError
from sspgen.domain.state import normalize_impact_level
from sspgen.persistence.repos import intakes as intakes_repo
from sspgen.persistence.repos import systems as systems_repo


router = APIRouter(tags=["systems"], responses=DEFAULT_ERROR_RESPONSES)


class SystemResponse(BaseModel):
    id: str
    name: str
    impact_level: str
    owner_id: str
    created_at: str


class SystemCreateRequest(BaseModel):
    # Optional at the schema level so a missing field is a 400, not a 422.
    name: str | None = None
    impact_level: str | None = None


class IntakeUpsertRequest(BaseModel):
    system_id: str | None = None
    answers: dict[str, Any] | None = Field(default=None, alias="json")

    model_config = {"populate_by_name": True}


class IntakeResponse(BaseModel):
    system_id: str
    json_: dict[str, Any] = Field(serialization_alias="json")
    updated_at: str | None = None


def _to_response(system) -> SystemResponse:
    created_at: datetime = system.created_at
    return SystemResponse(
        id=system.id,
        name=system.name,
        impact_level=system.impact_level,
        owner_id=system.owner_id,
        created_at=created_at.isoformat(),
    )


async def _owned_system(db: AsyncSession, system_id: str, owner_id: str):
    try:
        system = await systems_repo.get_system_for_owner(db, system_id, owner_id)
    except SQLAlchemyError as exc:
        raise PersistenceError("Database error while fetching system") from exc
    if system is None:
        # Use 404 for other owners' systems to avoid leaking existence.
        raise NotFoundError(f"System not found: {system_id}")
    return system


@router.post("/systems", status_code=201, response_model=SuccessEnvelope[SystemResponse])
async def create_system(
    request: Request,
    payload: SystemCreateRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    name = (payload.name or "").strip()
    if not name or not payload.impact_level:
        raise BadRequestError("Missing required fields: name, impact_level")
    try:
        impact_level = normalize_impact_level(payload.impact_level)
    except ValueError as exc:
        raise BadRequestError(str(exc)) from exc

    try:
        system = await systems_repo.create_system(
            db,
            name=name,
            impact_level=impact_level,
            owner_id=principal.subject_id,
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Database error while creating system") from exc
    return success_response(request=request, data=_to_response(system))


@router.get("/systems", response_model=SuccessEnvelope[list[SystemResponse]])
async def list_systems(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    try:
        systems = await systems_repo.list_systems_for_owner(db, principal.subject_id)
    except SQLAlchemyError as exc:
        raise PersistenceError("Database error while listing systems") from exc
    return success_response(
        request=request,
        data=[_to_response(system).model_dump() for system in systems],
    )


@router.get("/systems/{system_id}", response_model=SuccessEnvelope[SystemResponse])
async def get_system(
    system_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    system = await _owned_system(db, system_id, principal.subject_id)
    return success_response(request=request, data=_to_response(system))


@router.post("/intake")
async def upsert_intake(
    request: Request,
    payload: IntakeUpsertRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    if not payload.system_id or payload.answers is None:
        raise BadRequestError("Missing required fields: system_id, json")
    await _owned_system(db, payload.system_id, principal.subject_id)
    try:
        await intakes_repo.upsert_intake(db, payload.system_id, payload.answers)
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError("Database error while saving intake") from exc
    return success_response(request=request, data={"ok": True})


@router.get("/systems/{system_id}/intake")
async def get_intake(
    system_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await _owned_system(db, system_id, principal.subject_id)
    try:
        intake = await intakes_repo.get_intake(db, system_id)
    except SQLAlchemyError as exc:
        raise PersistenceError("Database error while fetching intake") from exc
    response = IntakeResponse(
        system_id=system_id,
        json_=intake.answers_json if intake is not None else {},
        updated_at=intake.updated_at.isoformat() if intake is not None and intake.updated_at else None,
    )
    return success_response(request=request, data=response.model_dump(by_alias=True))
