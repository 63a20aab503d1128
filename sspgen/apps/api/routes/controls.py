from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from sspgen.apps.api.deps import Principal, get_current_principal
from sspgen.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from sspgen.apps.api.response import SuccessEnvelope, success_response
from sspgen.services.generation.controls import CONTROL_CATALOG


router = APIRouter(tags=["controls"], responses=DEFAULT_ERROR_RESPONSES)


class ControlResponse(BaseModel):
    control_id: str
    title: str
    family: str
    description: str


@router.get("/controls", response_model=SuccessEnvelope[list[ControlResponse]])
async def list_controls(
    request: Request,
    principal: Principal = Depends(get_current_principal),
) -> dict:
    data = [
        ControlResponse(
            control_id=control.control_id,
            title=control.title,
            family=control.family,
            description=control.description,
        ).model_dump()
        for control in CONTROL_CATALOG
    ]
    return success_response(request=request, data=data)
