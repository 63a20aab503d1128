from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from sspgen.apps.api.deps import Principal, get_current_principal, get_orchestrator
from sspgen.apps.api.openapi import GENERATION_ERROR_RESPONSES
from sspgen.apps.api.response import SuccessEnvelope, success_response
from sspgen.services.generation.orchestrator import RunOrchestrator


router = APIRouter(tags=["generation"], responses=GENERATION_ERROR_RESPONSES)


class GenerateRequest(BaseModel):
    # Optional here so the orchestrator reports a missing system_id as a 400.
    system_id: str | None = None
    control_id: str | None = None


class GenerateResponse(BaseModel):
    run_id: str
    status: str
    system_id: str
    control_id: str
    narrative: str
    evidence: list[str]
    citations: list[str]


@router.post("/generate", status_code=201, response_model=SuccessEnvelope[GenerateResponse])
async def generate(
    request: Request,
    payload: GenerateRequest,
    principal: Principal = Depends(get_current_principal),
    orchestrator: RunOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Generate one control narrative for a system and record it as a run.

    Failures after the run is created surface with the run id in the error
    details so callers can look the failed run up.
    """
    outcome = await orchestrator.generate(
        principal_id=principal.subject_id,
        system_id=payload.system_id,
        control_id=payload.control_id,
    )
    return success_response(
        request=request,
        data=GenerateResponse(
            run_id=outcome.run_id,
            status=outcome.status,
            system_id=outcome.system_id,
            control_id=outcome.control_id,
            narrative=outcome.narrative,
            evidence=outcome.evidence,
            citations=outcome.citations,
        ),
    )
