from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sspgen.apps.api.deps import Principal, get_current_principal, get_db
from sspgen.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from sspgen.apps.api.response import SuccessEnvelope, success_response
from sspgen.core.errors import PersistenceError
from sspgen.domain.models import Run, System
from sspgen.domain.state import RUN_STATUSES
from sspgen.services.resilience import circuit_breaker_states
from sspgen.services.telemetry import (
    counters_snapshot,
    external_call_summary,
    request_latency_summary,
)


router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)

_METRICS_WINDOW_S = 3600


@router.get("/metrics", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_metrics(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Run counts are scoped to the caller's systems; process telemetry is global.
    try:
        result = await db.execute(
            select(Run.status, func.count())
            .join(System, Run.system_id == System.id)
            .where(System.owner_id == principal.subject_id)
            .group_by(Run.status)
        )
        by_status = {status: int(count) for status, count in result.all()}
    except SQLAlchemyError as exc:
        raise PersistenceError("Database error while aggregating run metrics") from exc

    payload = {
        "runs_by_status": {status: by_status.get(status, 0) for status in RUN_STATUSES},
        "counters": counters_snapshot(),
        "latency_ms": request_latency_summary(_METRICS_WINDOW_S),
        "external_call_latency_ms": external_call_summary(_METRICS_WINDOW_S),
        "circuit_breaker_state": circuit_breaker_states(),
    }
    return success_response(request=request, data=payload)
