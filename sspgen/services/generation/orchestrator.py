from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sspgen.core.config import Settings, get_settings
from sspgen.core.errors import BadRequestError, RunFailedError, UnauthorizedError
from sspgen.domain.state import RUN_STATUS_COMPLETED, RUN_STATUS_RUNNING
from sspgen.persistence.db import SessionLocal
from sspgen.providers.llm.factory import get_llm_provider
from sspgen.services.generation.context import ContextAssembler, GenerationContext
from sspgen.services.generation.controls import get_control
from sspgen.services.generation.generator import GenerationConfig, NarrativeGenerator
from sspgen.services.generation.run_store import RunStore, WriteFailure
from sspgen.services.generation.section_store import SectionStore
from sspgen.services.resilience import get_circuit_breaker


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GenerationOutcome:
    run_id: str
    system_id: str
    control_id: str
    status: str
    narrative: str
    evidence: list[str]
    citations: list[str]
    section_id: str | None = None
    write_failures: tuple[WriteFailure, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class _StartedRun:
    run_id: str
    control_id: str
    context: GenerationContext


class RunOrchestrator:
    """Sequences context -> run -> generation -> section -> finalize.

    Once a run exists, any exception or cancellation after creation marks it
    failed; exceptions are re-raised as RunFailedError. The run can only stay
    `running` when a finalize or fail write itself is lost, and that loss is
    reported as a WriteFailure.
    """

    def __init__(
        self,
        *,
        generator: NarrativeGenerator,
        context_assembler: ContextAssembler | None = None,
        run_store: RunStore | None = None,
        section_store: SectionStore | None = None,
        default_control_id: str = "AC-2",
    ) -> None:
        self._generator = generator
        self._context = context_assembler or ContextAssembler()
        self._runs = run_store or RunStore()
        self._sections = section_store or SectionStore()
        self._default_control_id = default_control_id

    async def _start(self, principal_id: str | None, system_id: str | None, control_id: str | None) -> _StartedRun:
        # Every check here happens before any write; a failure leaves nothing to roll back.
        if not principal_id:
            raise UnauthorizedError("Unauthorized")
        if not system_id or not str(system_id).strip():
            raise BadRequestError("Missing required field: system_id")
        control = get_control(control_id or self._default_control_id)
        context = await self._context.load(str(system_id).strip(), owner_id=principal_id)
        run_id = await self._runs.create(context.system.id, control.control_id)
        return _StartedRun(run_id=run_id, control_id=control.control_id, context=context)

    async def create_run(
        self,
        *,
        principal_id: str | None,
        system_id: str | None,
        control_id: str | None = None,
    ) -> str:
        started = await self._start(principal_id, system_id, control_id)
        return started.run_id

    async def generate(
        self,
        *,
        principal_id: str | None,
        system_id: str | None,
        control_id: str | None = None,
    ) -> GenerationOutcome:
        started = await self._start(principal_id, system_id, control_id)
        run_id = started.run_id
        system = started.context.system
        try:
            result = await self._generator.generate(system, started.context.intake, started.control_id)
            section_id = await self._sections.persist(
                run_id,
                system.id,
                started.control_id,
                result.narrative,
                result.evidence,
                result.citations,
            )
        except asyncio.CancelledError:
            # Request torn down mid-flight; still leave the run in a terminal state.
            await self._runs.fail(run_id, "Run cancelled before completion")
            raise
        except Exception as exc:  # noqa: BLE001 - every failure after run creation must be recorded
            message = str(exc) or exc.__class__.__name__
            logger.warning(
                "run_pipeline_failed run_id=%s system_id=%s error_type=%s error=%s",
                run_id,
                system.id,
                exc.__class__.__name__,
                message,
            )
            write_failure = await self._runs.fail(run_id, message)
            write_failures = (write_failure,) if write_failure is not None else ()
            raise RunFailedError(run_id, exc, write_failures) from exc

        try:
            write_failure = await self._runs.finalize(run_id)
        except asyncio.CancelledError:
            # fail() is a no-op if the completed status was already committed.
            await self._runs.fail(run_id, "Run cancelled before completion")
            raise
        return GenerationOutcome(
            run_id=run_id,
            system_id=system.id,
            control_id=started.control_id,
            status=RUN_STATUS_COMPLETED if write_failure is None else RUN_STATUS_RUNNING,
            narrative=result.narrative,
            evidence=result.evidence,
            citations=result.citations,
            section_id=section_id,
            write_failures=(write_failure,) if write_failure is not None else (),
        )


def build_orchestrator(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> RunOrchestrator:
    settings = settings or get_settings()
    session_factory = session_factory or SessionLocal
    provider = get_llm_provider(settings)
    generator = NarrativeGenerator(
        provider,
        GenerationConfig.from_settings(settings),
        breaker=get_circuit_breaker(f"llm.{getattr(provider, 'name', 'unknown')}"),
    )
    return RunOrchestrator(
        generator=generator,
        context_assembler=ContextAssembler(session_factory),
        run_store=RunStore(session_factory),
        section_store=SectionStore(session_factory),
        default_control_id=settings.default_control_id,
    )
