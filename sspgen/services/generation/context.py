from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sspgen.core.errors import NotFoundError, PersistenceError
from sspgen.persistence.db import SessionLocal
from sspgen.persistence.repos import intakes as intakes_repo
from sspgen.persistence.repos import systems as systems_repo


@dataclass(frozen=True)
class SystemProfile:
    id: str
    name: str
    impact_level: str
    owner_id: str


@dataclass(frozen=True)
class GenerationContext:
    system: SystemProfile
    intake: dict[str, Any] = field(default_factory=dict)


class ContextAssembler:
    """Loads the system profile and its optional intake answers. Read-only."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def load(self, system_id: str, *, owner_id: str | None = None) -> GenerationContext:
        try:
            async with self._session_factory() as session:
                if owner_id is None:
                    system = await systems_repo.get_system(session, system_id)
                else:
                    system = await systems_repo.get_system_for_owner(session, system_id, owner_id)
                if system is None:
                    raise NotFoundError(f"System not found: {system_id}")
                intake = await intakes_repo.get_intake(session, system_id)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load context for system {system_id}") from exc

        profile = SystemProfile(
            id=system.id,
            name=system.name,
            impact_level=system.impact_level,
            owner_id=system.owner_id,
        )
        # Intake is optional context; its absence means an empty document.
        answers = dict(intake.answers_json) if intake is not None and intake.answers_json else {}
        return GenerationContext(system=profile, intake=answers)
