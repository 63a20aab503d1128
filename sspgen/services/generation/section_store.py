from __future__ import annotations

import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sspgen.core.errors import PersistenceError
from sspgen.persistence.db import SessionLocal
from sspgen.persistence.repos import sections as sections_repo


logger = logging.getLogger(__name__)


class SectionStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def persist(
        self,
        run_id: str,
        system_id: str,
        control_id: str,
        narrative: str,
        evidence: list[str],
        citations: list[str],
    ) -> str:
        section_id = uuid4().hex
        try:
            async with self._session_factory() as session:
                try:
                    await sections_repo.add_section(
                        session,
                        section_id=section_id,
                        run_id=run_id,
                        system_id=system_id,
                        control_id=control_id,
                        narrative=narrative,
                        evidence=evidence,
                        citations=citations,
                    )
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to persist section for run {run_id}") from exc
        logger.info("section_persisted run_id=%s section_id=%s control_id=%s", run_id, section_id, control_id)
        return section_id
