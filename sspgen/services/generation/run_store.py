from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sspgen.core.errors import PersistenceError
from sspgen.domain.state import RUN_STATUS_COMPLETED, RUN_STATUS_FAILED, RUN_STATUS_RUNNING
from sspgen.persistence.db import SessionLocal
from sspgen.persistence.repos import runs as runs_repo
from sspgen.persistence.repos import sections as sections_repo
from sspgen.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WriteFailure:
    """A bookkeeping write that failed after the pipeline outcome was already decided."""

    operation: str
    run_id: str
    message: str


class RunStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory or SessionLocal

    async def create(self, system_id: str, control_id: str) -> str:
        run_id = uuid4().hex
        try:
            async with self._session_factory() as session:
                try:
                    await runs_repo.add_run(
                        session,
                        run_id=run_id,
                        system_id=system_id,
                        control_id=control_id,
                        created_at=_utc_now(),
                        status=RUN_STATUS_RUNNING,
                    )
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to create run for system {system_id}") from exc
        increment_counter("runs_created_total")
        logger.info("run_created run_id=%s system_id=%s control_id=%s", run_id, system_id, control_id)
        return run_id

    async def finalize(self, run_id: str) -> WriteFailure | None:
        # Soft failure: the narrative already exists, so a bookkeeping error is reported, not raised.
        try:
            async with self._session_factory() as session:
                try:
                    updated = await runs_repo.transition_run(
                        session,
                        run_id,
                        status=RUN_STATUS_COMPLETED,
                        completed_at=_utc_now(),
                    )
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        except Exception as exc:  # noqa: BLE001 - finalize failures never mask a successful generation
            increment_counter("run_write_failures_total")
            logger.warning("run_finalize_failed run_id=%s", run_id, exc_info=exc)
            return WriteFailure(operation="finalize", run_id=run_id, message=str(exc) or exc.__class__.__name__)
        if not updated:
            logger.warning("run_finalize_skipped run_id=%s reason=not_active", run_id)
            return WriteFailure(operation="finalize", run_id=run_id, message="run is not in an active state")
        increment_counter("runs_completed_total")
        logger.info("run_completed run_id=%s", run_id)
        return None

    async def fail(self, run_id: str, message: str) -> WriteFailure | None:
        # Best-effort: the original error matters more than this bookkeeping write.
        try:
            async with self._session_factory() as session:
                try:
                    updated = await runs_repo.transition_run(
                        session,
                        run_id,
                        status=RUN_STATUS_FAILED,
                        completed_at=_utc_now(),
                        error_message=message,
                    )
                    if updated:
                        # A failed run never exposes sections from the same attempt.
                        await sections_repo.delete_sections_for_run(session, run_id)
                    await session.commit()
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        except Exception as exc:  # noqa: BLE001 - bookkeeping failure must not replace the primary error
            increment_counter("run_write_failures_total")
            logger.warning("run_fail_write_failed run_id=%s", run_id, exc_info=exc)
            return WriteFailure(operation="fail", run_id=run_id, message=str(exc) or exc.__class__.__name__)
        if not updated:
            logger.warning("run_fail_skipped run_id=%s reason=not_active", run_id)
            return WriteFailure(operation="fail", run_id=run_id, message="run is not in an active state")
        increment_counter("runs_failed_total")
        logger.info("run_failed run_id=%s error=%s", run_id, message)
        return None
