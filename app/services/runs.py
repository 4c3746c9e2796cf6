"""Run history - append-only records of sync attempts."""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.sync_run import SyncRun

logger = logging.getLogger(__name__)

RUNNING = "running"
SUCCESS = "success"
PARTIAL_FAILURE = "partial_failure"
FAILURE = "failure"
TERMINAL_STATUSES = frozenset({SUCCESS, PARTIAL_FAILURE, FAILURE})


class RunAlreadyClosed(Exception):
    """Raised when closing a run that already reached a terminal status."""


class RunHistoryRecorder:
    """Opens and closes SyncRun rows, each in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def record(
        self,
        run_type: str,
        account_id: Optional[str] = None,
        location_id: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> SyncRun:
        """Create a run in ``running`` status."""
        async with self.session_factory() as session:
            run = SyncRun(
                run_type=run_type,
                status=RUNNING,
                account_id=account_id,
                location_id=location_id,
                started_at=datetime.utcnow(),
                meta=meta,
            )
            session.add(run)
            await session.commit()
            logger.info(f"Sync run {run.id} started ({run_type}, account={account_id})")
            return run

    async def close(
        self,
        run_id: int,
        status: str,
        error: Optional[str] = None,
        meta: Optional[dict[str, Any]] = None,
    ) -> SyncRun:
        """
        Move a run to its terminal status. Only allowed once per run.

        Raises:
            ValueError: status is not terminal
            LookupError: run does not exist
            RunAlreadyClosed: run was already closed
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Cannot close run with non-terminal status {status!r}")

        async with self.session_factory() as session:
            run = await session.get(SyncRun, run_id)
            if run is None:
                raise LookupError(f"Sync run {run_id} not found")
            if run.finished_at is not None or run.status != RUNNING:
                raise RunAlreadyClosed(f"Sync run {run_id} is already closed ({run.status})")

            run.status = status
            run.error = error
            run.finished_at = datetime.utcnow()
            if meta is not None:
                run.meta = {**(run.meta or {}), **meta}
            await session.commit()

        log = logger.info if status == SUCCESS else logger.warning
        log(f"Sync run {run_id} finished: {status}" + (f" ({error})" if error else ""))
        return run


async def list_runs(session: AsyncSession, account_id: Optional[str] = None, limit: int = 50) -> list[SyncRun]:
    """Most recent runs first."""
    query = select(SyncRun).order_by(desc(SyncRun.started_at), desc(SyncRun.id)).limit(limit)
    if account_id is not None:
        query = query.where(SyncRun.account_id == account_id)
    result = await session.execute(query)
    return list(result.scalars())


async def get_run(session: AsyncSession, run_id: int) -> Optional[SyncRun]:
    return await session.get(SyncRun, run_id)
