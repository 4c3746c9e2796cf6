"""Shared FastAPI dependencies."""

from typing import AsyncGenerator

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.database import get_session_factory
from app.services.sync import SyncOrchestrator, create_orchestrator


async def get_account_id(x_account_id: str | None = Header(default=None)) -> str:
    """Resolve the calling account. Session validation happens upstream."""
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail="unauthenticated")
    return x_account_id.strip()


async def get_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[SyncOrchestrator, None]:
    """Build a sync orchestrator for the request and close its HTTP clients afterwards."""
    orchestrator = create_orchestrator(session_factory)
    try:
        yield orchestrator
    finally:
        await orchestrator.close()
