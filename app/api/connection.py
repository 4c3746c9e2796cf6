"""Google connection status endpoints."""

import logging
from datetime import datetime, timedelta
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_account_id
from app.core.config import get_settings
from app.core.database import get_db
from app.schemas.responses import ConnectionResponse, ConnectionStatusBody
from app.services.connection_status import derive_connection_status
from app.services.tokens import load_connection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/google/connection", tags=["connection"])


@router.get("", response_model=ConnectionResponse)
async def connection_status(
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    """Report the health of the account's Google connection. 404 when none exists."""
    connection = await load_connection(db, account_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Google not connected")

    settings = get_settings()
    now = datetime.utcnow()
    state = derive_connection_status(
        connection,
        now=now,
        signal_ttl=timedelta(hours=settings.reauth_signal_ttl_hours),
    )
    logger.info(f"Connection status for account {account_id}: {state.status} ({state.reason})")

    return ConnectionResponse(
        connection=ConnectionStatusBody(
            status=state.status,
            reason=state.reason,
            expiresAt=connection.expires_at,
            lastError=state.last_error,
            lastCheckedAt=now,
        )
    )


@router.delete("")
async def disconnect(
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    """Remove the Google connection. Stored reviews and locations are kept."""
    connection = await load_connection(db, account_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Google not connected")

    await db.delete(connection)
    await db.commit()
    logger.info(f"Google disconnected for account {account_id}")
    return {"message": "Google disconnected"}
