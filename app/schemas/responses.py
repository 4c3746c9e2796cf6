"""Pydantic response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel
from typing import Any


class LocationResultResponse(BaseModel):
    """Outcome of one location within a batch sync."""
    location_id: str
    status: str  # "success", "error", "not_attempted"
    inserted: int
    updated: int
    skipped: int
    error: str | None
    error_kind: str | None = None


class SyncBatchResponse(BaseModel):
    """Aggregated batch sync response."""
    runId: int | None
    status: str  # "success", "partial_failure", "failure"
    locationsCount: int
    reviewsCount: int
    locationsFailed: int
    locationsNotAttempted: int
    inserted: int
    updated: int
    skipped: int
    locationResults: list[LocationResultResponse]


class SyncRunResponse(BaseModel):
    """Sync run history entry."""
    id: int
    run_type: str
    status: str
    account_id: str | None
    location_id: str | None
    started_at: datetime
    finished_at: datetime | None
    error: str | None
    meta: dict[str, Any] | None

    class Config:
        from_attributes = True


class ConnectionStatusBody(BaseModel):
    """Normalized Google connection state."""
    status: str  # "connected", "disconnected", "reauth_required", "unknown"
    reason: str  # "ok", "token_revoked", "missing_refresh_token", "expired", "unknown", "no_connection"
    expiresAt: datetime | None = None
    lastError: str | None = None
    lastCheckedAt: datetime


class ConnectionResponse(BaseModel):
    """Connection status probe response."""
    connection: ConnectionStatusBody
