"""Sync run model for tracking sync attempts."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from app.core.database import Base


class SyncRun(Base):
    """One record per sync attempt, closed exactly once."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_type = Column(String, nullable=False)  # "reviews_sync", "reviews_sync_cron"
    status = Column(String, nullable=False)  # "running", "success", "partial_failure", "failure"
    account_id = Column(String, nullable=True, index=True)
    location_id = Column(String, nullable=True)  # null for batch-level rows
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    meta = Column(JSON, nullable=True)
