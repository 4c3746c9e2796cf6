# Database models
from app.models.database import (
    Connection,
    Location,
    Review,
)
from app.models.sync_run import SyncRun

__all__ = [
    "Connection",
    "Location",
    "Review",
    "SyncRun",
]
