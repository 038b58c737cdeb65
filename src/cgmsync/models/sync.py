"""Sync audit log and per-user lock lease models."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class SyncLogEntry(SQLModel, table=True):
    """One row per sync run that reached the finalizing stage. Never updated."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    sync_type: str = "manual"  # "manual", "scheduled"
    operation: str = "full_sync"
    status: str = "success"  # "success", "partial"
    records_processed: int = 0
    error_message: Optional[str] = None
    api_calls_made: int = 0
    sync_duration_ms: Optional[int] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)


class SyncLease(SQLModel, table=True):
    """Held while a sync runs for ``user_id``; the primary key is the lock."""

    user_id: str = Field(primary_key=True)
    holder: str
    acquired_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: datetime
