"""Per-user vendor credential and sync preferences."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class SyncCredential(SQLModel, table=True):
    """OAuth token set for one user's Dexcom account.

    Rows are provisioned by the OAuth callback flow; the sync engine only
    reads them and touches ``last_sync_at``.
    """

    __table_args__ = (
        # At most one active credential per user
        Index(
            "uq_synccredential_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_at: datetime
    scope: Optional[str] = None  # "offline_access"
    is_active: bool = True
    last_sync_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SyncSettings(SQLModel, table=True):
    """Which sync phases run for a user, plus the last outcome."""

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(unique=True, index=True)
    sync_sensor_data: bool = True  # glucose readings
    sync_device_status: bool = True  # devices + sensor sessions
    last_successful_sync: Optional[datetime] = None
    last_sync_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)
