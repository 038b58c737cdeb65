"""Read/update access to SyncCredential and SyncSettings rows."""
from datetime import datetime
from typing import List, Optional

from sqlmodel import Session, select

from cgmsync.models.credential import SyncCredential, SyncSettings


class CredentialStore:
    """Small repository over the credential and settings tables.

    Each method opens its own session; returned rows are detached copies.
    """

    def __init__(self, engine):
        self.engine = engine

    def get_active(self, user_id: str) -> Optional[SyncCredential]:
        """Return the user's active credential, or None."""
        with Session(self.engine) as s:
            return s.exec(
                select(SyncCredential).where(
                    SyncCredential.user_id == user_id,
                    SyncCredential.is_active == True,  # noqa: E712
                )
            ).first()

    def list_syncable(self, now: datetime, limit: int) -> List[SyncCredential]:
        """Active, unexpired credentials, least recently synced first."""
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncCredential)
                .where(
                    SyncCredential.is_active == True,  # noqa: E712
                    SyncCredential.expires_at > now,
                )
                .order_by(SyncCredential.last_sync_at.asc().nulls_first(), SyncCredential.id)
                .limit(limit)
            ).all())

    def get_settings(self, user_id: str) -> SyncSettings:
        """Return stored settings, or unsaved defaults if the user has none."""
        with Session(self.engine) as s:
            settings = s.exec(
                select(SyncSettings).where(SyncSettings.user_id == user_id)
            ).first()
        return settings or SyncSettings(user_id=user_id)

    def touch_last_synced(self, user_id: str, at: datetime) -> None:
        """Stamp last_sync_at on the user's active credential."""
        with Session(self.engine) as s:
            credential = s.exec(
                select(SyncCredential).where(
                    SyncCredential.user_id == user_id,
                    SyncCredential.is_active == True,  # noqa: E712
                )
            ).first()
            if credential is None:
                return
            credential.last_sync_at = at
            credential.updated_at = at
            s.add(credential)
            s.commit()

    def record_sync_outcome(self, user_id: str, at: datetime, error: Optional[str]) -> None:
        """Upsert SyncSettings.last_successful_sync / last_sync_error."""
        with Session(self.engine) as s:
            settings = s.exec(
                select(SyncSettings).where(SyncSettings.user_id == user_id)
            ).first()
            if settings is None:
                settings = SyncSettings(user_id=user_id)
            settings.last_successful_sync = at
            settings.last_sync_error = error
            settings.updated_at = at
            s.add(settings)
            s.commit()
