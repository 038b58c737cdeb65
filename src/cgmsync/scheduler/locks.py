"""
Per-user mutual exclusion for sync runs.

Two overlapping runs for one user would race on the reconciler's
read-then-write of SensorRecord, so every run holds a lease row in the
SyncLease table. The primary key on user_id makes acquisition atomic
across processes. A lease past its expires_at belongs to a crashed run
and may be taken over; a live run renews its lease between phases.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import AsyncIterator, Callable

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session

from cgmsync.errors import SyncInProgressError
from cgmsync.models.sync import SyncLease

logger = logging.getLogger(__name__)


class UserSyncLock:
    """Lease-based lock keyed by user id.

    Usage:
        lock = UserSyncLock(engine)
        async with lock.hold(user_id) as lease:
            ...   # raises SyncInProgressError if another run holds it
            lease.renew()
    """

    def __init__(
        self,
        engine,
        ttl_seconds: int = 300,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self._ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator["Lease"]:
        holder = uuid.uuid4().hex
        if not self.try_acquire(user_id, holder):
            raise SyncInProgressError(user_id)
        try:
            yield Lease(self, user_id, holder)
        finally:
            self.release(user_id, holder)

    def try_acquire(self, user_id: str, holder: str) -> bool:
        now = self._clock()
        with Session(self.engine) as s:
            # Clear a stale lease; a live one is left alone and the insert fails
            s.execute(
                delete(SyncLease).where(
                    SyncLease.user_id == user_id,
                    SyncLease.expires_at <= now,
                )
            )
            s.add(
                SyncLease(
                    user_id=user_id,
                    holder=holder,
                    acquired_at=now,
                    expires_at=now + self._ttl,
                )
            )
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                logger.info("Sync already running for user %s", user_id)
                return False
        return True

    def renew(self, user_id: str, holder: str) -> bool:
        """Push the lease expiry out by one TTL. False if the lease was lost."""
        now = self._clock()
        with Session(self.engine) as s:
            renewed = s.execute(
                update(SyncLease)
                .where(SyncLease.user_id == user_id, SyncLease.holder == holder)
                .values(expires_at=now + self._ttl)
            ).rowcount
            s.commit()
        if not renewed:
            logger.warning("Sync lease for user %s was taken over", user_id)
        return bool(renewed)

    def release(self, user_id: str, holder: str) -> None:
        with Session(self.engine) as s:
            s.execute(
                delete(SyncLease).where(
                    SyncLease.user_id == user_id,
                    SyncLease.holder == holder,
                )
            )
            s.commit()


@dataclass
class Lease:
    lock: UserSyncLock
    user_id: str
    holder: str

    def renew(self) -> bool:
        return self.lock.renew(self.user_id, self.holder)
