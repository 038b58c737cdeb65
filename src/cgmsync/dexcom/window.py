"""
Incremental sync window.

The window for a run starts at the newest stored reading's system_time, or
``lookback`` before now when the user has no readings yet, and ends now.
Because the start only ever moves forward with what has actually been
stored, re-running after a failure re-requests the same tail and the
insert-or-ignore policy absorbs the overlap. No cursor table is needed.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from cgmsync.dexcom.client import format_dexcom_time
from cgmsync.models.glucose import GlucoseReading

DEFAULT_LOOKBACK = timedelta(hours=24)


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime

    @property
    def start_param(self) -> str:
        return format_dexcom_time(self.start)

    @property
    def end_param(self) -> str:
        return format_dexcom_time(self.end)


def latest_reading_time(engine, user_id: str) -> Optional[datetime]:
    """system_time of the user's newest stored reading, or None."""
    with Session(engine) as s:
        return s.exec(
            select(func.max(GlucoseReading.system_time)).where(
                GlucoseReading.user_id == user_id
            )
        ).one()


def compute_window(
    engine,
    user_id: str,
    *,
    lookback: timedelta = DEFAULT_LOOKBACK,
    clock: Callable[[], datetime] = datetime.utcnow,
) -> SyncWindow:
    """Compute the [start, end) range to request from Dexcom.

    Both bounds are truncated to whole seconds.
    """
    end = clock().replace(microsecond=0)
    latest = latest_reading_time(engine, user_id)
    start = latest if latest is not None else end - lookback
    return SyncWindow(start=start.replace(microsecond=0), end=end)
