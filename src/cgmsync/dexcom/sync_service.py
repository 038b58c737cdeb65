"""
DexcomSyncService: orchestrates one incremental sync run for one user.

States:

  IDLE → VALIDATING ─┬─→ (raise PreconditionError: no writes, no log row)
                     └─→ INGESTING → RECONCILING (if enabled) → FINALIZING → DONE

Flow:
  1. Validate the credential (local expiry + one /users/self probe)
  2. Ingest EGVs for the incremental window      (if sync_sensor_data)
  3. Reconcile devices / sensor sessions         (if sync_device_status)
  4. Finalize: write one SyncLogEntry (success|partial), stamp
     SyncCredential.last_sync_at and SyncSettings.last_successful_sync /
     last_sync_error
  5. Notify the backfill job (errors swallowed)

Phases run sequentially on one client so vendor quota use stays
predictable. Once ingestion starts, the run always reaches FINALIZING:
vendor and item failures are collected in SyncResult.errors. There is no
rollback across phases; every stored row stays committed.

While a UserSyncLock is set, the run renews its lease on entering each
phase after validation.

Retries are left to the caller. The window starts at the newest stored
reading and inserts ignore known recordIds, so re-running is safe.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlmodel import Session

from cgmsync.dexcom.backfill import NullBackfillTrigger
from cgmsync.dexcom.client import DexcomClient
from cgmsync.dexcom.credentials import CredentialStore
from cgmsync.dexcom.auth import TokenValidator
from cgmsync.dexcom.ingest import ReadingIngestor
from cgmsync.dexcom.reconcile import SESSION_LOOKBACK, SessionReconciler
from cgmsync.dexcom.window import DEFAULT_LOOKBACK, compute_window
from cgmsync.models.sync import SyncLogEntry

logger = logging.getLogger(__name__)


class SyncState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating_credential"
    INGESTING = "ingesting"
    RECONCILING = "reconciling"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class SyncResult:
    """Aggregated counts for one run; ``errors`` holds item/phase failures."""

    sensors_processed: int = 0
    devices_processed: int = 0
    glucose_readings: int = 0
    new_sensors: int = 0
    updated_sensors: int = 0
    errors: List[str] = field(default_factory=list)
    api_calls: int = 0
    state: SyncState = SyncState.IDLE

    @property
    def status(self) -> str:
        return "partial" if self.errors else "success"

    @property
    def records_processed(self) -> int:
        return self.glucose_readings + self.new_sensors + self.updated_sensors


class DexcomSyncService:
    """Runs validate → ingest → reconcile → finalize for one user at a time."""

    def __init__(
        self,
        engine,
        client_factory: Callable[[str], DexcomClient],
        *,
        backfill=None,
        lock=None,
        lookback: timedelta = DEFAULT_LOOKBACK,
        session_lookback: timedelta = SESSION_LOOKBACK,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Args:
            engine: SQLAlchemy engine (SQLModel create_engine result).
            client_factory: ``access_token -> DexcomClient``.
            backfill: Async ``(user_id, since)`` callable; defaults to a no-op.
            lock: UserSyncLock, or None to run without per-user exclusion.
            lookback: Window length when the user has no stored readings.
            session_lookback: Fixed range for sensor session queries.
            clock: Returns naive UTC now; injectable for tests.
        """
        self.engine = engine
        self.store = CredentialStore(engine)
        self.validator = TokenValidator(self.store, client_factory, clock)
        self.ingestor = ReadingIngestor(engine)
        self.reconciler = SessionReconciler(engine, lookback=session_lookback, clock=clock)
        self.backfill = backfill or NullBackfillTrigger()
        self.lock = lock
        self._client_factory = client_factory
        self._lookback = lookback
        self._clock = clock

    async def sync_user(self, user_id: str, *, sync_type: str = "manual") -> SyncResult:
        """Run one full sync for ``user_id``.

        Args:
            user_id: Target user.
            sync_type: "manual" or "scheduled", recorded on the log row.

        Returns:
            The aggregated SyncResult (status success or partial).

        Raises:
            PreconditionError: credential missing, expired or rejected.
            SyncInProgressError: another run holds this user's lock.
        """
        if self.lock is None:
            return await self._run(user_id, sync_type)
        async with self.lock.hold(user_id) as lease:
            return await self._run(user_id, sync_type, lease)

    async def _run(self, user_id: str, sync_type: str, lease=None) -> SyncResult:
        started = time.monotonic()
        result = SyncResult()

        self._enter(result, SyncState.VALIDATING, user_id)
        credential = self.validator.require_active(user_id)
        settings = self.store.get_settings(user_id)

        window = None
        async with self._client_factory(credential.access_token) as client:
            await self.validator.probe(user_id, client)

            self._enter(result, SyncState.INGESTING, user_id, lease)
            if settings.sync_sensor_data:
                try:
                    window = compute_window(
                        self.engine, user_id, lookback=self._lookback, clock=self._clock
                    )
                    ingested = await self.ingestor.ingest(user_id, window, client)
                    result.glucose_readings = ingested.count
                    result.errors.extend(ingested.errors)
                except Exception as exc:
                    logger.exception("Glucose ingestion crashed for user %s", user_id)
                    result.errors.append(f"Glucose readings: {exc}")

            if settings.sync_device_status:
                self._enter(result, SyncState.RECONCILING, user_id, lease)
                try:
                    reconciled = await self.reconciler.reconcile(user_id, client)
                    result.devices_processed = reconciled.devices_processed
                    result.sensors_processed = reconciled.sessions_processed
                    result.new_sensors = reconciled.new_sensors
                    result.updated_sensors = reconciled.updated_sensors
                    result.errors.extend(reconciled.errors)
                except Exception as exc:
                    logger.exception("Sensor reconciliation crashed for user %s", user_id)
                    result.errors.append(f"Sensor sessions: {exc}")

            result.api_calls = client.api_calls

        self._enter(result, SyncState.FINALIZING, user_id, lease)
        self._finalize(user_id, sync_type, result, started)

        since = window.start if window is not None else self._clock() - self._lookback
        await self._trigger_backfill(user_id, since)

        self._enter(result, SyncState.DONE, user_id)
        logger.info(
            "Dexcom sync %s for user %s: %d readings, %d new / %d updated sensors, %d errors",
            result.status, user_id, result.glucose_readings,
            result.new_sensors, result.updated_sensors, len(result.errors),
        )
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    @staticmethod
    def _enter(result: SyncResult, state: SyncState, user_id: str, lease=None) -> None:
        logger.debug("User %s: %s → %s", user_id, result.state.value, state.value)
        result.state = state
        if lease is not None:
            lease.renew()

    def _finalize(self, user_id: str, sync_type: str, result: SyncResult, started: float) -> None:
        now = self._clock()
        error_message: Optional[str] = "; ".join(result.errors) if result.errors else None

        with Session(self.engine) as s:
            s.add(
                SyncLogEntry(
                    user_id=user_id,
                    sync_type=sync_type,
                    operation="full_sync",
                    status=result.status,
                    records_processed=result.records_processed,
                    error_message=error_message,
                    api_calls_made=result.api_calls,
                    sync_duration_ms=int((time.monotonic() - started) * 1000),
                    created_at=now,
                )
            )
            s.commit()

        self.store.touch_last_synced(user_id, now)
        self.store.record_sync_outcome(user_id, now, error_message)

    async def _trigger_backfill(self, user_id: str, since: datetime) -> None:
        try:
            await self.backfill(user_id, since)
        except Exception:
            logger.exception("Backfill trigger failed for user %s (ignored)", user_id)
