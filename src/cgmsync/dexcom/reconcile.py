"""
Sensor session reconciliation.

Dexcom reports devices per user and sensor sessions per user (dataRange
has no device parameter), so the session list is fetched once over a fixed
lookback and each session is attributed to a single device: its own
transmitter id when it carries one, otherwise every device that has one.
A session reached through more than one device is applied once. Each
session is matched to a SensorRecord by (user_id, serial_number) among
non-deleted rows:

  found      → append a provenance line to notes, refresh vendor columns
  not found  → insert an auto-detected SensorRecord with the default
               Dexcom model (sessions still in warmup are skipped)

User-entered content (notes text, lot number, dates) is never overwritten.
Failures are isolated per device and per session. A device without a
transmitter id (a receiver, say) never takes the dataRange summary, nor
sessions without a transmitter id while another device has one.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlmodel import Session, select

from cgmsync.db.inserts import InsertStatus, insert_or_ignore
from cgmsync.dexcom.client import DexcomAPIError, DexcomClient
from cgmsync.dexcom.normalizer import (
    DeviceRecord,
    SensorSession,
    is_data_range_summary,
    normalize_device,
    normalize_session,
    session_transmitter_id,
    unwrap_records,
    unwrap_sessions,
)
from cgmsync.models.sensor import SensorModel, SensorRecord

logger = logging.getLogger(__name__)

MANUFACTURER = "Dexcom"
SESSION_LOOKBACK = timedelta(days=30)


@dataclass
class ReconcileResult:
    devices_processed: int = 0
    sessions_processed: int = 0
    new_sensors: int = 0
    updated_sensors: int = 0
    errors: List[str] = field(default_factory=list)


class SessionReconciler:
    """Creates or updates SensorRecord rows from Dexcom sessions."""

    def __init__(
        self,
        engine,
        *,
        lookback: timedelta = SESSION_LOOKBACK,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.engine = engine
        self._lookback = lookback
        self._clock = clock

    async def reconcile(self, user_id: str, client: DexcomClient) -> ReconcileResult:
        result = ReconcileResult()
        now = self._clock().replace(microsecond=0)
        start = now - self._lookback
        model_ids: Dict[Optional[str], int] = {}

        try:
            raw_devices = await client.get_devices()
            device_items = unwrap_records(raw_devices, "devices", "records")
        except (DexcomAPIError, ValueError) as exc:
            logger.warning("Device fetch failed for user %s: %s", user_id, exc)
            result.errors.append(f"Devices: {exc}")
            return result

        devices: List[Tuple[str, DeviceRecord]] = []
        for index, item in enumerate(device_items):
            try:
                device = normalize_device(item)
            except ValueError as exc:
                result.errors.append(f"Device #{index + 1}: {exc}")
                continue
            devices.append((device.transmitter_id or f"#{index + 1}", device))
        result.devices_processed = len(devices)
        known_ids = {d.transmitter_id for _, d in devices if d.transmitter_id}

        # dataRange is per user: one successful response serves every device
        session_items: Optional[List[Dict]] = None
        reconciled: Set[Tuple[str, Optional[str], Optional[datetime]]] = set()

        for label, device in devices:
            if session_items is None:
                try:
                    session_items = unwrap_sessions(await client.get_data_range(start, now))
                except (DexcomAPIError, ValueError) as exc:
                    logger.warning("Session fetch failed for device %s: %s", label, exc)
                    result.errors.append(f"Device {label}: {exc}")
                    continue

            for s_index, s_item in enumerate(session_items):
                if not _belongs_to(s_item, device, known_ids):
                    continue
                try:
                    session = normalize_session(s_item, device)
                    key = (session.serial_number, session.session_id, session.started_at)
                    if key in reconciled:
                        logger.debug(
                            "Session %s of sensor %s already reconciled this run",
                            session.session_id, session.serial_number,
                        )
                        continue
                    reconciled.add(key)
                    result.sessions_processed += 1
                    self._apply(user_id, session, device, now, model_ids, result)
                except Exception as exc:
                    logger.warning(
                        "Session #%d of device %s failed for user %s: %s",
                        s_index + 1, label, user_id, exc,
                    )
                    result.errors.append(f"Device {label} session #{s_index + 1}: {exc}")

        logger.info(
            "Reconciled user %s: %d devices, %d new sensors, %d updated, %d errors",
            user_id, result.devices_processed, result.new_sensors,
            result.updated_sensors, len(result.errors),
        )
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _apply(
        self,
        user_id: str,
        session: SensorSession,
        device: DeviceRecord,
        now: datetime,
        model_ids: Dict[Optional[str], int],
        result: ReconcileResult,
    ) -> None:
        if self._update_existing(user_id, session, now):
            result.updated_sensors += 1
            return

        if session.status == "warmup":
            logger.info("Skipping sensor %s still in warmup", session.serial_number)
            return

        generation = session.transmitter_generation
        if generation not in model_ids:
            model_ids[generation] = self._resolve_model_id(generation)

        row = SensorRecord(
            user_id=user_id,
            serial_number=session.serial_number,
            lot_number=f"DEXCOM-{session.session_id[:8]}" if session.session_id else None,
            date_added=session.started_at or now,
            sensor_model_id=model_ids[generation],
            dexcom_sensor_id=session.session_id,
            dexcom_activation_time=session.started_at,
            dexcom_expiry_time=session.stopped_at,
            dexcom_device_serial=generation,
            dexcom_last_reading_time=session.last_reading_at,
            auto_detected=True,
            sync_enabled=True,
            notes=_provenance(now, "Auto-detected from Dexcom", session, device),
            created_at=now,
            updated_at=now,
        )
        outcome = insert_or_ignore(
            self.engine,
            row,
            identity={
                "user_id": user_id,
                "serial_number": session.serial_number,
                "is_deleted": False,
            },
        )
        if outcome.status is InsertStatus.INSERTED:
            result.new_sensors += 1
        elif outcome.status is InsertStatus.ALREADY_EXISTS:
            # Lost a race with a concurrent insert: take the update path
            self._update_existing(user_id, session, now)
            result.updated_sensors += 1
        else:
            raise RuntimeError(outcome.error)

    def _update_existing(self, user_id: str, session: SensorSession, now: datetime) -> bool:
        """Append provenance to the live matching sensor. False if none."""
        with Session(self.engine) as s:
            sensor = s.exec(
                select(SensorRecord).where(
                    SensorRecord.user_id == user_id,
                    SensorRecord.serial_number == session.serial_number,
                    SensorRecord.is_deleted == False,  # noqa: E712
                )
            ).first()
            if sensor is None:
                return False

            line = _provenance(now, "Synced from Dexcom", session)
            sensor.notes = f"{sensor.notes}\n{line}" if sensor.notes else line
            if session.session_id:
                sensor.dexcom_sensor_id = session.session_id
            if session.started_at:
                sensor.dexcom_activation_time = session.started_at
            if session.stopped_at:
                sensor.dexcom_expiry_time = session.stopped_at
            if session.last_reading_at:
                sensor.dexcom_last_reading_time = session.last_reading_at
            if session.transmitter_generation:
                sensor.dexcom_device_serial = session.transmitter_generation
            sensor.sync_enabled = True
            sensor.updated_at = now
            s.add(sensor)
            s.commit()
        return True

    def _resolve_model_id(self, generation: Optional[str]) -> int:
        """Pick the Dexcom catalogue entry matching the transmitter generation.

        Falls back to the first active Dexcom model.

        Raises:
            LookupError: if the catalogue has no active Dexcom model.
        """
        with Session(self.engine) as s:
            models = s.exec(
                select(SensorModel)
                .where(
                    SensorModel.manufacturer == MANUFACTURER,
                    SensorModel.is_active == True,  # noqa: E712
                )
                .order_by(SensorModel.id)
            ).all()
        if not models:
            raise LookupError("No active Dexcom sensor model configured")
        if generation:
            wanted = generation.upper()
            for model in models:
                if model.model_name.upper() in wanted:
                    return model.id
        return models[0].id


def _provenance(
    now: datetime,
    action: str,
    session: SensorSession,
    device: Optional[DeviceRecord] = None,
) -> str:
    parts = [f"session {session.session_id or '-'}", f"status {session.status or 'unknown'}"]
    if device is not None and device.display_device:
        parts.append(f"via {device.display_device}")
    return f"[{now:%Y-%m-%d %H:%M:%S} UTC] {action}: " + ", ".join(parts)


def _belongs_to(item: Any, device: DeviceRecord, known_ids: Set[str]) -> bool:
    """Whether a user-level session item is reconciled under ``device``."""
    own = session_transmitter_id(item)
    if own is not None:
        return own == device.transmitter_id or own not in known_ids
    if device.transmitter_id:
        return True
    if known_ids or is_data_range_summary(item):
        logger.debug("Session item has no transmitter to attribute to device without id")
        return False
    return True
