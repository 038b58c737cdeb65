"""
Dexcom API response normalizer.

Converts raw JSON from the Dexcom client into canonical dataclasses. No DB
access here: the ingestor and reconciler handle persistence and only ever
see EGVRecord / DeviceRecord / SensorSession.

Dexcom has shipped several response envelopes for the same endpoints:

  egvs:       a bare list, {"egvs": [...]} (v2) or {"records": [...]} (v3)
  devices:    a bare list, {"devices": [...]} or {"records": [...]}
  dataRange:  a list of session dicts, {"sessions"/"records": [...]}, or the
              v3 summary object {"egvs": {"start": {...}, "end": {...}}, ...}

unwrap_records() / unwrap_sessions() are the only places that look at the
envelope. Per-item functions raise ValueError on a malformed item so the
caller can record it and move on to the next one.

Glucose values appear either flat ({"value": 120, "unit": "mg/dL"}) or
keyed by unit ({"value": {"mg/dL": 120}} or {"mg/dL": 120}).
"""
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

UNIT_KEYS = ("mg/dL", "mmol/L")
_FRACTION_RE = re.compile(r"(T\d{2}:\d{2}:\d{2})\.\d+")


@dataclass
class EGVRecord:
    record_id: str
    value: float
    unit: str
    system_time: datetime
    display_time: Optional[datetime] = None
    trend: Optional[str] = None
    trend_rate: Optional[float] = None
    rate_unit: Optional[str] = None
    transmitter_id: Optional[str] = None
    transmitter_generation: Optional[str] = None
    device_metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class DeviceRecord:
    transmitter_id: Optional[str]
    transmitter_generation: Optional[str] = None
    display_device: Optional[str] = None
    display_app: Optional[str] = None
    last_upload_at: Optional[datetime] = None


@dataclass
class SensorSession:
    serial_number: str
    session_id: Optional[str] = None
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    last_reading_at: Optional[datetime] = None
    status: Optional[str] = None  # "active", "expired", "stopped", "warmup"
    transmitter_generation: Optional[str] = None


# ─── Envelopes ────────────────────────────────────────────────────────────────

def unwrap_records(raw: Any, *keys: str) -> List[Dict[str, Any]]:
    """Return the list of item dicts inside any known response envelope.

    Args:
        raw: Parsed JSON body.
        keys: Envelope keys to try in order, e.g. ("egvs", "records").

    Raises:
        ValueError: if the body is not a list and no key holds a list.
    """
    if raw is None:
        return []
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        for key in keys:
            if key not in raw:
                continue
            value = raw[key]
            if value is None:
                return []
            if isinstance(value, list):
                return value
    raise ValueError(
        f"Unrecognized response shape (expected list or one of {list(keys)}): "
        f"{type(raw).__name__} with keys {sorted(raw) if isinstance(raw, dict) else '-'}"
    )


def is_data_range_summary(item: Any) -> bool:
    """True for the v3 dataRange summary object ({"egvs": {start, end}})."""
    return isinstance(item, dict) and isinstance(item.get("egvs"), dict)


def session_transmitter_id(item: Any) -> Optional[str]:
    """The transmitter or serial id a session item names itself, if any."""
    if not isinstance(item, dict) or is_data_range_summary(item):
        return None
    serial = item.get("transmitterId") or item.get("serialNumber")
    return str(serial) if serial else None


def unwrap_sessions(raw: Any) -> List[Dict[str, Any]]:
    """Session items from a dataRange response; the v3 summary is one item."""
    if is_data_range_summary(raw):
        return [raw]
    return unwrap_records(raw, "sessions", "records")


# ─── Items ────────────────────────────────────────────────────────────────────

def parse_dexcom_datetime(value: Any) -> datetime:
    """Parse a Dexcom timestamp into naive UTC.

    Accepts "2026-10-19T08:00:00", fractional seconds of any length, and
    "Z" or "+hh:mm" suffixes.
    """
    if isinstance(value, datetime):
        dt = value
    else:
        s = _FRACTION_RE.sub(r"\1", str(value).strip())
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _parse_display_time(value: Any) -> Optional[datetime]:
    """Display time is the device's wall clock: keep it, drop the offset."""
    if not value:
        return None
    s = _FRACTION_RE.sub(r"\1", str(value).strip())
    if s.endswith("Z"):
        s = s[:-1]
    return datetime.fromisoformat(s).replace(tzinfo=None)


def _optional_datetime(value: Any) -> Optional[datetime]:
    return parse_dexcom_datetime(value) if value else None


def _extract_value(item: Dict[str, Any]) -> Tuple[float, str]:
    unit = item.get("unit")
    raw = item.get("value")

    if isinstance(raw, dict):
        candidates = ((unit,) if unit else ()) + UNIT_KEYS
        for key in candidates:
            if raw.get(key) is not None:
                return float(raw[key]), key
        raise ValueError(f"no glucose value under unit keys {list(raw)}")

    if raw is None:
        for key in UNIT_KEYS:
            if item.get(key) is not None:
                return float(item[key]), key
        raw = item.get("realtimeValue", item.get("smoothedValue"))

    if raw is None or isinstance(raw, bool):
        raise ValueError("record has no glucose value")
    return float(raw), unit or "mg/dL"


def normalize_egv(item: Dict[str, Any]) -> EGVRecord:
    """Normalize one EGV item.

    Raises:
        ValueError: if recordId, a numeric value or systemTime is missing.
    """
    if not isinstance(item, dict):
        raise ValueError(f"EGV item is not an object: {item!r}")

    record_id = item.get("recordId")
    if record_id is None or str(record_id).strip() == "":
        raise ValueError("EGV item has no recordId")

    system_time = item.get("systemTime")
    if not system_time:
        raise ValueError(f"EGV {record_id} has no systemTime")

    value, unit = _extract_value(item)

    trend_rate = item.get("trendRate")
    metadata = {
        key: item[key]
        for key in ("displayDevice", "displayApp", "transmitterTicks", "status")
        if item.get(key) is not None
    }

    return EGVRecord(
        record_id=str(record_id),
        value=value,
        unit=unit,
        system_time=parse_dexcom_datetime(system_time),
        display_time=_parse_display_time(item.get("displayTime")),
        trend=item.get("trend"),
        trend_rate=float(trend_rate) if trend_rate is not None else None,
        rate_unit=item.get("rateUnit"),
        transmitter_id=item.get("transmitterId"),
        transmitter_generation=item.get("transmitterGeneration"),
        device_metadata=metadata,
    )


def normalize_device(item: Dict[str, Any]) -> DeviceRecord:
    """Normalize one device item. A device without an id is still valid."""
    if not isinstance(item, dict):
        raise ValueError(f"device item is not an object: {item!r}")
    return DeviceRecord(
        transmitter_id=item.get("transmitterId") or item.get("serialNumber"),
        transmitter_generation=item.get("transmitterGeneration") or item.get("model"),
        display_device=item.get("displayDevice"),
        display_app=item.get("displayApp"),
        last_upload_at=_optional_datetime(item.get("lastUploadDate")),
    )


def normalize_session(item: Dict[str, Any], device: DeviceRecord) -> SensorSession:
    """Normalize one session item, falling back to the device's transmitter.

    Raises:
        ValueError: if neither the session nor the device has an identity.
    """
    if not isinstance(item, dict):
        raise ValueError(f"session item is not an object: {item!r}")

    if is_data_range_summary(item):
        # v3 dataRange summary: one implicit session spanning the EGV range
        egvs = item["egvs"]
        serial = device.transmitter_id
        session_id = None
        started = (egvs.get("start") or {}).get("systemTime")
        stopped = None
        last_reading = (egvs.get("end") or {}).get("systemTime")
        status = None
    else:
        serial = session_transmitter_id(item) or device.transmitter_id
        session_id = item.get("sessionId")
        started = item.get("sessionStartTime") or item.get("startTime")
        stopped = item.get("sessionStopTime") or item.get("endTime")
        last_reading = item.get("lastReadingTime")
        status = item.get("status")

    if not serial:
        raise ValueError(f"sensor session {session_id or '?'} has no transmitter or serial id")

    return SensorSession(
        serial_number=str(serial),
        session_id=str(session_id) if session_id is not None else None,
        started_at=_optional_datetime(started),
        stopped_at=_optional_datetime(stopped),
        last_reading_at=_optional_datetime(last_reading),
        status=status.lower() if isinstance(status, str) else None,
        transmitter_generation=item.get("transmitterGeneration") or device.transmitter_generation,
    )
