"""Sensor catalogue and per-user sensor records."""
from datetime import datetime
from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class SensorModel(SQLModel, table=True):
    """Catalogue entry for a sensor product (e.g. Dexcom G7)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    manufacturer: str = Field(index=True)
    model_name: str
    duration_days: int = 10
    is_active: bool = True


class SensorRecord(SQLModel, table=True):
    """A physical sensor worn by a user.

    Created manually by the user or auto-detected from vendor sessions.
    ``notes`` is an append-only trail; soft-deleted rows are ignored when
    matching vendor sessions.
    """

    __table_args__ = (
        Index(
            "uq_sensorrecord_user_serial_live",
            "user_id",
            "serial_number",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("NOT is_deleted"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    serial_number: str = Field(index=True)  # transmitter id for Dexcom
    lot_number: Optional[str] = None
    date_added: datetime
    sensor_model_id: Optional[int] = Field(default=None, foreign_key="sensormodel.id")
    sensor_type: str = "dexcom"

    # Vendor session data, refreshed on every sync
    dexcom_sensor_id: Optional[str] = None
    dexcom_activation_time: Optional[datetime] = None
    dexcom_expiry_time: Optional[datetime] = None
    dexcom_device_serial: Optional[str] = None
    dexcom_last_reading_time: Optional[datetime] = None

    auto_detected: bool = False
    sync_enabled: bool = False
    notes: Optional[str] = None
    is_deleted: bool = False

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
