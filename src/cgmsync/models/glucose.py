"""Glucose reading model."""
from datetime import datetime
from typing import Optional

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


class GlucoseReading(SQLModel, table=True):
    """One estimated glucose value (EGV) from the vendor.

    ``record_id`` is vendor-assigned and unique per user; it is the
    idempotency key for ingestion.
    """

    __table_args__ = (
        UniqueConstraint("user_id", "record_id", name="uq_glucosereading_user_record"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    record_id: str
    transmitter_id: Optional[str] = None
    transmitter_generation: Optional[str] = None  # "g6", "g7"

    value: float
    unit: str = "mg/dL"
    trend: Optional[str] = None  # "flat", "singleUp", ...
    trend_rate: Optional[float] = None
    rate_unit: Optional[str] = None  # "mg/dL/min"

    system_time: datetime = Field(index=True)  # UTC
    display_time: Optional[datetime] = None  # device wall clock

    # JSON: displayDevice, displayApp, transmitterTicks, status
    device_metadata: Optional[str] = None
    source: str = "dexcom_api"
    created_at: datetime = Field(default_factory=datetime.utcnow)
