"""
Glucose reading ingestion for one sync window.

Flow:
  1. GET /users/self/egvs for the window        (phase-level failure point)
  2. unwrap the envelope into a list of items   (phase-level failure point)
  3. per item: normalize → insert_or_ignore     (item-level failure point)

A duplicate recordId is a successful no-op. Any other per-item failure is
recorded and the loop continues. A phase-level failure records one error
and returns whatever was inserted so far (nothing, for steps 1-2).
"""
import json
import logging
from dataclasses import dataclass, field
from typing import List

from cgmsync.db.inserts import InsertStatus, insert_or_ignore
from cgmsync.dexcom.client import DexcomAPIError, DexcomClient
from cgmsync.dexcom.normalizer import EGVRecord, normalize_egv, unwrap_records
from cgmsync.dexcom.window import SyncWindow
from cgmsync.models.glucose import GlucoseReading

logger = logging.getLogger(__name__)

SOURCE = "dexcom_api"


@dataclass
class IngestResult:
    count: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)


class ReadingIngestor:
    """Fetches EGVs for a window and stores the new ones."""

    def __init__(self, engine):
        self.engine = engine

    async def ingest(self, user_id: str, window: SyncWindow, client: DexcomClient) -> IngestResult:
        result = IngestResult()

        try:
            raw = await client.get_egvs(window.start, window.end)
            items = unwrap_records(raw, "egvs", "records")
        except (DexcomAPIError, ValueError) as exc:
            logger.warning("Glucose fetch failed for user %s: %s", user_id, exc)
            result.errors.append(f"Glucose readings: {exc}")
            return result

        logger.info(
            "Fetched %d EGVs for user %s (%s → %s)",
            len(items), user_id, window.start_param, window.end_param,
        )

        for index, item in enumerate(items):
            try:
                egv = normalize_egv(item)
            except (ValueError, TypeError) as exc:
                result.errors.append(f"Glucose record #{index + 1}: {exc}")
                continue

            outcome = insert_or_ignore(
                self.engine,
                self._to_row(user_id, egv),
                identity={"user_id": user_id, "record_id": egv.record_id},
            )
            if outcome.status is InsertStatus.INSERTED:
                result.count += 1
            elif outcome.status is InsertStatus.ALREADY_EXISTS:
                result.duplicates += 1
            else:
                logger.warning(
                    "Failed to store EGV %s for user %s: %s",
                    egv.record_id, user_id, outcome.error,
                )
                result.errors.append(f"Glucose record {egv.record_id}: {outcome.error}")

        logger.info(
            "Stored %d new readings for user %s (%d duplicates, %d errors)",
            result.count, user_id, result.duplicates, len(result.errors),
        )
        return result

    @staticmethod
    def _to_row(user_id: str, egv: EGVRecord) -> GlucoseReading:
        return GlucoseReading(
            user_id=user_id,
            record_id=egv.record_id,
            transmitter_id=egv.transmitter_id,
            transmitter_generation=egv.transmitter_generation,
            value=egv.value,
            unit=egv.unit,
            trend=egv.trend,
            trend_rate=egv.trend_rate,
            rate_unit=egv.rate_unit,
            system_time=egv.system_time,
            display_time=egv.display_time,
            device_metadata=json.dumps(egv.device_metadata) if egv.device_metadata else None,
            source=SOURCE,
        )
