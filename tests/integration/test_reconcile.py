"""Integration tests for sensor session reconciliation."""
from datetime import datetime

import httpx
import pytest
from sqlmodel import Session, select

from cgmsync.dexcom.client import DexcomClient
from cgmsync.dexcom.reconcile import SessionReconciler
from cgmsync.models.sensor import SensorModel, SensorRecord
from fakes import USER_ID

DEVICE = {"transmitterId": "TX123", "transmitterGeneration": "g7", "displayDevice": "iOS"}
SESSION = {
    "sessionId": "sess-abcdef123",
    "sessionStartTime": "2026-10-10T08:00:00",
    "sessionStopTime": "2026-10-20T08:00:00",
    "status": "Active",
}


@pytest.fixture
def reconciler(engine, clock):
    return SessionReconciler(engine, clock=clock)


@pytest.fixture
def dexcom(fake_dexcom):
    fake_dexcom.devices = {"records": [DEVICE]}
    fake_dexcom.data_range = [SESSION]
    return fake_dexcom


async def _reconcile(reconciler, fake):
    async with fake.client_factory("access-abc") as client:
        return await reconciler.reconcile(USER_ID, client)


def _sensors(engine):
    with Session(engine) as s:
        return s.exec(select(SensorRecord).order_by(SensorRecord.id)).all()


class TestNewSensors:
    @pytest.mark.asyncio
    async def test_creates_auto_detected_sensor(self, engine, reconciler, dexcom, dexcom_model):
        result = await _reconcile(reconciler, dexcom)

        assert result.devices_processed == 1
        assert result.sessions_processed == 1
        assert result.new_sensors == 1
        assert result.errors == []

        sensor = _sensors(engine)[0]
        assert sensor.user_id == USER_ID
        assert sensor.serial_number == "TX123"
        assert sensor.lot_number == "DEXCOM-sess-abc"
        assert sensor.sensor_model_id == dexcom_model.id
        assert sensor.dexcom_sensor_id == "sess-abcdef123"
        assert sensor.dexcom_activation_time == datetime(2026, 10, 10, 8, 0)
        assert sensor.dexcom_expiry_time == datetime(2026, 10, 20, 8, 0)
        assert sensor.date_added == datetime(2026, 10, 10, 8, 0)
        assert sensor.auto_detected is True
        assert sensor.sync_enabled is True
        assert sensor.notes == (
            "[2026-10-19 12:00:00 UTC] Auto-detected from Dexcom: "
            "session sess-abcdef123, status active, via iOS"
        )

    @pytest.mark.asyncio
    async def test_session_query_uses_lookback(self, reconciler, dexcom, dexcom_model):
        await _reconcile(reconciler, dexcom)
        params = dexcom.calls_to("/users/self/dataRange")[0].url.params
        assert params["startDate"] == "2026-09-19T12:00:00"
        assert params["endDate"] == "2026-10-19T12:00:00"

    @pytest.mark.asyncio
    async def test_warmup_session_skipped(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.data_range = [{**SESSION, "status": "warmup"}]
        result = await _reconcile(reconciler, dexcom)

        assert result.sessions_processed == 1
        assert result.new_sensors == 0
        assert result.errors == []
        assert _sensors(engine) == []

    @pytest.mark.asyncio
    async def test_model_matched_by_generation(self, engine, reconciler, dexcom, test_session: Session):
        g6 = SensorModel(manufacturer="Dexcom", model_name="G6")
        g7 = SensorModel(manufacturer="Dexcom", model_name="G7")
        test_session.add(g6)
        test_session.add(g7)
        test_session.commit()
        test_session.refresh(g7)

        await _reconcile(reconciler, dexcom)
        assert _sensors(engine)[0].sensor_model_id == g7.id

    @pytest.mark.asyncio
    async def test_missing_model_catalogue_is_item_error(self, engine, reconciler, dexcom):
        result = await _reconcile(reconciler, dexcom)

        assert result.new_sensors == 0
        assert len(result.errors) == 1
        assert "No active Dexcom sensor model" in result.errors[0]
        assert _sensors(engine) == []

    @pytest.mark.asyncio
    async def test_data_range_summary(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.data_range = {
            "recordType": "dataRange",
            "egvs": {
                "start": {"systemTime": "2026-10-09T00:00:00"},
                "end": {"systemTime": "2026-10-19T11:55:00"},
            },
        }
        result = await _reconcile(reconciler, dexcom)

        assert result.new_sensors == 1
        sensor = _sensors(engine)[0]
        assert sensor.serial_number == "TX123"
        assert sensor.lot_number is None
        assert sensor.dexcom_last_reading_time == datetime(2026, 10, 19, 11, 55)


class TestExistingSensors:
    @pytest.mark.asyncio
    async def test_second_run_updates(self, engine, reconciler, dexcom, dexcom_model):
        await _reconcile(reconciler, dexcom)
        result = await _reconcile(reconciler, dexcom)

        assert result.new_sensors == 0
        assert result.updated_sensors == 1
        sensors = _sensors(engine)
        assert len(sensors) == 1
        lines = sensors[0].notes.split("\n")
        assert len(lines) == 2
        assert "Synced from Dexcom: session sess-abcdef123" in lines[1]

    @pytest.mark.asyncio
    async def test_manual_sensor_keeps_user_fields(self, engine, reconciler, dexcom, test_session: Session):
        test_session.add(SensorRecord(
            user_id=USER_ID,
            serial_number="TX123",
            lot_number="LOT-42",
            date_added=datetime(2026, 10, 9),
            notes="Left arm",
        ))
        test_session.commit()

        result = await _reconcile(reconciler, dexcom)

        assert result.updated_sensors == 1
        sensor = _sensors(engine)[0]
        assert sensor.lot_number == "LOT-42"
        assert sensor.date_added == datetime(2026, 10, 9)
        assert sensor.auto_detected is False
        assert sensor.sync_enabled is True
        assert sensor.dexcom_sensor_id == "sess-abcdef123"
        assert sensor.notes.startswith("Left arm\n[2026-10-19 12:00:00 UTC] Synced from Dexcom")

    @pytest.mark.asyncio
    async def test_soft_deleted_sensor_not_matched(self, engine, reconciler, dexcom, dexcom_model, test_session: Session):
        test_session.add(SensorRecord(
            user_id=USER_ID, serial_number="TX123", date_added=datetime(2026, 9, 1),
            notes="removed", is_deleted=True,
        ))
        test_session.commit()

        result = await _reconcile(reconciler, dexcom)

        assert result.new_sensors == 1
        sensors = _sensors(engine)
        assert len(sensors) == 2
        assert sensors[0].notes == "removed"

    @pytest.mark.asyncio
    async def test_warmup_still_updates_known_sensor(self, engine, reconciler, dexcom, dexcom_model):
        await _reconcile(reconciler, dexcom)
        dexcom.data_range = [{**SESSION, "status": "warmup"}]
        result = await _reconcile(reconciler, dexcom)
        assert result.updated_sensors == 1


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_devices_failure_ends_phase(self, reconciler, dexcom, dexcom_model):
        dexcom.devices_status = 503
        result = await _reconcile(reconciler, dexcom)

        assert result.devices_processed == 0
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Devices:")
        assert dexcom.calls_to("/users/self/dataRange") == []

    @pytest.mark.asyncio
    async def test_one_device_failure_does_not_stop_others(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [{"transmitterId": "TX-BAD"}, DEVICE]}
        calls = []

        def handler(request):
            if request.url.path.endswith("/dataRange"):
                calls.append(request)
                if len(calls) == 1:
                    return httpx.Response(500, json={"error": "boom"})
            return dexcom.handler(request)

        client = DexcomClient("access-abc", base_url="https://dexcom.test", transport=httpx.MockTransport(handler))
        async with client:
            result = await reconciler.reconcile(USER_ID, client)

        assert result.devices_processed == 2
        assert result.new_sensors == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Device TX-BAD:")

    @pytest.mark.asyncio
    async def test_bad_session_does_not_stop_others(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [{"displayDevice": "receiver"}]}
        dexcom.data_range = [{"sessionId": "orphan"}, {**SESSION, "transmitterId": "TX777"}]
        result = await _reconcile(reconciler, dexcom)

        assert result.new_sensors == 1
        assert len(result.errors) == 1
        assert "session #1" in result.errors[0]
        assert _sensors(engine)[0].serial_number == "TX777"


class TestDeviceAttribution:
    SUMMARY = {
        "recordType": "dataRange",
        "egvs": {
            "start": {"systemTime": "2026-10-09T00:00:00"},
            "end": {"systemTime": "2026-10-19T11:55:00"},
        },
    }

    @pytest.mark.asyncio
    async def test_session_seen_through_two_devices_applied_once(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [DEVICE, {**DEVICE, "displayDevice": "android"}]}

        result = await _reconcile(reconciler, dexcom)

        assert result.devices_processed == 2
        assert (result.new_sensors, result.updated_sensors) == (1, 0)
        assert result.sessions_processed == 1
        assert len(dexcom.calls_to("/users/self/dataRange")) == 1
        assert "\n" not in _sensors(engine)[0].notes

    @pytest.mark.asyncio
    async def test_rerun_with_two_devices_appends_one_line(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [DEVICE, {**DEVICE, "displayDevice": "android"}]}
        await _reconcile(reconciler, dexcom)
        result = await _reconcile(reconciler, dexcom)

        assert result.updated_sensors == 1
        assert len(_sensors(engine)[0].notes.split("\n")) == 2

    @pytest.mark.asyncio
    async def test_session_goes_to_its_own_transmitter(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [DEVICE, {"transmitterId": "TX456", "transmitterGeneration": "g7"}]}
        dexcom.data_range = [{**SESSION, "transmitterId": "TX456"}]

        result = await _reconcile(reconciler, dexcom)

        assert result.sessions_processed == 1
        assert [s.serial_number for s in _sensors(engine)] == ["TX456"]

    @pytest.mark.asyncio
    async def test_distinct_sessions_of_one_transmitter_all_applied(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.data_range = [
            {**SESSION, "sessionId": "sess-old", "sessionStartTime": "2026-09-25T08:00:00", "status": "expired"},
            SESSION,
        ]
        result = await _reconcile(reconciler, dexcom)

        assert result.sessions_processed == 2
        assert (result.new_sensors, result.updated_sensors) == (1, 1)

    @pytest.mark.asyncio
    async def test_summary_not_applied_to_device_without_id(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [DEVICE, {"displayDevice": "receiver"}]}
        dexcom.data_range = self.SUMMARY

        result = await _reconcile(reconciler, dexcom)

        assert result.errors == []
        assert result.new_sensors == 1
        assert _sensors(engine)[0].serial_number == "TX123"

    @pytest.mark.asyncio
    async def test_summary_with_only_receiver_is_not_an_error(self, engine, reconciler, dexcom, dexcom_model):
        dexcom.devices = {"records": [{"displayDevice": "receiver"}]}
        dexcom.data_range = self.SUMMARY

        result = await _reconcile(reconciler, dexcom)

        assert result.errors == []
        assert result.sessions_processed == 0
        assert _sensors(engine) == []
