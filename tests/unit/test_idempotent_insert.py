"""Tests for the insert_or_ignore primitive."""
from datetime import datetime

from sqlmodel import Session, select

from cgmsync.db.inserts import InsertStatus, insert_or_ignore
from cgmsync.models.glucose import GlucoseReading
from cgmsync.models.sensor import SensorRecord
from fakes import NOW, USER_ID


def _reading(record_id: str, value=120) -> GlucoseReading:
    return GlucoseReading(user_id=USER_ID, record_id=record_id, value=value, system_time=NOW)


class TestInsertOrIgnore:
    def test_new_row_inserted(self, engine):
        result = insert_or_ignore(engine, _reading("r1"), {"user_id": USER_ID, "record_id": "r1"})
        assert result.status is InsertStatus.INSERTED
        assert result.inserted
        assert result.row_id is not None

    def test_duplicate_is_already_exists(self, engine):
        identity = {"user_id": USER_ID, "record_id": "r1"}
        insert_or_ignore(engine, _reading("r1"), identity)
        result = insert_or_ignore(engine, _reading("r1", value=999), identity)

        assert result.status is InsertStatus.ALREADY_EXISTS
        assert result.error is None
        with Session(engine) as s:
            rows = s.exec(select(GlucoseReading)).all()
        assert len(rows) == 1
        assert rows[0].value == 120

    def test_same_record_id_for_another_user_is_new(self, engine):
        insert_or_ignore(engine, _reading("r1"), {"user_id": USER_ID, "record_id": "r1"})
        other = GlucoseReading(user_id="other", record_id="r1", value=90, system_time=NOW)
        result = insert_or_ignore(engine, other, {"user_id": "other", "record_id": "r1"})
        assert result.status is InsertStatus.INSERTED

    def test_not_null_violation_is_error(self, engine):
        row = _reading("r2", value=None)
        result = insert_or_ignore(engine, row, {"user_id": USER_ID, "record_id": "r2"})
        assert result.status is InsertStatus.ERROR
        assert "integrity error" in result.error
        with Session(engine) as s:
            assert s.exec(select(GlucoseReading)).all() == []

    def test_soft_deleted_row_does_not_block_insert(self, engine, test_session: Session):
        test_session.add(SensorRecord(
            user_id=USER_ID, serial_number="TX1", date_added=datetime(2026, 9, 1), is_deleted=True,
        ))
        test_session.commit()

        row = SensorRecord(user_id=USER_ID, serial_number="TX1", date_added=NOW)
        result = insert_or_ignore(
            engine, row, {"user_id": USER_ID, "serial_number": "TX1", "is_deleted": False}
        )
        assert result.status is InsertStatus.INSERTED
