"""
Database migrations for the sync store.

Uses SQLite ALTER TABLE ADD COLUMN for incremental schema evolution.
Each migration is idempotent: columns are only added if absent.

Called automatically from get_engine() after create_all() so both
fresh installs and existing DBs are handled without manual steps.
Non-SQLite databases are managed externally and skipped here.
"""
from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times; checks column existence before altering.

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    if engine.dialect.name != "sqlite":
        return

    with engine.connect() as conn:
        # GlucoseReading: vendor rate unit and transmitter generation
        _add_column_if_missing(conn, "glucosereading", "rate_unit", "VARCHAR")
        _add_column_if_missing(conn, "glucosereading", "transmitter_generation", "VARCHAR")

        # SensorRecord: last reading time reported by the vendor session
        _add_column_if_missing(conn, "sensorrecord", "dexcom_last_reading_time", "DATETIME")

        # SyncLogEntry: wall-clock duration of the run
        _add_column_if_missing(conn, "synclogentry", "sync_duration_ms", "INTEGER")

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name (lowercase, as SQLite stores it).
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "VARCHAR", "DATETIME".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))
