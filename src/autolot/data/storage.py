import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from autolot.imports.models import CANONICAL_FIELDS

# Declared column types for the canonical vehicle attributes; money stays TEXT so
# Decimal values round-trip exactly.
VEHICLE_COLUMN_TYPES = {
    "year": "INTEGER",
    "odometer": "INTEGER",
    "certified": "INTEGER",
}
VEHICLE_COLUMNS = tuple(f for f in CANONICAL_FIELDS if f != "vin")

# One sub-settings table per concern, keyed by config id.
SETTINGS_TABLES = {
    "connection": "import_connection_settings",
    "file_format": "import_file_format_settings",
    "processing": "import_processing_policies",
    "schedule": "import_schedule_settings",
}


class Database:
    """
    Thin wrapper over sqlite3 for AutoLot persistence.
    Keeps schema creation and connection handling in one place.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self, autocommit: bool = False) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
            isolation_level=None if autocommit else "DEFERRED",
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connect(self, autocommit: bool = False) -> Iterator[sqlite3.Connection]:
        """
        Yields a connection that is committed on success, rolled back on error and always closed.
        With autocommit=True the caller manages transactions explicitly (BEGIN / SAVEPOINT).
        """
        conn = self._connect(autocommit=autocommit)
        try:
            yield conn
            if not autocommit:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        vehicle_columns = ",\n".join(
            f"                    {name} {VEHICLE_COLUMN_TYPES.get(name, 'TEXT')}" for name in VEHICLE_COLUMNS
        )
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("PRAGMA journal_mode = WAL")
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS import_configs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dealer_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    source_kind TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(dealer_id, name)
                );
                """
            )
            for table in SETTINGS_TABLES.values():
                secret_column = ",\n password_encrypted TEXT" if table == SETTINGS_TABLES["connection"] else ""
                cur.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        config_id INTEGER PRIMARY KEY REFERENCES import_configs(id) ON DELETE CASCADE,
                        settings_json TEXT NOT NULL{secret_column}
                    );
                    """
                )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS import_field_mappings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    config_id INTEGER NOT NULL REFERENCES import_configs(id) ON DELETE CASCADE,
                    position INTEGER NOT NULL,
                    field_order INTEGER NOT NULL,
                    source_field TEXT NOT NULL,
                    target_field TEXT NOT NULL,
                    field_type TEXT NOT NULL,
                    is_required INTEGER NOT NULL DEFAULT 0,
                    default_value TEXT,
                    transformation_rule TEXT
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS import_settings (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dealer_id TEXT NOT NULL DEFAULT '',
                    section TEXT NOT NULL,
                    name TEXT NOT NULL,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(dealer_id, section, name)
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS import_run_state (
                    config_id INTEGER PRIMARY KEY REFERENCES import_configs(id) ON DELETE CASCADE,
                    state TEXT NOT NULL DEFAULT 'idle',
                    current_run_id TEXT,
                    next_run_at TEXT,
                    last_run_at TEXT
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS import_runs (
                    run_id TEXT PRIMARY KEY,
                    config_id INTEGER NOT NULL,
                    dealer_id TEXT NOT NULL,
                    trigger TEXT NOT NULL,
                    source_ref TEXT,
                    status TEXT NOT NULL,
                    rows_read INTEGER NOT NULL DEFAULT 0,
                    rows_mapped INTEGER NOT NULL DEFAULT 0,
                    inserted INTEGER NOT NULL DEFAULT 0,
                    updated INTEGER NOT NULL DEFAULT 0,
                    skipped INTEGER NOT NULL DEFAULT 0,
                    errored INTEGER NOT NULL DEFAULT 0,
                    counts_json TEXT NOT NULL,
                    errors_json TEXT NOT NULL,
                    warnings_json TEXT NOT NULL,
                    detail TEXT,
                    archived INTEGER,
                    started_at TEXT NOT NULL,
                    finished_at TEXT
                );
                """
            )
            cur.execute(
                f"""
                CREATE TABLE IF NOT EXISTS vehicles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dealer_id TEXT NOT NULL,
                    vin TEXT NOT NULL,
{vehicle_columns},
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(dealer_id, vin)
                );
                """
            )
            cur.execute("CREATE INDEX IF NOT EXISTS idx_mappings_config ON import_field_mappings (config_id, field_order);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_runs_config ON import_runs (config_id, started_at);")
