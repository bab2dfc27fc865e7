import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
from pydantic import BaseModel

from autolot.data.storage import SETTINGS_TABLES, VEHICLE_COLUMNS, Database
from autolot.exceptions import ConfigConflictError, ConfigError, ConfigNotFoundError, StorageError
from autolot.imports.models import FieldMapping, ImportConfig, ImportRun, RunState
from autolot.imports.resolver import Intent, vin_key
from autolot.imports.secrets import CredentialVault
from autolot.imports.settings_resolver import SECTION_MODELS
from autolot.imports.transforms import TransformError, validate_rule

logger = logging.getLogger(__name__)

GLOBAL_SCOPE = ""
# How pydantic renders a SecretStr in JSON responses.
MASKED_SECRET = "**********"


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BaseRepository:
    def __init__(self, db: Database):
        self.db = db


class ImportConfigRegistry(BaseRepository):
    """
    Named per-dealer import configs with their nested settings, settings rows and run state.
    Pure data access; resolution and validation of values live elsewhere.
    """

    def __init__(self, db: Database, vault: Optional[CredentialVault] = None):
        super().__init__(db)
        self.vault = vault or CredentialVault()

    # ----- configs -----
    def is_name_available(self, dealer_id: str, name: str, exclude_id: Optional[int] = None) -> bool:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT id FROM import_configs WHERE dealer_id = ? AND name = ?",
                (dealer_id, name.strip()),
            ).fetchone()
        return row is None or row["id"] == exclude_id

    def create(self, config: ImportConfig) -> ImportConfig:
        self._check_rules(config)
        now = _now()
        try:
            with self.db.connect() as conn:
                cur = conn.execute(
                    """
                    INSERT INTO import_configs (dealer_id, name, is_active, source_kind, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (config.dealer_id, config.name, int(config.is_active), config.source_kind, now, now),
                )
                config_id = cur.lastrowid
                self._write_sections(conn, config_id, config, keep_password=False)
                self._write_mappings(conn, config_id, config.field_mappings)
                conn.execute("INSERT OR IGNORE INTO import_run_state (config_id, state) VALUES (?, 'idle')", (config_id,))
        except sqlite3.IntegrityError as exc:
            raise ConfigConflictError(
                f"Dealer {config.dealer_id} already has an import config named '{config.name}'"
            ) from exc
        logger.info("import config created", extra={"config_id": config_id, "dealer_id": config.dealer_id})
        return self.get(config_id)

    def update(self, config_id: int, config: ImportConfig) -> ImportConfig:
        existing = self.get(config_id)
        if config.dealer_id != existing.dealer_id:
            raise ConfigError("An import config cannot move to another dealer")
        if not self.is_name_available(config.dealer_id, config.name, exclude_id=config_id):
            raise ConfigConflictError(f"Dealer {config.dealer_id} already has an import config named '{config.name}'")
        self._check_rules(config)
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE import_configs SET name = ?, is_active = ?, source_kind = ?, updated_at = ? WHERE id = ?",
                (config.name, int(config.is_active), config.source_kind, _now(), config_id),
            )
            self._write_sections(conn, config_id, config, keep_password=True)
            conn.execute("DELETE FROM import_field_mappings WHERE config_id = ?", (config_id,))
            self._write_mappings(conn, config_id, config.field_mappings)
            # Schedule may have changed; the next tick recomputes the instant.
            conn.execute("UPDATE import_run_state SET next_run_at = NULL WHERE config_id = ?", (config_id,))
        return self.get(config_id)

    def delete(self, config_id: int) -> None:
        with self.db.connect() as conn:
            cur = conn.execute("DELETE FROM import_configs WHERE id = ?", (config_id,))
        if cur.rowcount == 0:
            raise ConfigNotFoundError(f"Import config {config_id} not found")
        logger.info("import config deleted", extra={"config_id": config_id})

    def get(self, config_id: int) -> ImportConfig:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM import_configs WHERE id = ?", (config_id,)).fetchone()
            if row is None:
                raise ConfigNotFoundError(f"Import config {config_id} not found")
            return self._load(conn, row)

    def list(self, dealer_id: Optional[str] = None) -> List[ImportConfig]:
        with self.db.connect() as conn:
            if dealer_id:
                rows = conn.execute(
                    "SELECT * FROM import_configs WHERE dealer_id = ? ORDER BY name", (dealer_id,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM import_configs ORDER BY dealer_id, name").fetchall()
            return [self._load(conn, row) for row in rows]

    @staticmethod
    def _check_rules(config: ImportConfig) -> None:
        for mapping in config.field_mappings:
            try:
                validate_rule(mapping.transformation_rule)
            except TransformError as exc:
                raise ConfigError(f"Mapping {mapping.source_field} -> {mapping.target_field}: {exc}") from exc
        dupes = config.duplicate_field_orders()
        if dupes:
            logger.warning(
                "field_order values are not unique; lowest order and declaration order decide precedence",
                extra={"dealer_id": config.dealer_id, "config_name": config.name, "field_orders": dupes},
            )

    def _write_sections(self, conn: sqlite3.Connection, config_id: int, config: ImportConfig, keep_password: bool) -> None:
        for section, table in SETTINGS_TABLES.items():
            value: Optional[BaseModel] = getattr(config, section)
            if section == "connection":
                self._write_connection(conn, config_id, value, keep_password)
                continue
            payload = value.model_dump(mode="json", exclude_unset=True)
            conn.execute(
                f"INSERT OR REPLACE INTO {table} (config_id, settings_json) VALUES (?, ?)",
                (config_id, json.dumps(payload)),
            )

    def _write_connection(self, conn: sqlite3.Connection, config_id: int, connection, keep_password: bool) -> None:
        table = SETTINGS_TABLES["connection"]
        if connection is None:
            conn.execute(f"DELETE FROM {table} WHERE config_id = ?", (config_id,))
            return
        payload = connection.model_dump(mode="json", exclude_unset=True, exclude={"password"})
        secret = connection.password.get_secret_value() if connection.password else None
        # A config read back through the API carries the masked value; treat it as unchanged.
        masked = secret == MASKED_SECRET
        if "password" in connection.model_fields_set and not masked:
            encrypted = self.vault.encrypt(secret)
        elif keep_password or masked:
            row = conn.execute(f"SELECT password_encrypted FROM {table} WHERE config_id = ?", (config_id,)).fetchone()
            encrypted = row["password_encrypted"] if row else None
        else:
            encrypted = None
        conn.execute(
            f"INSERT OR REPLACE INTO {table} (config_id, settings_json, password_encrypted) VALUES (?, ?, ?)",
            (config_id, json.dumps(payload), encrypted),
        )

    @staticmethod
    def _write_mappings(conn: sqlite3.Connection, config_id: int, mappings: Iterable[FieldMapping]) -> None:
        conn.executemany(
            """
            INSERT INTO import_field_mappings
                (config_id, position, field_order, source_field, target_field, field_type,
                 is_required, default_value, transformation_rule)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    config_id,
                    position,
                    m.field_order,
                    m.source_field,
                    m.target_field,
                    m.field_type,
                    int(m.is_required),
                    m.default_value,
                    json.dumps(m.transformation_rule) if m.transformation_rule is not None else None,
                )
                for position, m in enumerate(mappings)
            ],
        )

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ImportConfig:
        config_id = row["id"]
        data: Dict[str, Any] = {
            "id": config_id,
            "dealer_id": row["dealer_id"],
            "name": row["name"],
            "is_active": bool(row["is_active"]),
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
        for section, table in SETTINGS_TABLES.items():
            stored = conn.execute(f"SELECT * FROM {table} WHERE config_id = ?", (config_id,)).fetchone()
            if stored is None:
                continue
            values = json.loads(stored["settings_json"])
            if section == "connection" and stored["password_encrypted"]:
                values["password"] = self.vault.decrypt(stored["password_encrypted"])
            data[section] = values
        mapping_rows = conn.execute(
            "SELECT * FROM import_field_mappings WHERE config_id = ? ORDER BY field_order, position",
            (config_id,),
        ).fetchall()
        data["field_mappings"] = [
            {
                "source_field": m["source_field"],
                "target_field": m["target_field"],
                "field_type": m["field_type"],
                "field_order": m["field_order"],
                "is_required": bool(m["is_required"]),
                "default_value": m["default_value"],
                "transformation_rule": json.loads(m["transformation_rule"]) if m["transformation_rule"] else None,
            }
            for m in mapping_rows
        ]
        return ImportConfig.model_validate(data)

    # ----- settings rows (global + dealer) -----
    def get_settings(self, section: str, dealer_id: str = GLOBAL_SCOPE) -> Dict[str, Any]:
        self._check_section(section)
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT name, value_json FROM import_settings WHERE dealer_id = ? AND section = ? ORDER BY name",
                (dealer_id, section),
            ).fetchall()
        return {r["name"]: json.loads(r["value_json"]) for r in rows}

    def put_settings(self, section: str, values: Dict[str, Any], dealer_id: str = GLOBAL_SCOPE) -> Dict[str, Any]:
        """Upserts one row per setting name; a None value deletes the row."""
        model_cls = self._check_section(section)
        unknown = sorted(set(values) - set(model_cls.model_fields))
        if unknown:
            raise ConfigError(f"Unknown {section} settings: {', '.join(unknown)}")
        if section == "connection" and "password" in values:
            raise ConfigError("Connection passwords cannot be stored as shared settings")
        now = _now()
        with self.db.connect() as conn:
            for name, value in values.items():
                if value is None:
                    conn.execute(
                        "DELETE FROM import_settings WHERE dealer_id = ? AND section = ? AND name = ?",
                        (dealer_id, section, name),
                    )
                    continue
                conn.execute(
                    """
                    INSERT INTO import_settings (dealer_id, section, name, value_json, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(dealer_id, section, name) DO UPDATE SET value_json = excluded.value_json,
                        updated_at = excluded.updated_at
                    """,
                    (dealer_id, section, name, json.dumps(value), now),
                )
        return self.get_settings(section, dealer_id)

    def settings_layers(self, dealer_id: str) -> tuple[Dict[str, Dict[str, Any]], Dict[str, Dict[str, Any]]]:
        """Returns (global_rows, dealer_rows), each section -> {name: value}."""
        global_rows: Dict[str, Dict[str, Any]] = {}
        dealer_rows: Dict[str, Dict[str, Any]] = {}
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT dealer_id, section, name, value_json FROM import_settings WHERE dealer_id IN (?, ?)",
                (GLOBAL_SCOPE, dealer_id),
            ).fetchall()
        for r in rows:
            target = global_rows if r["dealer_id"] == GLOBAL_SCOPE else dealer_rows
            target.setdefault(r["section"], {})[r["name"]] = json.loads(r["value_json"])
        return global_rows, dealer_rows

    @staticmethod
    def _check_section(section: str):
        model_cls = SECTION_MODELS.get(section)
        if model_cls is None:
            raise ConfigError(f"Unknown settings section '{section}'")
        return model_cls

    # ----- run state -----
    def get_run_state(self, config_id: int) -> RunState:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM import_run_state WHERE config_id = ?", (config_id,)).fetchone()
        if row is None:
            return RunState(config_id=config_id)
        return self._state(row)

    def list_run_states(self) -> List[RunState]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT * FROM import_run_state ORDER BY config_id").fetchall()
        return [self._state(r) for r in rows]

    def try_start_run(self, config_id: int, run_id: str) -> bool:
        """Atomic transition to running; False when a run for the config is already running."""
        with self.db.connect() as conn:
            conn.execute("INSERT OR IGNORE INTO import_run_state (config_id, state) VALUES (?, 'idle')", (config_id,))
            cur = conn.execute(
                """
                UPDATE import_run_state SET state = 'running', current_run_id = ?
                WHERE config_id = ? AND state != 'running'
                """,
                (run_id, config_id),
            )
        return cur.rowcount == 1

    def finish_run(self, config_id: int, run_id: str, finished_at: datetime, next_run_at: Optional[datetime]) -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                UPDATE import_run_state
                SET state = 'idle', current_run_id = NULL, last_run_at = ?, next_run_at = ?
                WHERE config_id = ? AND current_run_id = ?
                """,
                (_iso(finished_at), _iso(next_run_at), config_id, run_id),
            )

    def mark_due(self, config_id: int) -> bool:
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE import_run_state SET state = 'due' WHERE config_id = ? AND state = 'idle'",
                (config_id,),
            )
        return cur.rowcount == 1

    def set_idle(self, config_id: int) -> None:
        with self.db.connect() as conn:
            conn.execute("UPDATE import_run_state SET state = 'idle' WHERE config_id = ? AND state = 'due'", (config_id,))

    def set_next_run(self, config_id: int, next_run_at: Optional[datetime]) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE import_run_state SET next_run_at = ? WHERE config_id = ?",
                (_iso(next_run_at), config_id),
            )

    def reset_stale_runs(self) -> int:
        """Clears running markers left behind by a process that died mid-run."""
        with self.db.connect() as conn:
            cur = conn.execute(
                "UPDATE import_run_state SET state = 'idle', current_run_id = NULL WHERE state IN ('running', 'due')"
            )
        if cur.rowcount:
            logger.warning("reset stale run state", extra={"configs": cur.rowcount})
        return cur.rowcount

    @staticmethod
    def _state(row: sqlite3.Row) -> RunState:
        return RunState(
            config_id=row["config_id"],
            state=row["state"],
            current_run_id=row["current_run_id"],
            next_run_at=_parse_dt(row["next_run_at"]),
            last_run_at=_parse_dt(row["last_run_at"]),
        )


@dataclass
class RecordOutcome:
    row_number: int
    action: str
    ok: bool
    vehicle_id: Optional[int] = None
    error: Optional[str] = None


def to_db_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, (list, dict)):
        return json.dumps(value, ensure_ascii=False)
    return value


class VehicleRepository(BaseRepository):
    """Canonical vehicle inventory keyed by (dealer_id, VIN)."""

    def find_id(self, dealer_id: str, vin: str) -> Optional[int]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT id FROM vehicles WHERE dealer_id = ? AND vin = ?", (dealer_id, vin_key(vin))
            ).fetchone()
        return row["id"] if row else None

    def exists(self, dealer_id: str, vin: str) -> bool:
        return self.find_id(dealer_id, vin) is not None

    def get(self, dealer_id: str, vin: str) -> Optional[Dict[str, Any]]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT * FROM vehicles WHERE dealer_id = ? AND vin = ?", (dealer_id, vin_key(vin))
            ).fetchone()
        return dict(row) if row else None

    def count(self, dealer_id: str) -> int:
        with self.db.connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM vehicles WHERE dealer_id = ?", (dealer_id,)).fetchone()[0]

    def upsert_batch(self, dealer_id: str, intents: List[Intent]) -> List[RecordOutcome]:
        """
        Applies a batch in one transaction with a savepoint per record.
        Integrity violations fail only their record; any other failure rolls the
        whole batch back and raises StorageError.
        """
        outcomes: List[RecordOutcome] = []
        now = _now()
        with self.db.connect(autocommit=True) as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                for index, intent in enumerate(intents):
                    if intent.action == "skip":
                        outcomes.append(RecordOutcome(intent.row_number, "skip", True, intent.existing_id))
                        continue
                    savepoint = f"rec_{index}"
                    conn.execute(f"SAVEPOINT {savepoint}")
                    try:
                        vehicle_id = self._apply(conn, dealer_id, intent, now)
                    except sqlite3.IntegrityError as exc:
                        conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                        conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                        outcomes.append(RecordOutcome(intent.row_number, intent.action, False, error=str(exc)))
                        continue
                    conn.execute(f"RELEASE SAVEPOINT {savepoint}")
                    outcomes.append(RecordOutcome(intent.row_number, intent.action, True, vehicle_id))
                conn.execute("COMMIT")
            except sqlite3.Error as exc:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise StorageError(f"Batch of {len(intents)} records rolled back: {exc}") from exc
        return outcomes

    def _apply(self, conn: sqlite3.Connection, dealer_id: str, intent: Intent, now: str) -> int:
        vin = vin_key(intent.vin)
        if intent.action == "insert":
            return self._insert(conn, dealer_id, vin, intent.record, now)

        if intent.action == "replace":
            columns = list(VEHICLE_COLUMNS)
        else:
            columns = [c for c in VEHICLE_COLUMNS if c in intent.record]
        assignments = ", ".join(f"{c} = ?" for c in columns + ["updated_at"])
        values = [to_db_value(intent.record.get(c)) for c in columns] + [now, dealer_id, vin]
        cur = conn.execute(f"UPDATE vehicles SET {assignments} WHERE dealer_id = ? AND vin = ?", values)
        if cur.rowcount == 0:
            # Removed since resolution.
            return self._insert(conn, dealer_id, vin, intent.record, now)
        return conn.execute("SELECT id FROM vehicles WHERE dealer_id = ? AND vin = ?", (dealer_id, vin)).fetchone()[0]

    @staticmethod
    def _insert(conn: sqlite3.Connection, dealer_id: str, vin: str, record: Dict[str, Any], now: str) -> int:
        columns = [c for c in VEHICLE_COLUMNS if c in record]
        names = ", ".join(["dealer_id", "vin", *columns, "created_at", "updated_at"])
        marks = ", ".join("?" for _ in range(len(columns) + 4))
        values = [dealer_id, vin, *[to_db_value(record[c]) for c in columns], now, now]
        cur = conn.execute(f"INSERT INTO vehicles ({names}) VALUES ({marks})", values)
        return cur.lastrowid


class RunRepository(BaseRepository):
    """Audit summaries of finished (and in-flight) import runs."""

    def save_run_summary(self, run: ImportRun) -> None:
        counts = run.counts
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO import_runs
                    (run_id, config_id, dealer_id, trigger, source_ref, status, rows_read, rows_mapped,
                     inserted, updated, skipped, errored, counts_json, errors_json, warnings_json,
                     detail, archived, started_at, finished_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.config_id,
                    run.dealer_id,
                    run.trigger,
                    run.source_ref,
                    run.status,
                    counts.read,
                    counts.mapped,
                    counts.inserted,
                    counts.updated,
                    counts.skipped,
                    counts.errored,
                    counts.model_dump_json(),
                    json.dumps([e.model_dump() for e in run.errors]),
                    json.dumps([w.model_dump() for w in run.warnings]),
                    run.detail,
                    None if run.archived is None else int(run.archived),
                    _iso(run.started_at),
                    _iso(run.finished_at),
                ),
            )

    def get(self, run_id: str) -> Optional[ImportRun]:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM import_runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return ImportRun(
            run_id=row["run_id"],
            config_id=row["config_id"],
            dealer_id=row["dealer_id"],
            trigger=row["trigger"],
            source_ref=row["source_ref"],
            status=row["status"],
            counts=json.loads(row["counts_json"]),
            errors=json.loads(row["errors_json"]),
            warnings=json.loads(row["warnings_json"]),
            detail=row["detail"],
            archived=None if row["archived"] is None else bool(row["archived"]),
            started_at=row["started_at"],
            finished_at=row["finished_at"],
        )

    def list(self, config_id: Optional[int] = None, dealer_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        """Most recent run summaries first, without the per-row issue lists."""
        clauses, params = [], []
        if config_id is not None:
            clauses.append("config_id = ?")
            params.append(config_id)
        if dealer_id:
            clauses.append("dealer_id = ?")
            params.append(dealer_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = f"""
            SELECT run_id, config_id, dealer_id, trigger, source_ref, status, rows_read, rows_mapped,
                   inserted, updated, skipped, errored, detail, archived, started_at, finished_at
            FROM import_runs {where}
            ORDER BY started_at DESC
            LIMIT ?
        """
        params.append(limit)
        with self.db.connect() as conn:
            df = pd.read_sql_query(query, conn, params=params)
        if df.empty:
            return []
        df = df.astype(object).where(df.notna(), None)
        df["archived"] = df["archived"].map(lambda v: None if v is None else bool(v))
        return df.to_dict(orient="records")
