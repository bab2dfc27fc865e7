import sqlite3
from datetime import UTC, datetime

import pytest

from autolot.data.repositories import ImportConfigRegistry
from autolot.exceptions import ConfigConflictError, ConfigError, ConfigNotFoundError
from autolot.imports.models import ConnectionSettings, FieldMapping, ImportConfig, ProcessingPolicy
from autolot.imports.secrets import CredentialVault
from autolot.imports.settings_resolver import resolve_config, resolve_section

from conftest import DEALER, basic_mappings


def _config(name="Nightly feed", dealer_id=DEALER, **kwargs):
    kwargs.setdefault("field_mappings", basic_mappings())
    return ImportConfig(dealer_id=dealer_id, name=name, **kwargs)


def test_create_and_get_round_trip(registry):
    created = registry.create(_config(processing=ProcessingPolicy(batch_size=250)))

    loaded = registry.get(created.id)
    assert loaded.name == "Nightly feed"
    assert loaded.processing.batch_size == 250
    assert [m.source_field for m in loaded.field_mappings] == ["VIN", "Make", "Model", "Year", "Price", "Miles"]
    assert registry.get_run_state(created.id).state == "idle"


def test_only_explicit_fields_are_stored(registry):
    created = registry.create(_config(processing=ProcessingPolicy(batch_size=250)))

    assert registry.get(created.id).processing.model_fields_set == {"batch_size"}


def test_mappings_load_in_field_order(registry):
    mappings = [
        FieldMapping(source_field="B", target_field="make", field_order=2),
        FieldMapping(source_field="A", target_field="vin", field_order=1),
        FieldMapping(source_field="R", target_field="color", field_order=3, transformation_rule={"type": "lookup", "values": {"R": "Red"}}),
    ]
    created = registry.create(_config(field_mappings=mappings))

    loaded = registry.get(created.id).field_mappings
    assert [m.source_field for m in loaded] == ["A", "B", "R"]
    assert loaded[2].transformation_rule == {"type": "lookup", "values": {"R": "Red"}}


def test_name_unique_per_dealer(registry):
    registry.create(_config())

    with pytest.raises(ConfigConflictError):
        registry.create(_config())
    assert registry.create(_config(dealer_id="dealer-2")).id
    assert not registry.is_name_available(DEALER, " Nightly feed ")
    assert registry.is_name_available(DEALER, "Weekly feed")


def test_rename_into_existing_name_conflicts(registry):
    registry.create(_config(name="A"))
    b = registry.create(_config(name="B"))

    with pytest.raises(ConfigConflictError):
        registry.update(b.id, _config(name="A"))
    assert registry.update(b.id, _config(name="B")).name == "B"


def test_update_cannot_change_dealer(registry):
    created = registry.create(_config())

    with pytest.raises(ConfigError):
        registry.update(created.id, _config(dealer_id="dealer-2"))


def test_update_resets_next_run(registry):
    created = registry.create(_config())
    registry.set_next_run(created.id, datetime(2030, 1, 1, tzinfo=UTC))

    registry.update(created.id, _config())

    assert registry.get_run_state(created.id).next_run_at is None


def test_delete(registry):
    created = registry.create(_config())

    registry.delete(created.id)

    with pytest.raises(ConfigNotFoundError):
        registry.get(created.id)
    with pytest.raises(ConfigNotFoundError):
        registry.delete(created.id)
    assert registry.list_run_states() == []


def test_unknown_transformation_rejected(registry):
    mappings = [FieldMapping(source_field="VIN", target_field="vin", transformation_rule="shout")]

    with pytest.raises(ConfigError, match="shout"):
        registry.create(_config(field_mappings=mappings))


def test_password_encrypted_at_rest(registry, db):
    conn_settings = ConnectionSettings(source_kind="sftp", host="sftp.example.com", username="u", password="hunter2")
    created = registry.create(_config(connection=conn_settings))

    with db.connect() as conn:
        row = conn.execute("SELECT * FROM import_connection_settings WHERE config_id = ?", (created.id,)).fetchone()
    assert "hunter2" not in row["settings_json"]
    assert "hunter2" not in row["password_encrypted"]
    assert registry.get(created.id).connection.password.get_secret_value() == "hunter2"


def test_password_kept_on_update_without_password(registry):
    created = registry.create(
        _config(connection=ConnectionSettings(source_kind="ftp", host="ftp.example.com", password="hunter2"))
    )

    registry.update(created.id, _config(connection=ConnectionSettings(source_kind="ftp", host="ftp2.example.com")))
    masked = ConnectionSettings(source_kind="ftp", host="ftp3.example.com", password="**********")
    updated = registry.update(created.id, _config(connection=masked))

    assert updated.connection.host == "ftp3.example.com"
    assert updated.connection.password.get_secret_value() == "hunter2"


def test_wrong_secret_key_cannot_decrypt(registry, db):
    created = registry.create(
        _config(connection=ConnectionSettings(source_kind="ftp", host="ftp.example.com", password="hunter2"))
    )

    other = ImportConfigRegistry(db, vault=CredentialVault("another-secret"))
    with pytest.raises(ConfigError):
        other.get(created.id)


def test_settings_rows_upsert_and_delete(registry):
    registry.put_settings("processing", {"batch_size": 500, "max_errors": 10})
    registry.put_settings("processing", {"batch_size": 200, "max_errors": None})

    assert registry.get_settings("processing") == {"batch_size": 200}


def test_settings_rows_validation(registry):
    with pytest.raises(ConfigError, match="Unknown processing settings"):
        registry.put_settings("processing", {"speed": 11})
    with pytest.raises(ConfigError):
        registry.put_settings("connection", {"password": "x"})
    with pytest.raises(ConfigError):
        registry.get_settings("telemetry")


def test_settings_resolution_precedence(registry):
    registry.put_settings("processing", {"batch_size": 500, "max_errors": 10, "validate_data": False})
    registry.put_settings("processing", {"max_errors": 5, "batch_size": 50}, dealer_id=DEALER)
    registry.put_settings("processing", {"max_errors": 1}, dealer_id="dealer-2")
    created = registry.create(_config(processing=ProcessingPolicy(batch_size=25)))

    global_rows, dealer_rows = registry.settings_layers(DEALER)
    resolved = resolve_config(registry.get(created.id), global_rows, dealer_rows)

    assert resolved.processing.batch_size == 25
    assert resolved.processing.max_errors == 5
    assert resolved.processing.validate_data is False
    assert resolved.processing.duplicate_handling == "skip"


def test_resolution_reports_invalid_combination():
    with pytest.raises(ConfigError):
        resolve_section(ProcessingPolicy, {"batch_size": 0})


def test_resolution_ignores_unknown_keys():
    assert resolve_section(ProcessingPolicy, {"legacy_flag": True}, {"max_errors": 2}).max_errors == 2


def test_try_start_run_is_exclusive(registry):
    created = registry.create(_config())

    assert registry.try_start_run(created.id, "r1") is True
    assert registry.try_start_run(created.id, "r2") is False
    state = registry.get_run_state(created.id)
    assert (state.state, state.current_run_id) == ("running", "r1")

    finished = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
    registry.finish_run(created.id, "r1", finished, None)
    state = registry.get_run_state(created.id)
    assert (state.state, state.current_run_id, state.last_run_at) == ("idle", None, finished)
    assert registry.try_start_run(created.id, "r2") is True


def test_finish_ignores_other_run(registry):
    created = registry.create(_config())
    registry.try_start_run(created.id, "r1")

    registry.finish_run(created.id, "stale", datetime.now(UTC), None)

    assert registry.get_run_state(created.id).state == "running"


def test_due_transitions_and_stale_reset(registry):
    a = registry.create(_config(name="A"))
    b = registry.create(_config(name="B"))

    assert registry.mark_due(a.id) is True
    assert registry.mark_due(a.id) is False
    registry.try_start_run(b.id, "r1")

    assert registry.reset_stale_runs() == 2
    assert {s.state for s in registry.list_run_states()} == {"idle"}


def test_foreign_keys_cascade(registry, db):
    created = registry.create(_config())
    registry.delete(created.id)

    with db.connect() as conn:
        count = conn.execute("SELECT COUNT(*) FROM import_field_mappings").fetchone()[0]
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute("INSERT INTO import_run_state (config_id, state) VALUES (999, 'idle')")
    assert count == 0
