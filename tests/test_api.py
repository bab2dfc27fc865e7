import pytest
from fastapi.testclient import TestClient

from autolot.api import deps
from autolot.api.main import create_app
from autolot.config import settings

from conftest import DEALER, csv_rows, vin


def _config_payload(name="Nightly feed", **extra):
    payload = {
        "dealer_id": DEALER,
        "name": name,
        "field_mappings": [
            {"source_field": "VIN", "target_field": "vin", "field_order": 1, "is_required": True},
            {"source_field": "Make", "target_field": "make", "field_order": 2},
            {"source_field": "Model", "target_field": "model", "field_order": 3},
            {"source_field": "Year", "target_field": "year", "field_type": "integer", "field_order": 4},
            {"source_field": "Price", "target_field": "price", "field_type": "decimal", "field_order": 5},
            {"source_field": "Miles", "target_field": "odometer", "field_type": "integer", "field_order": 6},
        ],
    }
    payload.update(extra)
    return payload


@pytest.fixture
def client(tmp_path, monkeypatch):
    db_path = tmp_path / "autolot.db"
    upload_dir = tmp_path / "uploads"
    monkeypatch.setattr(settings.paths, "db_path", db_path)
    monkeypatch.setattr(settings.paths, "upload_dir", upload_dir)
    monkeypatch.setattr(settings.security, "api_token", None)
    app = create_app(db_path=db_path, upload_dir=upload_dir)
    yield TestClient(app)
    deps.reset()


def _create(client, **extra):
    resp = client.post("/imports/configs", json=_config_payload(**extra))
    assert resp.status_code == 201, resp.text
    return resp.json()["id"]


def _upload(client, content, name="feed.csv"):
    resp = client.post(
        "/imports/uploads",
        params={"dealer_id": DEALER},
        files={"file": (name, content.encode(), "text/csv")},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["source_ref"]


def test_health(client):
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["scheduler_running"] is False


def test_request_id_is_echoed(client):
    resp = client.get("/health", headers={"x-request-id": "abc123"})

    assert resp.headers["x-request-id"] == "abc123"


def test_malformed_request_id_is_replaced(client):
    resp = client.get("/health", headers={"x-request-id": "bad id!"})

    assert resp.headers["x-request-id"] != "bad id!"
    assert len(resp.headers["x-request-id"]) == 32


def test_config_crud(client):
    config_id = _create(client, processing={"batch_size": 2})

    resp = client.get(f"/imports/configs/{config_id}")
    assert resp.status_code == 200
    assert resp.json()["processing"]["batch_size"] == 2

    listed = client.get("/imports/configs", params={"dealer_id": DEALER}).json()
    assert [c["id"] for c in listed] == [config_id]

    resp = client.put(f"/imports/configs/{config_id}", json=_config_payload(name="Renamed"))
    assert resp.status_code == 200
    assert resp.json()["name"] == "Renamed"

    assert client.delete(f"/imports/configs/{config_id}").status_code == 204
    assert client.get(f"/imports/configs/{config_id}").status_code == 404


def test_name_conflict_and_check(client):
    _create(client)

    resp = client.post("/imports/configs", json=_config_payload())
    assert resp.status_code == 409
    assert resp.json()["error"] == "name_conflict"

    check = client.get("/imports/configs/check-name", params={"dealer_id": DEALER, "name": "Nightly feed"})
    assert check.json()["available"] is False
    check = client.get("/imports/configs/check-name", params={"dealer_id": "dealer-2", "name": "Nightly feed"})
    assert check.json()["available"] is True


def test_not_found_has_request_id(client):
    resp = client.get("/imports/configs/999")

    assert resp.status_code == 404
    assert resp.json()["error"] == "not_found"
    assert resp.json()["request_id"] == resp.headers["x-request-id"]


def test_invalid_config_rejected(client):
    bad_target = _config_payload()
    bad_target["field_mappings"][0]["target_field"] = "wheels"
    assert client.post("/imports/configs", json=bad_target).status_code == 422

    bad_rule = _config_payload()
    bad_rule["field_mappings"][1]["transformation_rule"] = "shout"
    resp = client.post("/imports/configs", json=bad_rule)
    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_config"


def test_password_is_masked(client):
    config_id = _create(
        client,
        connection={"source_kind": "sftp", "host": "sftp.example.com", "username": "feed", "password": "hunter2"},
    )

    body = client.get(f"/imports/configs/{config_id}").json()
    assert body["connection"]["password"] == "**********"
    assert "hunter2" not in client.get("/imports/configs").text


def test_upload_execute_and_read_run(client):
    config_id = _create(client, processing={"batch_size": 2})
    ref = _upload(client, csv_rows(*(f"{vin(n)},Honda,Civic,2020,100,5" for n in range(1, 4))))

    resp = client.post(f"/imports/configs/{config_id}/execute", json={"source_ref": ref})
    assert resp.status_code == 202
    run_id = resp.json()["run_id"]
    deps.get_run_manager().wait(run_id, timeout=10)

    run = client.get(f"/imports/runs/{run_id}").json()
    assert run["status"] == "completed"
    assert run["counts"]["inserted"] == 3
    assert run["counts"]["batches"] == 2
    listed = client.get("/imports/runs", params={"config_id": config_id}).json()
    assert [r["run_id"] for r in listed] == [run_id]


def test_execute_without_body_picks_pending_file(client):
    config_id = _create(client)
    _upload(client, csv_rows(f"{vin(1)},Honda,Civic,2020,100,5"))

    run_id = client.post(f"/imports/configs/{config_id}/execute").json()["run_id"]

    assert deps.get_run_manager().wait(run_id, timeout=10).status == "completed"


def test_execute_while_running_conflicts(client):
    config_id = _create(client)
    deps.get_registry().try_start_run(config_id, "busy-run")

    resp = client.post(f"/imports/configs/{config_id}/execute")

    assert resp.status_code == 409
    assert resp.json()["run_id"] == "busy-run"


def test_cancel_unknown_and_finished_runs(client):
    config_id = _create(client)
    assert client.post("/imports/runs/nope/cancel").status_code == 404
    assert client.get("/imports/runs/nope").status_code == 404

    _upload(client, csv_rows(f"{vin(1)},Honda,Civic,2020,100,5"))
    run_id = client.post(f"/imports/configs/{config_id}/execute").json()["run_id"]
    deps.get_run_manager().wait(run_id, timeout=10)

    assert client.post(f"/imports/runs/{run_id}/cancel").status_code == 409


def test_preview(client):
    config_id = _create(client)
    ref = _upload(client, csv_rows(f"{vin(1)},Honda,Civic,2020,100,5", f"{vin(2)},Ford,Focus,later,100,5"))

    resp = client.post(f"/imports/configs/{config_id}/preview", json={"source_ref": ref, "sample_size": 5})

    assert resp.status_code == 200
    body = resp.json()
    assert body["columns"][:3] == ["vin", "make", "model"]
    assert [r["is_valid"] for r in body["rows"]] == [True, False]
    assert body["rows"][0]["intent"] == "insert"


def test_preview_errors(client):
    config_id = _create(client)
    ref = _upload(client, "VIN,Make\nA,B,C\n")

    missing = client.post(f"/imports/configs/{config_id}/preview", json={"source_ref": "missing.csv"})
    malformed = client.post(f"/imports/configs/{config_id}/preview", json={"source_ref": ref})

    assert missing.status_code == 422
    assert missing.json()["error"] == "source_unreachable"
    assert malformed.status_code == 422
    assert malformed.json()["row_number"] == 1


def test_test_connection_lists_pending_files(client):
    config_id = _create(client)
    ref = _upload(client, csv_rows())

    resp = client.post(f"/imports/configs/{config_id}/test-connection")

    assert resp.json() == {"ok": True, "source_kind": "local_upload", "files": [ref]}


def test_settings_rows(client):
    resp = client.put("/imports/settings/processing", json={"batch_size": 500})
    assert resp.status_code == 200
    client.put("/imports/settings/processing", params={"dealer_id": DEALER}, json={"max_errors": 3})

    assert client.get("/imports/settings/processing").json()["values"] == {"batch_size": 500}
    assert client.get("/imports/settings/processing", params={"dealer_id": DEALER}).json()["values"] == {"max_errors": 3}
    assert client.put("/imports/settings/telemetry", json={"x": 1}).status_code == 422
    assert client.put("/imports/settings/connection", json={"password": "x"}).status_code == 422


def test_upload_size_guard(client, monkeypatch):
    monkeypatch.setattr(settings.security, "max_upload_mb", 0)

    resp = client.post(
        "/imports/uploads",
        params={"dealer_id": DEALER},
        files={"file": ("feed.csv", b"VIN\n", "text/csv")},
    )

    assert resp.status_code == 413


def test_auth_required_when_token_set(client, monkeypatch):
    monkeypatch.setattr(settings.security, "api_token", "s3cret")

    assert client.get("/imports/configs").status_code == 401
    assert client.get("/imports/configs", headers={"Authorization": "Bearer s3cret"}).status_code == 200
    assert client.get("/imports/configs", headers={"X-API-Key": "s3cret"}).status_code == 200
    assert client.get("/health").status_code == 200


def test_json_body_cap_is_separate_from_upload_cap(client, monkeypatch):
    monkeypatch.setattr(settings.security, "max_json_kb", 1)
    payload = _config_payload(name="x" * 2048)

    resp = client.post("/imports/configs", json=payload)
    upload = client.post(
        "/imports/uploads",
        params={"dealer_id": DEALER},
        files={"file": ("feed.csv", csv_rows(*(f"{vin(n)},Honda,Civic,2020,100,5" for n in range(1, 60))).encode(), "text/csv")},
    )

    assert resp.status_code == 413
    assert resp.json()["error"] == "request_too_large"
    assert upload.status_code == 201
