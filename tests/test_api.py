from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import add_nodes
from nodeguard.app.main import create_app
from nodeguard.app.models import STATUS_ARCHIVED
from nodeguard.app.runtime import build_runtime


@pytest.fixture
def runtime(tmp_path):
    return build_runtime(
        data_dir=str(tmp_path),
        db_path=str(tmp_path / "nodeguard.db"),
        singbox_path=str(tmp_path / "missing-sing-box"),
    )


@pytest.fixture
def client(runtime):
    with TestClient(create_app(runtime=runtime)) as c:
        yield c


def test_health(client):
    assert client.get("/health").json()["ok"] is True


def test_scheduler_starts_with_defaults(client):
    body = client.get("/api/scheduler").json()
    assert body["running"] is True
    assert body["message"] == "subscription enabled, verification enabled"


def test_settings_update_restarts_scheduler(client):
    r = client.put("/api/settings", json={"subscription_interval": 0, "verification_interval": 0})
    assert r.status_code == 200
    assert r.json()["scheduler"] == "all disabled"
    assert client.get("/api/scheduler").json()["running"] is False

    r = client.put("/api/settings", json={"nope": 1})
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": "unknown settings: nope"}


def test_verify_empty_pool(client):
    r = client.post("/api/verify?wait=true")
    assert r.status_code == 200
    log = r.json()["log"]
    assert log["pending_checked"] == 0
    assert log["error"] == ""
    assert client.get("/api/verify/logs").json()["logs"][0]["id"] == log["id"]


def test_verify_reports_probe_failure(client, runtime):
    add_nodes(runtime.store, 2)

    r = client.post("/api/verify?wait=true", json={"tags": []})

    assert r.status_code == 502
    body = r.json()
    assert body["ok"] is False
    assert body["error"].startswith("probe start failed:")
    assert body["log"]["pending_checked"] == 0


def test_verify_busy(client, runtime):
    with runtime.engine.cycle_lock:
        r = client.post("/api/verify")
    assert r.status_code == 409


def test_verify_tag_filter_without_match(client, runtime):
    add_nodes(runtime.store, 1)
    r = client.post("/api/verify?wait=true", json={"tags": ["elsewhere"]})
    assert r.status_code == 200
    assert r.json()["log"]["pending_checked"] == 0


def test_nodes_listing_and_unarchive(client, runtime):
    add_nodes(runtime.store, 1)
    (archived,) = add_nodes(runtime.store, 1, STATUS_ARCHIVED, start=2)

    assert client.get("/api/nodes/counts").json()["counts"] == {"pending": 1, "verified": 0, "archived": 1}
    listed = client.get("/api/nodes", params={"status": "archived"}).json()["nodes"]
    assert [n["key"] for n in listed] == [archived.key]
    assert client.get("/api/nodes", params={"status": "weird"}).status_code == 400

    assert client.post(f"/api/nodes/{archived.id}/unarchive").json() == {"ok": True}
    assert client.post("/api/nodes/9999/unarchive").status_code == 404
    assert client.get("/api/nodes/counts").json()["counts"]["pending"] == 2


def test_probe_status_when_stopped(client):
    probe = client.get("/api/probe").json()["probe"]
    assert probe["running"] is False
    assert client.post("/api/probe/stop").json() == {"ok": True}


def test_pipeline_run_without_subscriptions(client):
    assert client.post("/api/pipeline/run").json() == {"ok": True, "changed": False}
    assert client.get("/api/pipeline/logs").json()["logs"] == []


def test_log_tail(client, tmp_path):
    (tmp_path / "probe.log").write_text("\n".join(f"line {i}" for i in range(50)), encoding="utf-8")

    body = client.get("/api/logs/tail", params={"source": "probe", "lines": 20}).json()
    assert body["exists"] is True
    assert body["truncated"] is True
    assert body["text"].splitlines()[-1] == "line 49"
    assert len(body["text"].splitlines()) == 20

    assert client.get("/api/logs/tail", params={"source": "other"}).status_code == 400


def test_probe_control_requires_running_probe(client):
    assert client.get("/api/probe/connections").status_code == 409
    assert client.put("/api/probe/mode", json={"mode": "global"}).status_code == 409
