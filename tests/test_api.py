from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from outreach_pipeline.api.app import create_app
from outreach_pipeline.config.load_config import AppConfig
from outreach_pipeline.runtime.service import PipelineService


@pytest.fixture()
def service(db_path: str, app_config: AppConfig) -> PipelineService:
    return PipelineService(db_path=db_path, app_config=app_config)


def _create(client: TestClient, *, kind: str = "enrichment", n: int = 2, **extra: object) -> dict:
    body = {"kind": kind, "inputs": [{"profile_ref": f"p{i}"} for i in range(n)], "dry_run": True, **extra}
    resp = client.post("/api/v1/batches", json=body)
    assert resp.status_code == 200, resp.text
    return resp.json()


def test_dry_run_batch_end_to_end(service: PipelineService) -> None:
    with TestClient(create_app(service)) as client:
        created = _create(client, kind="artifact", n=3)
        batch_id = created["batch"]["batch_id"]
        assert created["batch"]["status"] == "pending"
        assert [u["status"] for u in created["units"]] == ["pending"] * 3

        started = client.post(f"/api/v1/batches/{batch_id}/start").json()
        assert started["started"] is True
        assert service.wait(batch_id, timeout_s=10.0)

        batch = client.get(f"/api/v1/batches/{batch_id}").json()["batch"]
        assert batch["status"] == "complete"
        assert batch["unit_counts"] == {"complete": 3}

        units = client.get(f"/api/v1/batches/{batch_id}/units").json()["items"]
        assert all(u["result"]["dry_run"] is True for u in units)

        unit_id = units[0]["unit_id"]
        events = client.get(f"/api/v1/units/{unit_id}/events", params={"limit": 2}).json()
        assert len(events["items"]) == 2
        assert events["has_more"] is True
        rest = client.get(
            f"/api/v1/units/{unit_id}/events", params={"limit": 500, "cursor": events["next_cursor"]}
        ).json()
        seen = {e["event_id"] for e in events["items"]} | {e["event_id"] for e in rest["items"]}
        assert len(seen) == len(events["items"]) + len(rest["items"])

        completed = client.get(f"/api/v1/units/{unit_id}/events", params={"event_type": "unit_completed"}).json()
        assert [e["event_type"] for e in completed["items"]] == ["unit_completed"]

        finalized = client.post(f"/api/v1/batches/{batch_id}/finalize").json()
        assert finalized == {"batch_id": batch_id, "status": "complete", "finalized": True}


def test_list_batches_paginates_newest_first(service: PipelineService) -> None:
    with TestClient(create_app(service)) as client:
        ids = [_create(client, n=1)["batch"]["batch_id"] for _ in range(3)]

        page1 = client.get("/api/v1/batches", params={"limit": 2}).json()
        assert page1["has_more"] is True
        page2 = client.get("/api/v1/batches", params={"limit": 2, "cursor": page1["next_cursor"]}).json()
        assert page2["has_more"] is False
        listed = [b["batch_id"] for b in page1["items"] + page2["items"]]
        assert sorted(listed) == sorted(ids)

        only_discovery = client.get("/api/v1/batches", params={"kind": "discovery"}).json()
        assert only_discovery["items"] == []


def test_error_envelopes(service: PipelineService) -> None:
    with TestClient(create_app(service)) as client:
        missing = client.get("/api/v1/batches/batch_missing")
        assert missing.status_code == 404
        assert missing.json()["error"]["code"] == "not_found"

        bad_status = client.get("/api/v1/batches", params={"status": "exploded"})
        assert bad_status.status_code == 400
        assert bad_status.json()["error"]["code"] == "invalid_argument"

        bad_kind = client.post("/api/v1/batches", json={"kind": "postcards", "inputs": [{"profile_ref": "p"}], "dry_run": True})
        assert bad_kind.status_code == 400

        empty = client.post("/api/v1/batches", json={"kind": "discovery", "inputs": [], "dry_run": True})
        assert empty.status_code == 400
        assert empty.json()["error"]["message"] == "Request validation failed."

        bad_cursor = client.get("/api/v1/batches", params={"cursor": "nope"})
        assert bad_cursor.status_code == 400

        unit_id = _create(client, n=1)["units"][0]["unit_id"]
        too_many = client.get(f"/api/v1/units/{unit_id}/events", params={"limit": 501})
        assert too_many.status_code == 400


def test_normal_batch_requires_api_key(service: PipelineService, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with TestClient(create_app(service)) as client:
        resp = client.post("/api/v1/batches", json={"kind": "discovery", "inputs": [{"profile_ref": "p"}]})
        assert resp.status_code == 503
        assert resp.json()["error"]["details"]["missing"] == ["OPENAI_API_KEY"]


def test_worker_disabled_rejects_start(service: PipelineService, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OUTREACH_ENABLE_WORKER", "0")
    with TestClient(create_app(service)) as client:
        batch_id = _create(client, n=1)["batch"]["batch_id"]
        resp = client.post(f"/api/v1/batches/{batch_id}/start")
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "dependency_unavailable"

        # Cancelling does not need the worker.
        cancelled = client.post(f"/api/v1/batches/{batch_id}/cancel", json={"reason": "not needed"}).json()
        assert cancelled["status"] == "cancelled"

        worker = client.get("/api/v1/system/worker").json()
        assert worker["worker"]["enabled"] is False
        assert worker["queue"]["batches_by_status"] == {"cancelled": 1}


def test_unit_endpoints(service: PipelineService) -> None:
    with TestClient(create_app(service)) as client:
        created = _create(client, kind="discovery", n=2)
        batch_id = created["batch"]["batch_id"]
        u0, u1 = (u["unit_id"] for u in created["units"])

        ran = client.post(f"/api/v1/units/{u0}/run").json()
        assert ran["outcome"]["status"] == "complete"
        assert ran["unit"]["result"]["recommendation"] in {"HOME", "OFFICE", "COURIER"}

        cancelled = client.post(f"/api/v1/units/{u1}/cancel").json()
        assert cancelled["status"] == "cancelled"
        assert client.get(f"/api/v1/batches/{batch_id}").json()["batch"]["status"] == "cancelled"

        conflict = client.post(f"/api/v1/units/{u0}/reset")
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "conflict"

        stale = client.get("/api/v1/units/stale").json()
        assert stale["items"] == []
        assert stale["older_than_s"] == service.app_config.recovery.stale_after_s

        assert client.get("/api/v1/units/unit_missing").status_code == 404


def test_health_and_version(service: PipelineService) -> None:
    with TestClient(create_app(service)) as client:
        assert client.get("/api/v1/healthz").json() == {"status": "ok"}
        version = client.get("/api/v1/version").json()
        assert version["service"] == "outreach-pipeline"
        assert version["schema_version"] >= 1
