from pathlib import Path
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from apps.api.main import app
from apps.api.routers.patients import get_reconciler
from packages.core.audit import InMemoryAuditSink
from packages.pipeline.reconciler import RecordReconciler
from packages.pipeline.store import FileSnapshotStore
from tests.builders import diagnosis, document, medication, ts


@pytest.fixture
def client() -> Iterator[TestClient]:
    reconciler = RecordReconciler(audit_sink=InMemoryAuditSink(), sleep=lambda _: None)
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _post_documents(client: TestClient) -> None:
    for raw in (
        document("doc-a", [medication(dosage="500mg"), diagnosis("Hypertension")], extraction_timestamp=ts(9)),
        document("doc-b", [medication(dosage="850mg")], extraction_timestamp=ts(10)),
    ):
        response = client.post(f"/v1/patients/p1/documents/{raw['document_id']}", json=raw)
        assert response.status_code == 200


def test_ingest_aggregate_and_read_back(client: TestClient) -> None:
    _post_documents(client)

    response = client.post("/v1/patients/p1/aggregate")
    assert response.status_code == 200
    payload = response.json()
    assert payload["version"] == 1
    assert payload["complete"] is True

    timeline = client.get("/v1/patients/p1/timeline").json()
    assert len(timeline["events"]) == 3

    conflicts = client.get("/v1/patients/p1/conflicts").json()
    assert len(conflicts) == 1
    assert conflicts[0]["category"] == "medication"
    assert conflicts[0]["differing_fields"] == ["dosage"]

    snapshot = client.get("/v1/patients/p1/snapshots/1").json()
    assert snapshot["version"] == 1


def test_ingest_reports_rejected_entities(client: TestClient) -> None:
    raw = document("doc-a", [medication(), {"category": "vitals", "fields": {}}])

    response = client.post("/v1/patients/p1/documents/doc-a", json=raw)

    assert response.status_code == 200
    payload = response.json()
    assert payload["accepted"] == 1
    assert payload["rejected"][0]["kind"] == "unknown_category"


def test_invalid_document_uses_error_envelope(client: TestClient) -> None:
    response = client.post(
        "/v1/patients/p1/documents/doc-a", json={"document_id": "doc-a", "entities": "x"}
    )

    assert response.status_code == 422
    error = response.json()["error"]
    assert error["code"] == "invalid_document"
    assert error["detail"]["reason"] == "entities_not_list"


def test_diff_between_versions(client: TestClient) -> None:
    _post_documents(client)
    client.post("/v1/patients/p1/aggregate")
    raw = document("doc-c", [diagnosis("Diabetes")])
    client.post("/v1/patients/p1/documents/doc-c", json=raw)
    client.post("/v1/patients/p1/aggregate")

    response = client.get("/v1/patients/p1/diff", params={"from_version": 1, "to_version": 2})

    assert response.status_code == 200
    payload = response.json()
    assert [event["semantic_key"] for event in payload["added_events"]] == ["diabetes"]
    assert payload["removed_events"] == []


def test_unknown_snapshot_is_404(client: TestClient) -> None:
    assert client.get("/v1/patients/p9/timeline").status_code == 404
    response = client.get("/v1/patients/p9/snapshots/3")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


def test_aggregate_without_documents_is_incomplete(client: TestClient) -> None:
    payload = client.post("/v1/patients/p1/aggregate").json()

    assert payload["incomplete"] is True
    assert payload["reason"] == "no_documents"


def test_purge_without_active_run(client: TestClient) -> None:
    payload = client.post("/v1/patients/p1/session/purge").json()

    assert payload == {"patient_id": "p1", "cancelled": False}


def test_health_routes() -> None:
    client = TestClient(app)

    assert client.get("/healthz").json() == {"status": "ok"}
    assert client.get("/").json()["status"] == "ok"


def test_file_backed_routes_accept_unsafe_patient_ids(tmp_path: Path) -> None:
    reconciler = RecordReconciler(
        audit_sink=InMemoryAuditSink(),
        snapshot_store=FileSnapshotStore(tmp_path),
        sleep=lambda _: None,
    )
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    try:
        client = TestClient(app)
        raw = document("doc-a", [diagnosis("Hypertension")])
        assert client.post("/v1/patients/john%20doe/documents/doc-a", json=raw).status_code == 200

        response = client.post("/v1/patients/john%20doe/aggregate")

        assert response.status_code == 200
        assert response.json()["version"] == 1
        timeline = client.get("/v1/patients/john%20doe/timeline")
        assert timeline.status_code == 200
        assert len(timeline.json()["events"]) == 1
        assert reconciler.snapshot_store.versions("john doe") == [1]
    finally:
        app.dependency_overrides.clear()
