from __future__ import annotations

import csv
import io

import pytest

pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from batchgrader.export import CSV_HEADERS
from batchgrader.main import app
from batchgrader.models import Submission
from batchgrader.record_store import get_record_store
from batchgrader.repository import submission_key
from batchgrader.settings import settings

RUBRIC = "Argument: claim evidence hypothesis (50%)\nAnalysis: data trend results (50%)"


@pytest.fixture
def client(monkeypatch):
    monkeypatch.delenv("BACKEND_API_KEY", raising=False)
    monkeypatch.setattr(settings, "transcriber", "stub")
    monkeypatch.setattr(settings, "grader", "rule_based")
    monkeypatch.setattr(settings, "embedder", "none")
    monkeypatch.setattr(settings, "worker_secret", None)
    monkeypatch.setattr(settings, "fold_backoff_seconds", 0.0)
    with TestClient(app) as test_client:
        yield test_client


def _upload(client: TestClient, batch_id: str, filename: str) -> dict:
    presign = client.post("/submissions/presign", json={"batch_id": batch_id, "filename": filename})
    assert presign.status_code == 200
    ticket = presign.json()
    assert ticket["file_key"] == f"batches/{batch_id}/{ticket['submission_id']}.mp4"

    put = client.put(ticket["upload_url"], content=b"fake video bytes", headers={"Content-Type": "video/mp4"})
    assert put.status_code == 200

    created = client.post(
        "/submissions",
        json={
            "batch_id": batch_id,
            "file_key": ticket["file_key"],
            "original_filename": filename,
            "size_bytes": 16,
            "submission_id": ticket["submission_id"],
        },
    )
    assert created.status_code == 201
    return created.json()


def test_upload_process_and_review_batch(client: TestClient) -> None:
    batch_resp = client.post("/batches", json={"name": "Period 2 talks", "rubric_criteria": RUBRIC})
    assert batch_resp.status_code == 201
    batch_id = batch_resp.json()["id"]

    submission = _upload(client, batch_id, "jane_doe_presentation.mp4")
    assert submission["student_name"] == "Jane Doe"
    assert submission["status"] == "queued"

    download = client.get("/files/local", params={"key": submission["file"]["key"]})
    assert download.status_code == 200
    assert download.content == b"fake video bytes"

    status_resp = client.get(f"/batches/{batch_id}/status")
    assert status_resp.status_code == 200
    assert status_resp.json()["grading_status"]["state"] == "not_started"
    assert status_resp.json()["grading_status"]["total_count"] == 1

    processed = client.post("/processing/process-now", params={"batch_id": batch_id})
    assert processed.status_code == 200
    payload = processed.json()
    assert payload["processed"] is True
    assert payload["outcome"]["status"] == "ready"
    assert payload["queue_length"] == 0

    graded = client.get(f"/submissions/{submission['id']}").json()
    assert graded["status"] == "ready"
    assert graded["transcript"].startswith("[stub-transcript]")
    assert graded["rubric_evaluation"]["overall_score"] is not None
    assert [item["criterion"] for item in graded["rubric_evaluation"]["criteria_breakdown"]] == ["Argument", "Analysis"]

    status_payload = client.get(f"/batches/{batch_id}/status").json()
    assert status_payload["grading_status"]["state"] == "completed"
    assert status_payload["batch"]["status"] == "completed"
    assert status_payload["batch"]["processed_count"] == 1
    assert status_payload["status_counts"] == {"ready": 1}

    listed = client.get("/batches").json()
    assert [batch["id"] for batch in listed] == [batch_id]
    assert listed[0]["average_score"] == round(graded["rubric_evaluation"]["overall_score"])

    idle = client.post("/processing/process-now", params={"batch_id": batch_id}).json()
    assert idle["processed"] is False
    assert idle["message"] == "No queued submissions"


def test_duplicate_enqueue_returns_same_submission(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Retries"}).json()["id"]
    body = {"batch_id": batch_id, "file_key": "uploads/sam.mp4", "original_filename": "sam.mp4"}

    first = client.post("/submissions", json=body).json()
    second = client.post("/submissions", json=body).json()

    assert first["id"] == second["id"]
    submissions = client.get(f"/batches/{batch_id}/submissions").json()
    assert [item["id"] for item in submissions] == [first["id"]]


def test_enqueue_for_unknown_batch_is_404(client: TestClient) -> None:
    response = client.post(
        "/submissions",
        json={"batch_id": "missing", "file_key": "uploads/x.mp4", "original_filename": "x.mp4"},
    )

    assert response.status_code == 404


def test_status_read_recovers_orphaned_submission(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Orphans"}).json()["id"]
    orphan = Submission(
        id="orphan-1",
        batch_id=batch_id,
        file={"key": "uploads/lost.mp4", "original_filename": "lost.mp4"},
        student_name="Lost Student",
    )
    get_record_store().set(submission_key(orphan.id), orphan.model_dump_json())

    payload = client.get(f"/batches/{batch_id}/status").json()

    assert payload["recovered_submissions"] == 1
    assert [item["id"] for item in payload["submissions"]] == ["orphan-1"]
    assert payload["batch"]["total_submissions"] == 1


def test_regrade_requeues_and_worker_processes(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Regrade", "rubric_criteria": RUBRIC}).json()["id"]
    submission = _upload(client, batch_id, "alex_kim.mp4")
    first_run = client.get("/processing/worker").json()
    assert first_run["processed"] == 1

    regrade = client.post("/submissions/regrade", json={"submission_ids": [submission["id"], "missing"]})
    assert regrade.status_code == 200
    assert regrade.json() == {"requeued": [submission["id"]], "missing": ["missing"]}
    assert client.get(f"/submissions/{submission['id']}").json()["rubric_evaluation"] is None

    second_run = client.post("/processing/worker").json()
    assert second_run["processed"] == 1
    assert second_run["outcomes"][0]["status"] == "ready"
    assert second_run["remaining"] == 0


def test_expected_uploads_and_delete(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Cleanup"}).json()["id"]
    expected = client.post(f"/batches/{batch_id}/expected-uploads", json={"count": 2})
    assert expected.json()["expected_upload_count"] == 2

    keep = _upload(client, batch_id, "keep_me.mp4")
    drop = _upload(client, batch_id, "drop_me.mp4")

    assert client.delete(f"/submissions/{drop['id']}").status_code == 204
    assert client.get(f"/submissions/{drop['id']}").status_code == 404
    assert client.get("/files/local", params={"key": drop["file"]["key"]}).status_code == 404

    deleted = client.delete(f"/batches/{batch_id}")
    assert deleted.json() == {"deleted": True, "deleted_files": 1}
    assert client.get(f"/batches/{batch_id}").status_code == 404
    assert client.get(f"/submissions/{keep['id']}").status_code == 404


def test_context_bundle_grading_flow(client: TestClient) -> None:
    course = client.post("/context/courses", json={"name": "Biology", "code": "BIO 101", "key_themes": ["energy"]}).json()
    rubric = client.post(
        "/context/rubrics",
        json={
            "name": "Talk rubric",
            "criteria": [{"id": "criterion-1", "name": "Evidence", "description": "data results evidence"}],
            "grading_scale": {"kind": "points", "max_score": 20},
        },
    ).json()
    assignment = client.post(
        "/context/assignments",
        json={"course_id": course["id"], "name": "Lab talk", "rubric_id": rubric["id"]},
    ).json()
    document = client.post(
        "/context/documents",
        json={"course_id": course["id"], "name": "Lecture 1", "content": "Enzymes lower activation energy."},
    )
    assert document.status_code == 201
    assert document.json()["chunk_count"] == 0
    bundle = client.post(
        "/context/bundles",
        json={"course_id": course["id"], "assignment_id": assignment["id"], "name": "Fall"},
    ).json()
    version = client.post(f"/context/bundles/{bundle['id']}/versions", json={}).json()
    assert version["version"] == 1

    grading_context = client.get(f"/context/bundle-versions/{version['id']}/grading-context").json()
    assert grading_context["course_summary"] == "Biology (BIO 101) Key themes: energy."
    assert grading_context["criteria"][0]["name"] == "Evidence"

    batch_id = client.post("/batches", json={"name": "Bundled", "bundle_version_id": version["id"]}).json()["id"]
    submission = _upload(client, batch_id, "jane_doe.mp4")
    client.post("/processing/process-now", params={"batch_id": batch_id})

    graded = client.get(f"/submissions/{submission['id']}").json()
    assert graded["bundle_version_id"] == version["id"]
    assert graded["rubric_evaluation"]["max_possible_score"] == 20
    assert graded["rubric_evaluation"]["criteria_breakdown"][0]["criterion"] == "Evidence"


def test_context_not_found_errors(client: TestClient) -> None:
    assert client.post("/context/assignments", json={"course_id": "missing", "name": "Talk"}).status_code == 404
    assert client.delete("/context/documents/missing").status_code == 404
    assert client.get("/context/bundle-versions/missing/grading-context").status_code == 404


def test_batch_detail_recovers_orphaned_submission(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Detail view"}).json()["id"]
    orphan = Submission(
        id="orphan-2",
        batch_id=batch_id,
        file={"key": "uploads/lost.mp4", "original_filename": "lost.mp4"},
        student_name="Lost Student",
    )
    get_record_store().set(submission_key(orphan.id), orphan.model_dump_json())

    detail = client.get(f"/batches/{batch_id}").json()

    assert detail["total_submissions"] == 1
    assert detail["submission_ids"] == ["orphan-2"]


def test_export_batch_results_as_csv_and_json(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Period 2 talks", "rubric_criteria": RUBRIC}).json()["id"]
    _upload(client, batch_id, "zoe_adams.mp4")
    _upload(client, batch_id, "amy_brown.mp4")
    client.post("/processing/process-now", params={"batch_id": batch_id})

    exported = client.get(f"/batches/{batch_id}/export")

    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    assert 'filename="Period_2_talks_results.csv"' in exported.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(exported.text)))
    assert rows[0] == CSV_HEADERS
    assert [row[0] for row in rows[1:]] == ["Amy Brown", "Zoe Adams"]
    statuses = {row[0]: row[2] for row in rows[1:]}
    assert sorted(statuses.values()) == ["queued", "ready"]
    graded = next(row for row in rows[1:] if row[2] == "ready")
    assert graded[3]
    assert graded[10]

    as_json = client.get(f"/batches/{batch_id}/export", params={"format": "json"}).json()
    assert as_json["batch"]["id"] == batch_id
    assert [item["student_name"] for item in as_json["submissions"]] == ["Amy Brown", "Zoe Adams"]

    assert client.get(f"/batches/{batch_id}/export", params={"format": "xml"}).status_code == 422
    assert client.get("/batches/missing/export").status_code == 404


def test_processing_status_reports_queue_and_services(client: TestClient) -> None:
    batch_id = client.post("/batches", json={"name": "Queue"}).json()["id"]
    _upload(client, batch_id, "jane_doe_presentation.mp4")

    payload = client.get("/processing/status").json()

    assert payload == {
        "queue_length": 1,
        "transcriber": "stub",
        "grader": "rule_based",
        "embedder": "none",
        "worker_max_per_run": settings.worker_max_per_run,
        "worker_secret_configured": False,
    }
