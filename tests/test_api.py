import io
from typing import List

import pytest
from fastapi.testclient import TestClient

from api import main
from api.main import app, get_dispatcher
from common import storage
from common.errors import StoreError
from common.job_schema import JobStatus, MediaKind
from worker import cleanup
from worker.dispatcher import Dispatcher
from worker.processor import process_job


class RecordingDispatcher:
    """Accepts immediate submissions without running them."""

    def __init__(self):
        self.submitted: List[str] = []

    def submit(self, job_id: str):
        self.submitted.append(job_id)


@pytest.fixture
def recorder():
    return RecordingDispatcher()


@pytest.fixture
def client(app_settings, recorder):
    app.dependency_overrides[get_dispatcher] = lambda: recorder
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _upload(client, name="photo.jpg", content=b"\xff\xd8\xff" + b"0" * 100, **form):
    return client.post(
        "/api/compress",
        files={"file": (name, io.BytesIO(content), "application/octet-stream")},
        data=form,
    )


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["service"] == "media-compress"
    assert "timestamp" in body


def test_upload_creates_pending_job_and_dispatches_it(client, recorder, app_settings):
    response = _upload(client, quality="70", width="640", bitrate="1M")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"] == "processing"
    assert body["fileName"] == "photo.jpg"
    assert body["fileType"] == "image"
    assert body["originalSize"] == 103

    job = storage.get_latest_job(body["fileId"])
    assert job.id == body["jobId"]
    assert job.status == JobStatus.PENDING
    assert job.media_kind == MediaKind.IMAGE
    # bitrate is not an image option
    assert job.options == {"quality": 70, "width": 640}
    assert job.source_path == str(app_settings.upload_dir / f"{body['fileId']}.jpg")
    assert recorder.submitted == [job.id]


def test_pdf_quality_is_a_preset_name(client):
    response = _upload(client, name="report.pdf", content=b"%PDF-1.4", pdfQuality="screen", dpi="96", quality="5")

    job = storage.get_latest_job(response.json()["fileId"])
    assert job.options == {"quality": "screen", "dpi": 96}


def test_unsupported_extension_is_rejected_before_anything_is_written(client, recorder, app_settings):
    response = _upload(client, name="notes.txt", content=b"hello")

    assert response.status_code == 400
    assert "Unsupported file type" in response.json()["error"]
    assert list(app_settings.upload_dir.iterdir()) == []
    assert storage.list_jobs_by_status(JobStatus.PENDING, 10) == []
    assert recorder.submitted == []


def test_missing_file_is_rejected(client):
    response = client.post("/api/compress", data={"quality": "80"})

    assert response.status_code == 400
    assert response.json()["error"] == "No file uploaded"


def test_non_numeric_option_is_rejected(client, app_settings):
    response = _upload(client, quality="high")

    assert response.status_code == 400
    assert list(app_settings.upload_dir.iterdir()) == []


def test_oversized_upload_is_rejected(client, app_settings, monkeypatch):
    monkeypatch.setattr(app_settings, "max_upload_bytes", 10)

    response = _upload(client, content=b"x" * 11)

    assert response.status_code == 413
    assert list(app_settings.upload_dir.iterdir()) == []
    assert storage.list_jobs_by_status(JobStatus.PENDING, 10) == []


def test_status_unknown_file_is_404(client):
    response = client.get("/api/status/unknown")

    assert response.status_code == 404
    assert response.json() == {"error": "Job not found: unknown"}


def test_upload_compress_and_poll_scenario(app_settings, writing_executor):
    dispatcher = Dispatcher(batch_size=1, processor=lambda job_id: process_job(job_id, writing_executor(1_048_576)))
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    try:
        with TestClient(app) as client:
            response = _upload(client, name="big.jpg", content=b"\xff" * 5_242_880, quality="80")
            assert response.status_code == 200
            body = response.json()
            assert body["status"] == "processing"
            assert body["originalSize"] == 5_242_880

            dispatcher.shutdown(wait=True)

            status = client.get(f"/api/status/{body['fileId']}").json()
    finally:
        app.dependency_overrides.clear()

    assert status["status"] == "completed"
    assert status["compressedSize"] == 1_048_576
    assert status["compressionRatio"] == "80.00%"
    assert "error" not in status


def test_download_while_processing_is_400(client, make_job):
    job = make_job()
    storage.claim_job(job.id)

    response = client.get(f"/api/download/{job.external_id}")

    assert response.status_code == 400
    assert response.json() == {"error": "Compression not completed", "status": "processing"}


def test_download_completed_job_streams_attachment(client, make_job, app_settings):
    job = make_job(name="Holiday Photo.jpg")
    result = app_settings.compressed_dir / f"{job.external_id}.jpg"
    result.write_bytes(b"compressed-bytes")
    storage.claim_job(job.id)
    storage.complete_job(job.id, result, len(b"compressed-bytes"))

    response = client.get(f"/api/download/{job.external_id}")

    assert response.status_code == 200
    assert response.content == b"compressed-bytes"
    assert response.headers["content-type"] == "application/octet-stream"
    disposition = response.headers["content-disposition"]
    assert disposition.startswith("attachment")
    assert "Holiday" in disposition


def test_download_with_missing_result_file_is_404(client, make_job, tmp_path):
    job = make_job()
    storage.claim_job(job.id)
    storage.complete_job(job.id, tmp_path / "vanished.jpg", 10)

    response = client.get(f"/api/download/{job.external_id}")

    assert response.status_code == 404


def test_download_unknown_file_is_404(client):
    assert client.get("/api/download/unknown").status_code == 404


def test_failed_job_status_reports_error(client, make_job):
    job = make_job()
    storage.claim_job(job.id)
    storage.fail_job(job.id, "Ghostscript executable not found: gs")

    body = client.get(f"/api/status/{job.external_id}").json()

    assert body["status"] == "failed"
    assert body["error"] == "Ghostscript executable not found: gs"
    assert "compressedSize" not in body


def test_pending_status_has_no_result_fields(client, make_job):
    job = make_job()

    body = client.get(f"/api/status/{job.external_id}").json()

    assert body["status"] == "pending"
    assert body["fileId"] == job.external_id
    assert "compressedSize" not in body
    assert "error" not in body


def test_startup_recovers_stalled_jobs(app_settings, make_job, monkeypatch):
    job = make_job()
    storage.claim_job(job.id)
    monkeypatch.setattr(app_settings, "stalled_job_minutes", 0)

    with TestClient(app):
        pass
    assert storage.get_job(job.id).status == JobStatus.PROCESSING

    monkeypatch.setattr(app_settings, "stalled_job_minutes", 1)
    monkeypatch.setattr(main, "recover_stalled_jobs", lambda: cleanup.recover_stalled_jobs(now=job.updated_at + 3600))
    with TestClient(app):
        pass
    assert storage.get_job(job.id).status == JobStatus.FAILED


def test_immediate_dispatch_failure_does_not_fail_upload(app_settings):
    class BrokenDispatcher:
        def submit(self, job_id):
            raise RuntimeError("pool is shut down")

    app.dependency_overrides[get_dispatcher] = lambda: BrokenDispatcher()
    try:
        with TestClient(app) as client:
            response = _upload(client)
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 200
    job = storage.get_latest_job(response.json()["fileId"])
    assert job.status == JobStatus.PENDING


def test_unreachable_database_stops_startup(app_settings, tmp_path, monkeypatch):
    # A directory where the database file should be cannot be opened by SQLite.
    unusable = tmp_path / "jobs-db-is-a-directory"
    unusable.mkdir()
    monkeypatch.setattr(app_settings, "database_url", f"sqlite:///{unusable}")

    with pytest.raises(StoreError):
        with TestClient(app):
            pass
