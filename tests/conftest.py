import time
import uuid
from pathlib import Path
from typing import Any, Callable, Generator

import pytest

from common import database, storage
from common.config import Settings, ensure_directories, settings
from common.job_schema import Job, JobStatus, MediaKind


@pytest.fixture
def app_settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Generator[Settings, None, None]:
    """Points uploads, outputs and the job database at a temporary directory."""
    monkeypatch.setattr(settings, "upload_dir", tmp_path / "uploads")
    monkeypatch.setattr(settings, "compressed_dir", tmp_path / "compressed")
    monkeypatch.setattr(settings, "database_url", f"sqlite:///{tmp_path / 'jobs.db'}")
    monkeypatch.setattr(settings, "run_background_worker", False)
    monkeypatch.setattr(settings, "retention_hours", 2)
    ensure_directories()
    database.init_db()
    yield settings
    database.dispose()


@pytest.fixture
def make_job(app_settings: Settings) -> Callable[..., Job]:
    """Creates a source file in the upload dir and a job row pointing at it."""

    def _make_job(
        name: str = "photo.jpg",
        kind: MediaKind = MediaKind.IMAGE,
        content: bytes = b"original-bytes",
        **fields: Any,
    ) -> Job:
        external_id = fields.pop("external_id", str(uuid.uuid4()))
        source = app_settings.upload_dir / f"{external_id}{Path(name).suffix}"
        source.write_bytes(content)
        job = Job(
            external_id=external_id,
            display_name=name,
            source_path=str(source),
            media_kind=kind,
            status=fields.pop("status", JobStatus.PENDING),
            original_size=fields.pop("original_size", len(content)),
            created_at=fields.pop("created_at", time.time()),
            **fields,
        )
        return storage.create_job(job)

    return _make_job


@pytest.fixture
def writing_executor() -> Callable[[int], Callable[..., int]]:
    """Factory for executor stand-ins that write `size` bytes to the destination."""

    def _factory(size: int) -> Callable[..., int]:
        return lambda source_path, media_kind, options, destination: _write(destination, size)

    return _factory


def _write(destination: Path, size: int) -> int:
    Path(destination).parent.mkdir(parents=True, exist_ok=True)
    Path(destination).write_bytes(b"\0" * size)
    return size

