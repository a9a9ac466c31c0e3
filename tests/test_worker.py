import pytest

from worker import worker


class RecordingScheduler:
    """Stands in for BlockingScheduler so a wrongly successful startup cannot hang."""

    started = False

    def add_job(self, *args, **kwargs):
        pass

    def start(self):
        RecordingScheduler.started = True

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def fake_scheduler(monkeypatch):
    RecordingScheduler.started = False
    monkeypatch.setattr(worker, "BlockingScheduler", RecordingScheduler)
    return RecordingScheduler


def test_worker_exits_when_database_is_unreachable(app_settings, tmp_path, monkeypatch, fake_scheduler):
    unusable = tmp_path / "jobs-db-is-a-directory"
    unusable.mkdir()
    monkeypatch.setattr(app_settings, "database_url", f"sqlite:///{unusable}")

    with pytest.raises(SystemExit) as excinfo:
        worker.main()

    assert excinfo.value.code == 1
    assert not fake_scheduler.started


def test_worker_runs_scheduler_and_drains_on_exit(app_settings, monkeypatch, fake_scheduler):
    calls = []

    class FakeDispatcher:
        def tick(self):
            calls.append("tick")

        def shutdown(self, wait=True):
            calls.append(("shutdown", wait))

    monkeypatch.setattr(worker, "Dispatcher", FakeDispatcher)
    monkeypatch.setattr(worker.signal, "signal", lambda signum, handler: None)

    worker.main()

    assert fake_scheduler.started
    assert calls == ["tick", ("shutdown", True)]
