"""Shared test fixtures for the training_centre test suite."""
from __future__ import annotations

import time
from collections import deque
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from training_centre.api.jobs.artifacts import ArtifactStore
from training_centre.api.jobs.errors import SubmissionError
from training_centre.api.jobs.fanout import CompletionFanOut
from training_centre.api.jobs.models import PollStatus, RemoteStatus, TrainingPayload
from training_centre.api.jobs.scheduler import PollScheduler
from training_centre.api.jobs.store import JobStore
from training_centre.api.jobs.versioning import VersionNotifier
from training_centre.api.orchestrator import TrainingOrchestrator
from training_centre.config_structured import PollConfig


def pytest_sessionfinish(session, exitstatus):
    """Spawn a watchdog that force-exits if the process hangs at shutdown.

    aiosqlite worker threads and ThreadPoolExecutor atexit handlers can
    block interpreter shutdown.  This watchdog ensures pytest exits within
    a few seconds of test completion.
    """
    import os
    import threading
    import time

    def _watchdog():
        time.sleep(5)
        os._exit(exitstatus)

    t = threading.Thread(target=_watchdog, daemon=True)
    t.start()


# ── Fakes ────────────────────────────────────────────────────────────


def running() -> PollStatus:
    return PollStatus(status=RemoteStatus.running)


def completed(**result) -> PollStatus:
    return PollStatus(status=RemoteStatus.completed, result=result)


def failed(error: str = "boom") -> PollStatus:
    return PollStatus(status=RemoteStatus.failed, error=error)


class FakeRunner:
    """Scripted stand-in for ``ExternalRunner``.

    ``statuses`` is consumed one item per status check; an exception item is
    raised instead of returned.  When empty, the job reports running.
    """

    def __init__(self):
        self.submitted = []
        self.polled = []
        self.statuses = deque()
        self.submit_errors = deque()
        self.submit_delay = 0.0

    def script(self, *items) -> None:
        self.statuses.extend(items)

    def fail_next_submit(self, message: str = "runner unreachable") -> None:
        self.submit_errors.append(SubmissionError(message))

    def submit(self, job_id, payload, user_id):
        if self.submit_delay:
            time.sleep(self.submit_delay)
        if self.submit_errors:
            raise self.submit_errors.popleft()
        self.submitted.append((job_id, payload, user_id))
        return f"ext-{job_id}"

    def poll_status(self, external_id):
        self.polled.append(external_id)
        item = self.statuses.popleft() if self.statuses else running()
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    """Manually advanced UTC clock for the scheduler."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


# ── Core fixtures ────────────────────────────────────────────────────


@pytest.fixture
def payload():
    return TrainingPayload(model_type="cnn", dataset="mnist")


@pytest.fixture
async def store():
    s = JobStore(":memory:")
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
async def artifacts():
    a = ArtifactStore(":memory:")
    await a.initialize()
    yield a
    await a.close()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def notifier():
    n = MagicMock(spec=VersionNotifier)
    n.notify.return_value = True
    return n


@pytest.fixture
def fanout(artifacts, notifier):
    return CompletionFanOut(artifacts, notifier=notifier, max_attempts=3, retry_delay=0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def poll_config():
    return PollConfig(
        initial_delay=300,
        backoff_base=30,
        backoff_factor=2,
        max_interval=600,
        max_transient_retries=5,
        sweep_interval=0.05,
    )


@pytest.fixture
async def scheduler(store, runner, fanout, poll_config, clock):
    s = PollScheduler(store, runner, fanout, config=poll_config, clock=clock)
    yield s
    await s.stop()


@pytest.fixture
def orchestrator(store, runner, scheduler):
    return TrainingOrchestrator(store, runner, scheduler)


# ── API fixtures ─────────────────────────────────────────────────────


@pytest.fixture
async def app(tmp_path, runner, notifier, clock):
    """Create a test FastAPI app with fresh per-test stores and a fake runner."""
    import training_centre.api.deps.auth as _auth
    import training_centre.api.deps.providers as _prov
    from training_centre.api.config import ApiSettings
    from training_centre.api.main import create_app

    # Disable auth for tests so mutation endpoints are accessible
    _orig_auth_enabled = _auth.API_AUTH_ENABLED
    _auth.API_AUTH_ENABLED = False

    db_path = str(tmp_path / "test_jobs.db")
    settings = ApiSettings(job_db_path=db_path, start_scheduler=False)

    job_store = JobStore(db_path)
    await job_store.initialize()
    artifact_store = ArtifactStore(db_path)
    await artifact_store.initialize()
    fan = CompletionFanOut(artifact_store, notifier=notifier, retry_delay=0)
    sched = PollScheduler(
        job_store, runner, fan,
        config=PollConfig(initial_delay=0, sweep_interval=0.05),
        clock=clock,
    )

    # Inject into the provider module
    _prov.reset_providers()
    _prov._job_store = job_store
    _prov._artifact_store = artifact_store
    _prov._external_runner = runner
    _prov._scheduler = sched

    application = create_app(settings)
    yield application

    # Cleanup
    await sched.stop()
    await artifact_store.close()
    await job_store.close()
    _auth.API_AUTH_ENABLED = _orig_auth_enabled
    _prov.reset_providers()


@pytest.fixture
async def client(app):
    """Async HTTP client bound to the test app."""
    from httpx import ASGITransport, AsyncClient

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://testserver",
        headers={"X-User-Id": "alice"},
    ) as ac:
        yield ac
