"""Tests for the start / status / cancel entrypoints."""
import asyncio

import pytest

from conftest import completed
from training_centre.api.jobs.errors import (
    JobAccessError,
    JobNotFoundError,
    PayloadValidationError,
    UnauthenticatedError,
)
from training_centre.api.jobs.models import CANCELLED, JobState


_REQUEST = {"modelType": "cnn", "dataset": "mnist", "abTesting": True}


@pytest.mark.asyncio
async def test_start_job_submits(orchestrator, runner, store, clock):
    rec = await orchestrator.start_job(_REQUEST, "alice")
    assert rec.state == JobState.submitted
    assert rec.external_id == f"ext-{rec.job_id}"
    assert rec.next_poll_at is not None

    job_id, payload, user_id = runner.submitted[0]
    assert job_id == rec.job_id
    assert payload.ab_testing is True
    assert user_id == "alice"

    status = await orchestrator.get_job_status(rec.job_id)
    assert status.state in (JobState.created, JobState.submitted)
    assert status.result is None
    assert status.error is None


@pytest.mark.asyncio
async def test_start_job_requires_identity(orchestrator, store):
    with pytest.raises(UnauthenticatedError):
        await orchestrator.start_job(_REQUEST, None)
    with pytest.raises(UnauthenticatedError):
        await orchestrator.start_job(_REQUEST, "   ")
    assert await store.list_jobs() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("body", [
    {"dataset": "mnist"},
    {"modelType": "cnn"},
    {"modelType": "", "dataset": "mnist"},
    {},
])
async def test_start_job_rejects_invalid_payload(orchestrator, store, runner, body):
    with pytest.raises(PayloadValidationError):
        await orchestrator.start_job(body, "alice")
    assert await store.list_jobs() == []
    assert runner.submitted == []


@pytest.mark.asyncio
async def test_same_request_token_creates_one_job(orchestrator, runner, store):
    first = await orchestrator.start_job(_REQUEST, "alice", request_token="req-1")
    second = await orchestrator.start_job(_REQUEST, "alice", request_token="req-1")
    assert first.job_id == second.job_id
    assert len(await store.list_jobs()) == 1
    assert len(runner.submitted) == 1


@pytest.mark.asyncio
async def test_concurrent_starts_with_same_token_submit_once(orchestrator, runner, store):
    runner.submit_delay = 0.2
    first, second = await asyncio.gather(
        orchestrator.start_job(_REQUEST, "alice", request_token="tok"),
        orchestrator.start_job(_REQUEST, "alice", request_token="tok"),
    )
    assert first.job_id == second.job_id
    assert len(runner.submitted) == 1
    assert first.state == second.state == JobState.submitted
    assert len(await store.list_jobs()) == 1


@pytest.mark.asyncio
async def test_concurrent_retry_after_failed_submit_submits_once(orchestrator, runner):
    runner.fail_next_submit()
    rec = await orchestrator.start_job(_REQUEST, "alice", request_token="tok-2")
    assert rec.state == JobState.created

    runner.submit_delay = 0.2
    results = await asyncio.gather(*(
        orchestrator.start_job(_REQUEST, "alice", request_token="tok-2") for _ in range(3)
    ))
    assert {r.job_id for r in results} == {rec.job_id}
    assert len(runner.submitted) == 1
    assert all(r.state == JobState.submitted for r in results)


@pytest.mark.asyncio
async def test_submission_failure_leaves_job_created_then_retry(orchestrator, runner, store):
    runner.fail_next_submit()
    first = await orchestrator.start_job(_REQUEST, "alice", request_token="req-2")
    assert first.state == JobState.created
    assert first.external_id is None
    assert runner.submitted == []

    retried = await orchestrator.start_job(_REQUEST, "alice", request_token="req-2")
    assert retried.job_id == first.job_id
    assert retried.state == JobState.submitted
    assert len(await store.list_jobs()) == 1


@pytest.mark.asyncio
async def test_status_of_unknown_job(orchestrator):
    with pytest.raises(JobNotFoundError):
        await orchestrator.get_job_status("nope")


@pytest.mark.asyncio
async def test_status_after_completion(orchestrator, runner, scheduler):
    rec = await orchestrator.start_job(_REQUEST, "alice")
    runner.script(completed(accuracy=0.92))
    await scheduler.tick(rec.job_id)
    status = await orchestrator.get_job_status(rec.job_id)
    assert status.state == JobState.completed
    assert status.result == {"accuracy": 0.92}
    assert status.error is None
    assert status.stale is False


@pytest.mark.asyncio
async def test_status_reports_stale_job(orchestrator, clock):
    rec = await orchestrator.start_job(_REQUEST, "alice")
    clock.advance(3600)
    status = await orchestrator.get_job_status(rec.job_id)
    assert status.state == JobState.submitted
    assert status.stale is True


@pytest.mark.asyncio
async def test_cancel_submitted_job(orchestrator, store):
    rec = await orchestrator.start_job(_REQUEST, "alice")
    status = await orchestrator.cancel_job(rec.job_id)
    assert status.state == JobState.failed
    assert status.error == CANCELLED
    assert (await store.get_job(rec.job_id)).next_poll_at is None


@pytest.mark.asyncio
async def test_cancel_created_job(orchestrator, runner):
    runner.fail_next_submit()
    rec = await orchestrator.start_job(_REQUEST, "alice", request_token="req-3")
    status = await orchestrator.cancel_job(rec.job_id)
    assert status.state == JobState.failed

    # A later retry with the same token does not resurrect the job.
    again = await orchestrator.start_job(_REQUEST, "alice", request_token="req-3")
    assert again.state == JobState.failed
    assert runner.submitted == []


@pytest.mark.asyncio
async def test_cancel_completed_job_is_noop(orchestrator, runner, scheduler):
    rec = await orchestrator.start_job(_REQUEST, "alice")
    runner.script(completed(accuracy=0.9))
    await scheduler.tick(rec.job_id)
    status = await orchestrator.cancel_job(rec.job_id)
    assert status.state == JobState.completed
    assert status.result == {"accuracy": 0.9}


@pytest.mark.asyncio
async def test_cancel_by_other_user_is_rejected(orchestrator, store):
    rec = await orchestrator.start_job(_REQUEST, "alice")
    with pytest.raises(JobAccessError):
        await orchestrator.cancel_job(rec.job_id, user_id="bob")
    assert (await store.get_job(rec.job_id)).state == JobState.submitted

    status = await orchestrator.cancel_job(rec.job_id, user_id="alice")
    assert status.state == JobState.failed


@pytest.mark.asyncio
async def test_cancel_unknown_job(orchestrator):
    with pytest.raises(JobNotFoundError):
        await orchestrator.cancel_job("nope")


@pytest.mark.asyncio
async def test_ab_testing_job_end_to_end(orchestrator, runner, scheduler, artifacts, notifier):
    request = {"modelType": "image", "dataset": "A", "abTesting": True, "autoTuning": False}
    rec = await orchestrator.start_job(request, "alice", request_token="scenario-1")
    runner.script(completed(
        accuracy=0.92, modelA="v1", modelB="v2", performanceA=0.90, performanceB=0.92,
    ))
    await scheduler.tick(rec.job_id)

    status = await orchestrator.get_job_status(rec.job_id)
    assert status.state == JobState.completed

    found = await artifacts.get_artifacts(rec.job_id)
    assert found.metric.value == 0.92
    assert (found.ab_result.model_a, found.ab_result.model_b) == ("v1", "v2")
    assert (found.ab_result.performance_a, found.ab_result.performance_b) == (0.90, 0.92)
    assert found.tuning_result is None
    notifier.notify.assert_called_once_with(rec.job_id, 0.92)
