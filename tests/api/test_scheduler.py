"""Tests for the poll scheduler: backoff, retries, completion, cancellation races."""
import asyncio
import logging
import threading
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import completed, failed, running
from training_centre.api.jobs.artifacts import AB_RESULT, METRIC
from training_centre.api.jobs.errors import JobQueueFullError, PollError, TransientPollError
from training_centre.api.jobs.fanout import VERSION_NOTIFICATION
from training_centre.api.jobs.models import (
    CANCELLED,
    POLL_EXHAUSTED,
    JobState,
    TrainingPayload,
    to_iso,
)
from training_centre.api.jobs.scheduler import PollScheduler
from training_centre.config_structured import PollConfig


async def _submitted(store, scheduler, payload, user_id="alice"):
    rec = await store.create_job(payload, user_id)
    return await store.update_job(
        rec.job_id,
        JobState.created,
        state=JobState.submitted,
        external_id=f"ext-{rec.job_id}",
        next_poll_at=scheduler.first_poll_at(),
    )


# ── Backoff ──────────────────────────────────────────────────────────


def test_backoff_sequence_is_capped(scheduler):
    assert [scheduler.interval_for(k) for k in range(7)] == [30, 60, 120, 240, 480, 600, 600]
    assert scheduler.interval_for(50) == 600


def test_first_poll_after_initial_delay(scheduler, clock):
    assert scheduler.first_poll_at() == to_iso(clock.now + timedelta(seconds=300))


# ── Ticks ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_running_reschedules_with_backoff(store, runner, scheduler, clock, payload):
    job = await _submitted(store, scheduler, payload)
    runner.script(running(), running())

    assert await scheduler.tick(job.job_id) == JobState.polling
    rec = await store.get_job(job.job_id)
    assert rec.poll_attempts == 1
    assert rec.next_poll_at == to_iso(clock.now + timedelta(seconds=30))

    await scheduler.tick(job.job_id)
    rec = await store.get_job(job.job_id)
    assert rec.poll_attempts == 2
    assert rec.next_poll_at == to_iso(clock.now + timedelta(seconds=60))
    assert runner.polled == [job.external_id, job.external_id]


@pytest.mark.asyncio
async def test_transient_errors_then_completion(
    store, runner, scheduler, artifacts, notifier, payload
):
    job = await _submitted(store, scheduler, payload)
    runner.script(
        TransientPollError("503"),
        TransientPollError("503"),
        TransientPollError("timeout"),
        completed(accuracy=0.91),
    )

    for expected_errors in (1, 2, 3):
        assert await scheduler.tick(job.job_id) == JobState.submitted
        assert (await store.get_job(job.job_id)).transient_errors == expected_errors

    assert await scheduler.tick(job.job_id) == JobState.completed
    rec = await store.get_job(job.job_id)
    assert rec.result == {"accuracy": 0.91}
    assert rec.error is None
    assert rec.next_poll_at is None
    assert rec.fanout_pending == []
    assert rec.transient_errors == 3
    assert await artifacts.count(METRIC, job.job_id) == 1
    notifier.notify.assert_called_once_with(job.job_id, 0.91)


@pytest.mark.asyncio
async def test_transient_counter_resets_on_running(store, runner, scheduler, payload):
    job = await _submitted(store, scheduler, payload)
    runner.script(TransientPollError("502"), TransientPollError("502"), running())
    for _ in range(3):
        await scheduler.tick(job.job_id)
    rec = await store.get_job(job.job_id)
    assert rec.state == JobState.polling
    assert rec.transient_errors == 0


@pytest.mark.asyncio
async def test_too_many_transient_errors_fail_the_job(store, runner, scheduler, artifacts, payload):
    job = await _submitted(store, scheduler, payload)
    runner.script(*[TransientPollError("connection reset") for _ in range(6)])

    for _ in range(5):
        assert await scheduler.tick(job.job_id) == JobState.submitted
    assert await scheduler.tick(job.job_id) == JobState.failed

    rec = await store.get_job(job.job_id)
    assert rec.error == POLL_EXHAUSTED
    assert rec.transient_errors == 6
    assert rec.next_poll_at is None
    assert await artifacts.count(METRIC, job.job_id) == 0


@pytest.mark.asyncio
async def test_transient_error_before_first_running_waits_initial_delay(
    store, runner, scheduler, clock, payload
):
    job = await _submitted(store, scheduler, payload)
    runner.script(TransientPollError("503"), running(), TransientPollError("503"))

    await scheduler.tick(job.job_id)
    assert (await store.get_job(job.job_id)).next_poll_at == to_iso(clock.now + timedelta(seconds=300))

    await scheduler.tick(job.job_id)
    await scheduler.tick(job.job_id)
    rec = await store.get_job(job.job_id)
    assert rec.poll_attempts == 1
    assert rec.next_poll_at == to_iso(clock.now + timedelta(seconds=30))


@pytest.mark.asyncio
async def test_remote_failure_fails_the_job(store, runner, scheduler, notifier, payload):
    job = await _submitted(store, scheduler, payload)
    runner.script(failed("out of memory"))
    assert await scheduler.tick(job.job_id) == JobState.failed
    rec = await store.get_job(job.job_id)
    assert rec.error == "out of memory"
    assert rec.result is None
    notifier.notify.assert_not_called()


@pytest.mark.asyncio
async def test_permanent_poll_error_fails_the_job(store, runner, scheduler, payload):
    job = await _submitted(store, scheduler, payload)
    runner.script(PollError("Status check returned 404"))
    assert await scheduler.tick(job.job_id) == JobState.failed
    assert "404" in (await store.get_job(job.job_id)).error


@pytest.mark.asyncio
async def test_tick_on_cancelled_job_does_nothing(store, runner, scheduler, orchestrator, payload):
    job = await _submitted(store, scheduler, payload)
    await orchestrator.cancel_job(job.job_id)
    assert await scheduler.tick(job.job_id) == JobState.failed
    assert runner.polled == []
    assert (await store.get_job(job.job_id)).error == CANCELLED


@pytest.mark.asyncio
async def test_cancel_during_poll_discards_result(
    store, runner, scheduler, orchestrator, artifacts, notifier, payload
):
    job = await _submitted(store, scheduler, payload)
    loop = asyncio.get_running_loop()

    def _poll(external_id):
        # The caller cancels while the status request is in flight.
        asyncio.run_coroutine_threadsafe(orchestrator.cancel_job(job.job_id), loop).result(timeout=5)
        return completed(accuracy=0.9)

    runner.poll_status = _poll
    assert await scheduler.tick(job.job_id) == JobState.failed

    rec = await store.get_job(job.job_id)
    assert rec.error == CANCELLED
    assert rec.result is None
    assert await artifacts.count(METRIC, job.job_id) == 0
    notifier.notify.assert_not_called()


@pytest.mark.asyncio
async def test_concurrent_ticks_for_one_job_poll_once(store, runner, scheduler, payload):
    job = await _submitted(store, scheduler, payload)
    results = await asyncio.gather(scheduler.tick(job.job_id), scheduler.tick(job.job_id))
    assert sorted(results, key=lambda r: r is None) == [JobState.polling, None]
    assert len(runner.polled) == 1


@pytest.mark.asyncio
async def test_unknown_job_tick_returns_none(scheduler):
    assert await scheduler.tick("missing") is None


# ── Fan-out on completion ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_failed_artifact_stays_pending_and_is_retried(
    store, runner, scheduler, artifacts, notifier
):
    payload = TrainingPayload(model_type="cnn", dataset="mnist", ab_testing=True)
    job = await _submitted(store, scheduler, payload)
    runner.script(completed(
        accuracy=0.92, modelA="a", modelB="b", performanceA=0.9, performanceB=0.92,
    ))

    real_save = artifacts.save_ab_result
    artifacts.save_ab_result = AsyncMock(side_effect=RuntimeError("disk full"))
    assert await scheduler.tick(job.job_id) == JobState.completed

    rec = await store.get_job(job.job_id)
    assert rec.state == JobState.completed
    assert rec.fanout_pending == [AB_RESULT]
    assert await artifacts.count(METRIC, job.job_id) == 1
    assert await artifacts.count(AB_RESULT, job.job_id) == 0

    artifacts.save_ab_result = real_save
    assert await scheduler.retry_pending_fanout() == 1
    rec = await store.get_job(job.job_id)
    assert rec.fanout_pending == []
    assert await artifacts.count(AB_RESULT, job.job_id) == 1
    assert await artifacts.count(METRIC, job.job_id) == 1
    assert notifier.notify.call_count == 1


@pytest.mark.asyncio
async def test_pending_fanout_retry_skips_job_with_tick_in_flight(
    store, runner, scheduler, notifier, payload
):
    job = await _submitted(store, scheduler, payload)
    release = threading.Event()

    def _slow_notify(job_id, performance):
        release.wait(timeout=5)
        return True

    notifier.notify.side_effect = _slow_notify
    runner.script(completed(accuracy=0.9))
    task = asyncio.create_task(scheduler.tick(job.job_id))
    for _ in range(200):
        if notifier.notify.call_count:
            break
        await asyncio.sleep(0.01)

    # Completed and still waiting on the version notification.
    rec = await store.get_job(job.job_id)
    assert rec.state == JobState.completed
    assert VERSION_NOTIFICATION in rec.fanout_pending
    assert await scheduler.retry_pending_fanout() == 0

    release.set()
    assert await task == JobState.completed
    assert notifier.notify.call_count == 1
    assert (await store.get_job(job.job_id)).fanout_pending == []


@pytest.mark.asyncio
async def test_fanout_retries_stop_after_failure_cap(
    store, runner, fanout, clock, payload
):
    sched = PollScheduler(
        store, runner, fanout,
        config=PollConfig(sweep_interval=0.05, max_fanout_failures=3),
        clock=clock,
    )
    job = await _submitted(store, sched, payload)
    runner.script(completed())  # no accuracy, so the metric cannot be saved
    assert await sched.tick(job.job_id) == JobState.completed
    rec = await store.get_job(job.job_id)
    assert rec.fanout_pending == [METRIC]
    assert rec.fanout_failures == 1

    for _ in range(5):
        await sched.run_due()

    rec = await store.get_job(job.job_id)
    assert rec.state == JobState.completed
    assert rec.fanout_failures == 3
    assert rec.fanout_pending == [METRIC]
    assert await sched.retry_pending_fanout() == 0
    # Still reported as pending, just no longer retried.
    assert [j.job_id for j in await store.jobs_with_pending_fanout()] == [job.job_id]


@pytest.mark.asyncio
async def test_failing_fanout_does_not_starve_other_jobs(
    store, runner, fanout, artifacts, clock
):
    sched = PollScheduler(
        store, runner, fanout,
        config=PollConfig(sweep_interval=0.05, sweep_batch_size=1),
        clock=clock,
    )
    broken = await _submitted(store, sched, TrainingPayload(model_type="cnn", dataset="mnist"))
    runner.script(completed())
    await sched.tick(broken.job_id)

    healthy = await _submitted(
        store, sched, TrainingPayload(model_type="cnn", dataset="mnist", ab_testing=True)
    )
    real_save = artifacts.save_ab_result
    artifacts.save_ab_result = AsyncMock(side_effect=RuntimeError("disk full"))
    runner.script(completed(
        accuracy=0.92, modelA="a", modelB="b", performanceA=0.9, performanceB=0.92,
    ))
    await sched.tick(healthy.job_id)
    artifacts.save_ab_result = real_save

    # The broken job is older, so it is retried first and moves to the back.
    await sched.retry_pending_fanout()
    assert (await store.get_job(broken.job_id)).fanout_failures == 2
    await sched.retry_pending_fanout()
    assert (await store.get_job(healthy.job_id)).fanout_pending == []
    assert await artifacts.count(AB_RESULT, healthy.job_id) == 1


@pytest.mark.asyncio
async def test_completion_log_carries_job_id(store, runner, scheduler, payload, caplog):
    job = await _submitted(store, scheduler, payload)
    runner.script(completed(accuracy=0.9))
    with caplog.at_level(logging.INFO, logger="training_centre.api.jobs.scheduler"):
        await scheduler.tick(job.job_id)
    rec = next(r for r in caplog.records if r.getMessage() == f"Job {job.job_id} completed")
    assert rec.job_id == job.job_id
    assert rec.metrics == {"accuracy": 0.9}


# ── Sweeps ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_run_due_respects_next_poll_at(store, runner, scheduler, clock, payload):
    job = await _submitted(store, scheduler, payload)
    assert await scheduler.run_due() == 0
    assert runner.polled == []

    clock.advance(301)
    assert await scheduler.run_due() == 1
    assert (await store.get_job(job.job_id)).state == JobState.polling

    # Rescheduled 30s out; not due again yet.
    assert await scheduler.run_due() == 0


@pytest.mark.asyncio
async def test_new_scheduler_resumes_persisted_schedule(
    store, runner, fanout, poll_config, clock, scheduler, payload
):
    job = await _submitted(store, scheduler, payload)
    clock.advance(301)

    restarted = PollScheduler(store, runner, fanout, config=poll_config, clock=clock)
    runner.script(completed(accuracy=0.8))
    assert await restarted.run_due() == 1
    assert (await store.get_job(job.job_id)).state == JobState.completed


@pytest.mark.asyncio
async def test_background_sweep_advances_jobs(store, runner, scheduler, clock, payload):
    job = await _submitted(store, scheduler, payload)
    clock.advance(301)
    runner.script(completed(accuracy=0.75))

    scheduler.start()
    assert scheduler.running
    for _ in range(100):
        if (await store.get_job(job.job_id)).state == JobState.completed:
            break
        await asyncio.sleep(0.02)
    await scheduler.stop()

    assert not scheduler.running
    assert (await store.get_job(job.job_id)).state == JobState.completed


@pytest.mark.asyncio
async def test_is_stale(store, scheduler, clock, payload):
    job = await _submitted(store, scheduler, payload)
    assert scheduler.is_stale(job) is False
    clock.advance(700)
    assert scheduler.is_stale(job) is True

    created = await store.create_job(payload, "alice")
    assert scheduler.is_stale(created) is False


@pytest.mark.asyncio
async def test_trigger_queue_full(store, runner, fanout, poll_config, clock, payload):
    sched = PollScheduler(store, runner, fanout, config=poll_config, max_queued=1, clock=clock)
    a = await _submitted(store, sched, payload)
    b = await _submitted(store, sched, payload)
    sched.trigger(a.job_id)
    with pytest.raises(JobQueueFullError):
        sched.trigger(b.job_id)
    await sched.stop()


# ── Events ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_event_stream_until_done(store, runner, scheduler, payload):
    job = await _submitted(store, scheduler, payload)
    events = []
    first = asyncio.Event()

    async def _consume():
        async for event in scheduler.subscribe_events(job.job_id):
            events.append(event)
            first.set()

    task = asyncio.create_task(_consume())
    await asyncio.wait_for(first.wait(), timeout=2)

    runner.script(running(), completed(accuracy=0.9))
    await scheduler.tick(job.job_id)
    await scheduler.tick(job.job_id)
    await asyncio.wait_for(task, timeout=2)

    assert [e["event"] for e in events] == ["status", "polled", "completed", "done"]
    assert events[0]["data"]["state"] == "submitted"
    assert events[2]["result"] == {"accuracy": 0.9}


@pytest.mark.asyncio
async def test_event_stream_for_terminal_job(store, scheduler, orchestrator, payload):
    job = await _submitted(store, scheduler, payload)
    await orchestrator.cancel_job(job.job_id)
    events = [e async for e in scheduler.subscribe_events(job.job_id)]
    assert len(events) == 1
    assert events[0]["data"]["state"] == "failed"
