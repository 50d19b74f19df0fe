import asyncio
from datetime import timedelta

import pytest

from core.dispatcher import JobDispatcher, JobStatus, QueueConfig, RetryPolicy, default_queue_configs
from core.errors import InsufficientData, ProviderUnavailable


def make_dispatcher(concurrency=2, attempts=3, timeout=5.0):
    return JobDispatcher([QueueConfig("work", concurrency, RetryPolicy(attempts, 0.01, 0.02, timeout))])


@pytest.fixture
async def dispatcher():
    dispatcher = make_dispatcher()
    yield dispatcher
    await dispatcher.close()


def test_default_queues():
    configs = {c.name: c for c in default_queue_configs()}
    assert configs["micro"].concurrency == 10
    assert configs["micro"].policy.max_attempts == 3
    assert configs["meso"].concurrency == 1
    assert configs["meta"].policy.max_attempts == 2


def test_backoff_is_exponential_and_capped():
    policy = RetryPolicy(max_attempts=5, backoff_seconds=2.0, max_backoff_seconds=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_job_completes_with_result(dispatcher):
    async def handler(job):
        job.report_progress(50)
        return "done"

    job = await dispatcher.enqueue("work", handler, data={"run_id": "r1"})
    await dispatcher.wait(job, timeout=2)

    assert job.status == JobStatus.COMPLETED
    assert job.result == "done"
    assert job.progress == 100
    assert job.attempts_made == 1


@pytest.mark.asyncio
async def test_unknown_queue_raises(dispatcher):
    async def handler(job):
        return None

    with pytest.raises(KeyError):
        await dispatcher.enqueue("nope", handler)


@pytest.mark.asyncio
async def test_transient_failure_is_retried(dispatcher):
    calls = []

    async def handler(job):
        calls.append(job.attempts_made)
        if len(calls) < 3:
            raise ProviderUnavailable("overloaded")
        return "ok"

    job = await dispatcher.enqueue("work", handler)
    await dispatcher.wait(job, timeout=2)

    assert job.status == JobStatus.COMPLETED
    assert calls == [1, 2, 3]


@pytest.mark.asyncio
async def test_exhausted_attempts_fail_once(dispatcher):
    failures = []

    async def handler(job):
        raise RuntimeError("boom")

    job = await dispatcher.enqueue("work", handler, on_failed=failures.append)
    await dispatcher.wait(job, timeout=2)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 3
    assert job.error_message == "RuntimeError: boom"
    assert failures == [job]


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately(dispatcher):
    async def handler(job):
        raise InsufficientData("nothing to do")

    job = await dispatcher.enqueue("work", handler)
    await dispatcher.wait(job, timeout=2)

    assert job.status == JobStatus.FAILED
    assert job.attempts_made == 1


@pytest.mark.asyncio
async def test_failure_callback_error_does_not_break_worker(dispatcher):
    def on_failed(job):
        raise ValueError("callback bug")

    async def bad(job):
        raise InsufficientData("x")

    async def good(job):
        return 1

    failed = await dispatcher.enqueue("work", bad, on_failed=on_failed)
    await dispatcher.wait(failed, timeout=2)
    ok = await dispatcher.enqueue("work", good)
    await dispatcher.wait(ok, timeout=2)

    assert failed.status == JobStatus.FAILED
    assert ok.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_attempt_timeout_counts_as_failed_attempt():
    dispatcher = make_dispatcher(attempts=1, timeout=0.05)

    async def slow(job):
        await asyncio.sleep(1)

    job = await dispatcher.enqueue("work", slow)
    await dispatcher.wait(job, timeout=2)
    await dispatcher.close()

    assert job.status == JobStatus.FAILED
    assert "timed out" in job.error_message


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected():
    dispatcher = make_dispatcher(concurrency=2)
    running = 0
    peak = 0

    async def handler(job):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1

    jobs = [await dispatcher.enqueue("work", handler) for _ in range(6)]
    await dispatcher.wait_all(jobs, timeout=2)
    await dispatcher.close()

    assert peak == 2
    assert all(job.status == JobStatus.COMPLETED for job in jobs)


@pytest.mark.asyncio
async def test_barrier_timeout_abandons_laggards(dispatcher):
    failed = []
    release = asyncio.Event()

    async def quick(job):
        return "fast"

    async def stuck(job):
        await release.wait()

    fast = await dispatcher.enqueue("work", quick)
    slow = await dispatcher.enqueue("work", stuck, on_failed=failed.append)
    await dispatcher.wait_all([fast, slow], timeout=0.1)

    assert fast.status == JobStatus.COMPLETED
    assert slow.status == JobStatus.FAILED
    assert "timed out waiting" in slow.error_message
    assert failed == [slow]

    # The worker that held the abandoned job keeps serving the queue.
    after = await dispatcher.enqueue("work", quick)
    await dispatcher.wait(after, timeout=2)
    assert after.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_cancel_drops_waiting_jobs_only():
    dispatcher = make_dispatcher(concurrency=1)
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking(job):
        started.set()
        await release.wait()
        return "finished"

    active = await dispatcher.enqueue("work", blocking, data={"run_id": "r1"})
    queued = await dispatcher.enqueue("work", blocking, data={"run_id": "r1"})
    other = await dispatcher.enqueue("work", blocking, data={"run_id": "r2"})
    await started.wait()

    cancelled = dispatcher.cancel(lambda job: job.data.get("run_id") == "r1")
    release.set()
    await dispatcher.wait_all([active, other], timeout=2)
    await dispatcher.close()

    assert cancelled == [queued]
    assert queued.status == JobStatus.CANCELLED
    assert active.status == JobStatus.COMPLETED
    assert other.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_clamped(dispatcher):
    seen = []

    async def handler(job):
        for value in (30, 10, 250):
            job.report_progress(value)
            seen.append(job.progress)

    job = await dispatcher.enqueue("work", handler)
    await dispatcher.wait(job, timeout=2)
    assert seen == [30, 30, 100]


@pytest.mark.asyncio
async def test_stats_and_clean(dispatcher):
    async def handler(job):
        return None

    job = await dispatcher.enqueue("work", handler)
    await dispatcher.wait(job, timeout=2)

    stats = dispatcher.stats("work")
    assert stats["completed"] == 1
    assert stats["total"] == 1
    assert stats["concurrency"] == 2
    assert dispatcher.all_stats()["queues"][0]["queue"] == "work"

    assert dispatcher.clean(older_than=timedelta(hours=1)) == 0
    assert dispatcher.clean(older_than=timedelta(seconds=-1)) == 1
    assert dispatcher.get_job(job.id) is None


@pytest.mark.asyncio
async def test_enqueue_after_close_raises():
    dispatcher = make_dispatcher()
    await dispatcher.close()

    async def handler(job):
        return None

    with pytest.raises(RuntimeError):
        await dispatcher.enqueue("work", handler)


@pytest.mark.asyncio
async def test_paused_queue_holds_jobs_until_resumed(dispatcher):
    async def handler(job):
        return "ran"

    dispatcher.pause("work")
    job = await dispatcher.enqueue("work", handler)
    await asyncio.sleep(0.05)

    assert job.status == JobStatus.WAITING
    assert dispatcher.is_paused("work")
    assert dispatcher.stats("work")["paused"] is True

    dispatcher.resume("work")
    await dispatcher.wait(job, timeout=2)
    assert job.status == JobStatus.COMPLETED
    assert not dispatcher.is_paused("work")


@pytest.mark.asyncio
async def test_pause_lets_active_attempt_finish(dispatcher):
    started = asyncio.Event()
    release = asyncio.Event()

    async def blocking(job):
        started.set()
        await release.wait()
        return "finished"

    async def quick(job):
        return "quick"

    active = await dispatcher.enqueue("work", blocking)
    await started.wait()
    dispatcher.pause("work")
    held = await dispatcher.enqueue("work", quick)
    release.set()
    await dispatcher.wait(active, timeout=2)
    await asyncio.sleep(0.05)

    assert active.status == JobStatus.COMPLETED
    assert held.status == JobStatus.WAITING

    dispatcher.resume("work")
    await dispatcher.wait(held, timeout=2)
    assert held.result == "quick"


@pytest.mark.asyncio
async def test_pause_unknown_queue_raises(dispatcher):
    with pytest.raises(KeyError):
        dispatcher.pause("nope")
    with pytest.raises(KeyError):
        dispatcher.resume("nope")


@pytest.mark.asyncio
async def test_stats_report_worker_liveness(dispatcher):
    assert dispatcher.stats("work")["workers_started"] is False

    async def handler(job):
        return None

    job = await dispatcher.enqueue("work", handler)
    await dispatcher.wait(job, timeout=2)

    stats = dispatcher.stats("work")
    assert stats["workers_started"] is True
    assert stats["workers_alive"] == 2
