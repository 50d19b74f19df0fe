import asyncio

import pytest

from core.errors import InvalidTransition, ResultsNotReady, RunNotFound
from core.types import AgentStatus, AgentTier, RunConfig, RunStatus

from .conftest import extraction_json


class SelectiveFailureGenerator:
    """Raises a non-transient error for papers whose title matches."""

    def __init__(self, failing_titles):
        self.failing_titles = failing_titles

    async def generate(self, prompt, options=None):
        if any(f"Title: {title}" in prompt for title in self.failing_titles):
            raise ValueError("malformed request")
        if options is not None and options.system.startswith("You are a Micro Agent"):
            return extraction_json()
        return "not json"


class MesoFailureGenerator:
    """Extracts papers normally and rejects every clustering request."""

    async def generate(self, prompt, options=None):
        if options is not None and options.system.startswith("You are a Meso Agent"):
            raise ValueError("malformed request")
        return extraction_json()


class GatedGenerator:
    """Blocks every call until ``release`` is set."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, prompt, options=None):
        self.started.set()
        await self.release.wait()
        return extraction_json()


@pytest.mark.asyncio
async def test_heuristic_run_converges_on_second_iteration(make_orchestrator, papers, repository):
    orchestrator = make_orchestrator()
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=3))

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.CONVERGED
    assert run.iteration == 2
    assert [m.convergence.similarity for m in run.meta_outputs] == [0.0, 1.0]

    results = orchestrator.get_results(run.id)
    assert results["converged"]
    assert results["iterations_completed"] == 2
    assert results["history"][0]["convergence"]["reason"] == "No previous iteration"

    counts = repository.agent_counts(run.id)
    assert counts["micro"]["completed"] == 6
    assert counts["meso"]["completed"] == 2
    assert counts["meta"]["completed"] == 2


@pytest.mark.asyncio
async def test_single_iteration_run_is_exhausted(make_orchestrator, papers):
    orchestrator = make_orchestrator()
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.EXHAUSTED
    assert len(run.meta_outputs) == 1
    assert orchestrator.get_status(run.id)["status"] == "exhausted"


@pytest.mark.asyncio
async def test_micro_failures_above_threshold_fail_the_run(make_orchestrator, papers, repository):
    generator = SelectiveFailureGenerator([papers[0]["title"], papers[1]["title"]])
    orchestrator = make_orchestrator(generator)
    run = await orchestrator.start_run("climate ml", papers, RunConfig(failure_threshold=0.3))

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.FAILED
    assert run.error_label == "insufficient_data"
    assert run.error_reason == "2 of 3 papers failed"
    assert orchestrator.get_agents(run.id, tier=AgentTier.MESO) == []

    failed = repository.list_agents(run.id, AgentTier.MICRO)
    assert sorted(a.status.value for a in failed) == ["completed", "failed", "failed"]
    assert all(a.error_message for a in failed if a.status == AgentStatus.FAILED)


@pytest.mark.asyncio
async def test_meso_receives_only_completed_micro_outputs(make_orchestrator, papers, repository):
    generator = SelectiveFailureGenerator([papers[2]["title"]])
    orchestrator = make_orchestrator(generator)
    run = await orchestrator.start_run(
        "climate ml", papers, RunConfig(max_iterations=1, failure_threshold=0.5)
    )

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.EXHAUSTED
    meso_results = repository.list_results(run.id, tier=AgentTier.MESO)
    assert len(meso_results) == 1
    assert meso_results[0].content["total_papers"] == 2


@pytest.mark.asyncio
async def test_cancel_stops_the_run(make_orchestrator, papers, repository):
    generator = GatedGenerator()
    orchestrator = make_orchestrator(generator)
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=3))

    await asyncio.wait_for(generator.started.wait(), timeout=5)
    cancelled = await orchestrator.cancel(run.id)
    assert cancelled.status == RunStatus.CANCELLED

    generator.release.set()
    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.CANCELLED
    assert run.meta_outputs == []
    assert repository.list_agents(run.id, AgentTier.MESO) == []
    with pytest.raises(InvalidTransition):
        await orchestrator.cancel(run.id)


@pytest.mark.asyncio
async def test_results_not_ready_before_first_iteration(make_orchestrator, papers):
    orchestrator = make_orchestrator()
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))

    with pytest.raises(ResultsNotReady):
        orchestrator.get_results(run.id)

    await orchestrator.wait(run.id)
    assert orchestrator.get_results(run.id)["iterations_completed"] == 1


@pytest.mark.asyncio
async def test_unknown_run(make_orchestrator):
    orchestrator = make_orchestrator()
    with pytest.raises(RunNotFound):
        orchestrator.get_status("missing")
    with pytest.raises(RunNotFound):
        await orchestrator.cancel("missing")


@pytest.mark.asyncio
async def test_start_run_requires_papers(make_orchestrator):
    with pytest.raises(ValueError):
        await make_orchestrator().start_run("empty", [])


@pytest.mark.asyncio
async def test_run_writes_logs_and_contexts(make_orchestrator, papers):
    orchestrator = make_orchestrator()
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))
    await orchestrator.wait(run.id)

    messages = [entry["message"] for entry in orchestrator.get_logs(run.id)]
    assert messages[0] == "Run created"
    assert "Run exhausted" in messages

    contexts = await orchestrator.list_contexts(run.id)
    keys = {c["context_key"] for c in contexts}
    assert "meso_output_1" in keys and "meta_output_1" in keys
    assert sum(1 for k in keys if k.startswith("micro_output_1_")) == 3


def with_fourth_paper(papers):
    return papers + [{
        "id": "p4",
        "title": "Reinforcement Learning for Grid Carbon Scheduling",
        "abstract": "We apply reinforcement learning to schedule flexible loads against grid carbon intensity.",
    }]


@pytest.mark.asyncio
async def test_meso_failure_after_retries_fails_the_run(make_orchestrator, papers, repository):
    orchestrator = make_orchestrator(MesoFailureGenerator())
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=2))

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.FAILED
    assert run.error_label == "internal_error"
    assert run.error_reason == "ValueError"
    assert run.meta_outputs == []
    with pytest.raises(ResultsNotReady):
        orchestrator.get_results(run.id)

    meso = orchestrator.get_agents(run.id, tier=AgentTier.MESO)
    assert len(meso) == 1
    assert meso[0]["status"] == "failed"
    assert meso[0]["job"]["attempts_made"] == 2
    assert repository.list_agents(run.id, AgentTier.META) == []


@pytest.mark.asyncio
async def test_half_the_papers_failing_exceeds_default_threshold(make_orchestrator, papers):
    papers = with_fourth_paper(papers)
    generator = SelectiveFailureGenerator([papers[0]["title"], papers[3]["title"]])
    orchestrator = make_orchestrator(generator)
    run = await orchestrator.start_run("climate ml", papers, RunConfig(failure_threshold=0.3))

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.FAILED
    assert run.error_label == "insufficient_data"
    assert run.error_reason == "2 of 4 papers failed"


@pytest.mark.asyncio
async def test_failure_rate_equal_to_threshold_continues(make_orchestrator, papers, repository):
    papers = with_fourth_paper(papers)
    generator = SelectiveFailureGenerator([papers[0]["title"], papers[3]["title"]])
    orchestrator = make_orchestrator(generator)
    run = await orchestrator.start_run(
        "climate ml", papers, RunConfig(max_iterations=1, failure_threshold=0.5)
    )

    run = await orchestrator.wait(run.id)

    assert run.status == RunStatus.EXHAUSTED
    meso_results = repository.list_results(run.id, tier=AgentTier.MESO)
    assert meso_results[0].content["total_papers"] == 2


@pytest.mark.asyncio
async def test_agents_report_their_jobs(make_orchestrator, papers, repository):
    orchestrator = make_orchestrator()
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))
    await orchestrator.wait(run.id)

    agents = orchestrator.get_agents(run.id)
    assert len(agents) == 5
    for agent in agents:
        assert agent["job_id"]
        assert agent["job"] == {
            "job_id": agent["job_id"],
            "status": "completed",
            "progress": 100,
            "attempts_made": 1,
        }

    job = orchestrator.get_job(agents[0]["job_id"])
    assert job["data"]["agent_id"] == agents[0]["id"]
    assert orchestrator.get_job("missing") is None


@pytest.mark.asyncio
async def test_paused_queue_holds_micro_jobs_until_resumed(make_orchestrator, papers, repository):
    orchestrator = make_orchestrator()
    orchestrator.pause_queue("micro")
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))

    await asyncio.sleep(0.1)
    micro = orchestrator.get_agents(run.id, tier=AgentTier.MICRO)
    assert len(micro) == 3
    assert {a["status"] for a in micro} == {"pending"}
    assert {a["job"]["status"] for a in micro} == {"waiting"}

    stats = orchestrator.resume_queue("micro")
    assert stats["paused"] is False
    run = await orchestrator.wait(run.id)
    assert run.status == RunStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_cleanup_removes_finished_runs(make_orchestrator, papers, repository, context_store):
    orchestrator = make_orchestrator()
    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))
    await orchestrator.wait(run.id)

    kept = await orchestrator.cleanup(older_than_days=7)
    assert kept["runs"] == 0
    assert orchestrator.get_status(run.id)["status"] == "exhausted"

    removed = await orchestrator.cleanup(older_than_days=0)

    assert removed["runs"] == 1
    assert removed["agents"] == 5
    assert removed["results"] == 5
    assert removed["contexts"] == 5
    assert removed["jobs"] == 5
    assert repository.list_runs() == []
    assert context_store.list_contexts(run.id) == []
    with pytest.raises(RunNotFound):
        orchestrator.get_status(run.id)


@pytest.mark.asyncio
async def test_health_check_reports_worker_liveness(make_orchestrator, papers, dispatcher):
    orchestrator = make_orchestrator()
    assert orchestrator.health_check()["status"] == "healthy"

    run = await orchestrator.start_run("climate ml", papers, RunConfig(max_iterations=1))
    await orchestrator.wait(run.id)

    health = orchestrator.health_check()
    assert health["status"] == "healthy"
    assert health["queues"]["micro"]["workers_alive"] == 4
    assert health["active_runs"] == 0

    worker = dispatcher._workers["micro"][0]
    worker.cancel()
    await asyncio.gather(worker, return_exceptions=True)

    health = orchestrator.health_check()
    assert health["status"] == "degraded"
    assert health["queues_without_workers"] == ["micro"]
