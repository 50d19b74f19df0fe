import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Union

from core.base_agent import AgentTask
from core.dispatcher import Job, JobDispatcher, JobStatus
from core.errors import InsufficientData, InvalidTransition, ResultsNotReady, describe_error
from core.types import (
    AgentRecord,
    AgentStatus,
    AgentTier,
    MesoOutput,
    MetaOutput,
    PaperRecord,
    Run,
    RunConfig,
    RunStatus,
    utcnow,
)

from .meso_agent import MesoAgent, MesoAgentConfig
from .meta_agent import MetaAgent, MetaAgentConfig
from .micro_agent import MicroAgent, MicroAgentConfig

logger = logging.getLogger(__name__)

# Failed jobs retained by the dispatcher above which health reports "degraded".
DEGRADED_FAILED_JOBS = 50


class Orchestrator:
    """
    Drives runs through repeated Micro -> Meso -> Meta iterations.

    Responsibilities:
    - Create agents and enqueue their jobs on the dispatcher
    - Wait for each iteration's Micro barrier and enforce the failure threshold
    - Chain exactly one Meso and one Meta job per iteration
    - Stop on convergence, exhaustion, failure or cancellation
    """

    def __init__(
        self,
        dispatcher: JobDispatcher,
        repository: Any,
        context_store: Any,
        calculator: Any,
        text_generator: Any = None,
        default_run_config: Optional[RunConfig] = None,
        micro_config: Optional[MicroAgentConfig] = None,
        meso_config: Optional[MesoAgentConfig] = None,
        meta_config: Optional[MetaAgentConfig] = None,
        storage_timeout_seconds: float = 30.0,
    ):
        self.dispatcher = dispatcher
        self.repository = repository
        self.context_store = context_store
        self.default_run_config = default_run_config or RunConfig()
        self.storage_timeout = storage_timeout_seconds

        collaborators = (text_generator, calculator, context_store, repository)
        self.micro_agent = MicroAgent(micro_config or MicroAgentConfig(), *collaborators)
        self.meso_agent = MesoAgent(meso_config or MesoAgentConfig(), *collaborators)
        self.meta_agent = MetaAgent(meta_config or MetaAgentConfig(), *collaborators)

        self._tasks: Dict[str, asyncio.Task] = {}

    # Run lifecycle ----------------------------------------------------------

    async def start_run(
        self,
        topic: str,
        papers: Sequence[Union[PaperRecord, Dict[str, Any]]],
        config: Optional[RunConfig] = None,
    ) -> Run:
        """Create a queued run and schedule its execution in the background."""
        records = [p if isinstance(p, PaperRecord) else PaperRecord.from_dict(p) for p in papers]
        if not records:
            raise ValueError("At least one paper is required")

        run = self.repository.create_run(Run(topic=topic, papers=records, config=config or self.default_run_config))
        self._log(run.id, "info", "Run created", topic=topic, papers=len(records))

        task = asyncio.create_task(self.execute(run.id), name=f"run-{run.id}")
        self._tasks[run.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run.id, None))
        return run

    async def execute(self, run_id: str) -> Run:
        """Run iterations until convergence, exhaustion, failure or cancellation."""
        run = self.repository.get_run(run_id)
        if run.status != RunStatus.QUEUED:
            return run
        self.repository.transition_run(run_id, RunStatus.RUNNING)
        self._log(run_id, "info", "Run started", max_iterations=run.config.max_iterations)

        try:
            previous: Optional[MetaOutput] = None
            for iteration in range(1, run.config.max_iterations + 1):
                if self._cancelled(run_id):
                    return run
                self.repository.set_iteration(run_id, iteration)
                self._log(run_id, "info", f"Iteration {iteration} started", iteration=iteration)

                meta = await self._run_iteration(run, iteration, previous)
                if meta is None:
                    return run
                self.repository.add_meta_output(run_id, meta)

                if self._cancelled(run_id):
                    return run
                if meta.convergence.converged:
                    self._finish(run_id, RunStatus.CONVERGED, iteration=iteration,
                                 similarity=meta.convergence.similarity)
                    return run
                previous = meta

            self._finish(run_id, RunStatus.EXHAUSTED, iteration=run.iteration)
        except Exception as e:
            label, reason = describe_error(e)
            logger.error("[run=%s] Run failed at iteration %d: %r", run_id, run.iteration, e)
            self._finish(run_id, RunStatus.FAILED, error_label=label, error_reason=reason)
        return run

    async def _run_iteration(self, run: Run, iteration: int, previous: Optional[MetaOutput]) -> Optional[MetaOutput]:
        config = run.config

        micro_jobs = await self._enqueue_micro(run, iteration)
        await self.dispatcher.wait_all(micro_jobs, timeout=config.iteration_timeout_seconds)
        if self._cancelled(run.id):
            return None

        completed = [job for job in micro_jobs if job.status == JobStatus.COMPLETED]
        failure_rate = 1 - len(completed) / len(micro_jobs)
        self._log(
            run.id, "info", f"Micro tier finished for iteration {iteration}",
            iteration=iteration, completed=len(completed), failed=len(micro_jobs) - len(completed),
        )
        if not completed or failure_rate > config.failure_threshold:
            raise InsufficientData(
                f"Micro failure rate {failure_rate:.0%} exceeds {config.failure_threshold:.0%}",
                reason=f"{len(micro_jobs) - len(completed)} of {len(micro_jobs)} papers failed",
            )

        micro_outputs = [job.result.output for job in completed]
        meso_job = await self._enqueue_single(
            run, iteration, AgentTier.MESO, self.meso_agent,
            {"micro_outputs": micro_outputs, "config": config},
        )
        meso: MesoOutput = await self._await_single(meso_job, config)
        if self._cancelled(run.id):
            return None

        meta_job = await self._enqueue_single(
            run, iteration, AgentTier.META, self.meta_agent,
            {"meso_output": meso, "previous_meta": previous, "config": config},
        )
        meta: MetaOutput = await self._await_single(meta_job, config)
        self._log(
            run.id, "info", f"Iteration {iteration} synthesized",
            iteration=iteration, converged=meta.convergence.converged,
            similarity=round(meta.convergence.similarity, 4), confidence=round(meta.confidence, 4),
        )
        return meta

    async def _enqueue_micro(self, run: Run, iteration: int) -> List[Job]:
        jobs = []
        for paper in run.papers:
            if self._cancelled(run.id):
                break
            details = {"paper_id": paper.paper_id, "paper_title": paper.title}
            agent = self.repository.create_agent(AgentRecord(
                run_id=run.id,
                tier=AgentTier.MICRO,
                name=f"micro-{paper.paper_id}",
                iteration=iteration,
                metadata=details,
            ))
            task = AgentTask(run.id, agent.id, iteration, metadata=details)
            job = await self.dispatcher.enqueue(
                "micro",
                self.micro_agent.job_handler(task, {"paper": paper}),
                name=f"micro:{run.id}:{iteration}:{paper.paper_id}",
                data={"run_id": run.id, "agent_id": agent.id, "iteration": iteration},
                on_failed=self.micro_agent.failure_handler(task),
            )
            self.repository.attach_job(agent.id, job.id)
            jobs.append(job)
        return jobs

    async def _enqueue_single(
        self, run: Run, iteration: int, tier: AgentTier, agent_impl: Any, input_data: Dict[str, Any]
    ) -> Job:
        agent = self.repository.create_agent(AgentRecord(
            run_id=run.id, tier=tier, name=f"{tier.value}-{iteration}", iteration=iteration,
        ))
        task = AgentTask(run.id, agent.id, iteration)
        job = await self.dispatcher.enqueue(
            tier.value,
            agent_impl.job_handler(task, input_data),
            name=f"{tier.value}:{run.id}:{iteration}",
            data={"run_id": run.id, "agent_id": agent.id, "iteration": iteration},
            on_failed=agent_impl.failure_handler(task),
        )
        self.repository.attach_job(agent.id, job.id)
        return job

    async def _await_single(self, job: Job, config: RunConfig) -> Any:
        await self.dispatcher.wait(job, timeout=config.iteration_timeout_seconds)
        if job.status != JobStatus.COMPLETED:
            raise job.error or RuntimeError(f"{job.queue} job {job.status.value}")
        return job.result.output

    def _cancelled(self, run_id: str) -> bool:
        return self.repository.get_run(run_id).status == RunStatus.CANCELLED

    def _finish(self, run_id: str, status: RunStatus, **details: Any) -> None:
        run = self.repository.get_run(run_id)
        if run.status.is_terminal:
            return
        fields = {k: details.pop(k) for k in ("error_label", "error_reason") if k in details}
        self.repository.transition_run(run_id, status, **fields)
        level = "error" if status == RunStatus.FAILED else "info"
        self._log(run_id, level, f"Run {status.value}", **fields, **details)

    async def cancel(self, run_id: str) -> Run:
        """
        Cancel a run immediately.

        In-flight jobs finish and write their contexts; queued and retrying
        jobs of the run are dropped and no further work is scheduled.
        Raises InvalidTransition for runs that are already terminal.
        """
        run = self.repository.get_run(run_id)
        if run.status.is_terminal:
            raise InvalidTransition(f"Run {run_id} is already {run.status.value}",
                                    reason=f"run is {run.status.value}")
        self.repository.transition_run(run_id, RunStatus.CANCELLED)

        dropped = self.dispatcher.cancel(lambda job: job.data.get("run_id") == run_id)
        for job in dropped:
            agent = self.repository.get_agent(job.data["agent_id"])
            if agent is not None and agent.status in (AgentStatus.PENDING, AgentStatus.ACTIVE):
                self.repository.transition_agent(
                    agent.id, agent.status, AgentStatus.FAILED, error_message="cancelled: run cancelled",
                )
        self._log(run_id, "info", "Run cancelled by user", dropped_jobs=len(dropped))
        return run

    async def wait(self, run_id: str) -> Run:
        """Wait for a run started with start_run to stop."""
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return self.repository.get_run(run_id)

    async def shutdown(self) -> None:
        """Stop background run tasks."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # Queries ----------------------------------------------------------------

    def get_status(self, run_id: str) -> Dict[str, Any]:
        run = self.repository.get_run(run_id)
        latest = run.latest_meta
        return {
            "run_id": run.id,
            "topic": run.topic,
            "status": run.status.value,
            "iteration": run.iteration,
            "max_iterations": run.config.max_iterations,
            "error_label": run.error_label,
            "error_reason": run.error_reason,
            "convergence": latest.convergence.to_dict() if latest else None,
            "agents": self.repository.agent_counts(run_id),
            "queues": self.dispatcher.all_stats(),
            "created_at": run.created_at.isoformat(),
            "started_at": run.started_at.isoformat() if run.started_at else None,
            "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        }

    def get_results(self, run_id: str) -> Dict[str, Any]:
        """Latest Meta output plus the per-iteration history."""
        run = self.repository.get_run(run_id)
        latest = run.latest_meta
        if latest is None:
            raise ResultsNotReady(f"Run {run_id} has no completed iteration yet",
                                  reason="no completed iteration")
        return {
            "run_id": run.id,
            "topic": run.topic,
            "status": run.status.value,
            "iterations_completed": len(run.meta_outputs),
            "converged": run.status == RunStatus.CONVERGED,
            "final": latest.to_dict(),
            "history": [
                {
                    "iteration": meta.iteration,
                    "convergence": meta.convergence.to_dict(),
                    "confidence": meta.confidence,
                    "top_gaps": [gap.gap for gap in meta.ranked_gaps[:5]],
                }
                for meta in run.meta_outputs
            ],
        }

    def list_runs(self) -> List[Dict[str, Any]]:
        return [run.to_dict() for run in self.repository.list_runs()]

    def get_agents(self, run_id: str, tier: Optional[AgentTier] = None,
                   iteration: Optional[int] = None) -> List[Dict[str, Any]]:
        self.repository.get_run(run_id)
        agents = []
        for agent in self.repository.list_agents(run_id, tier, iteration):
            entry = agent.to_dict()
            job = self.dispatcher.get_job(agent.job_id) if agent.job_id else None
            entry["job"] = {
                "job_id": job.id,
                "status": job.status.value,
                "progress": job.progress,
                "attempts_made": job.attempts_made,
            } if job else None
            agents.append(entry)
        return agents

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Dispatcher view of one job, or None once it has been cleaned."""
        job = self.dispatcher.get_job(job_id)
        return job.to_dict() if job else None

    def get_logs(self, run_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        self.repository.get_run(run_id)
        return [entry.to_dict() for entry in self.repository.list_logs(run_id, limit)]

    def queue_stats(self) -> Dict[str, Any]:
        return self.dispatcher.all_stats()

    def pause_queue(self, queue: str) -> Dict[str, Any]:
        self.dispatcher.pause(queue)
        return self.dispatcher.stats(queue)

    def resume_queue(self, queue: str) -> Dict[str, Any]:
        self.dispatcher.resume(queue)
        return self.dispatcher.stats(queue)

    def health_check(self) -> Dict[str, Any]:
        """
        Report queue and worker liveness.

        The status is "degraded" when a started queue has lost workers or the
        dispatcher holds more than DEGRADED_FAILED_JOBS failed jobs.
        """
        stats = self.dispatcher.all_stats()
        queues = stats["queues"]
        failed = sum(q["failed"] for q in queues)
        dead = [
            q["queue"] for q in queues
            if q["workers_started"] and q["workers_alive"] < q["concurrency"]
        ]
        degraded = bool(dead) or failed > DEGRADED_FAILED_JOBS
        return {
            "status": "degraded" if degraded else "healthy",
            "queues": {
                q["queue"]: {
                    "active": q["active"],
                    "waiting": q["waiting"] + q["delayed"],
                    "failed": q["failed"],
                    "paused": q["paused"],
                    "workers_alive": q["workers_alive"],
                }
                for q in queues
            },
            "queues_without_workers": dead,
            "active_runs": len(self._tasks),
            "timestamp": stats["timestamp"],
        }

    async def list_contexts(self, run_id: str, agent_id: Optional[str] = None) -> List[Dict[str, Any]]:
        self.repository.get_run(run_id)
        return await self._store_call(self.context_store.list_contexts, run_id, agent_id)

    async def read_context(
        self,
        run_id: str,
        agent_id: str,
        key: str,
        version: Optional[int] = None,
        summary_only: bool = False,
    ) -> Optional[Dict[str, Any]]:
        self.repository.get_run(run_id)
        record = await self._store_call(self.context_store.read, run_id, agent_id, key, summary_only, version)
        return record.to_dict(include_data=not summary_only) if record else None

    async def context_versions(self, run_id: str, agent_id: str, key: str) -> List[Dict[str, Any]]:
        self.repository.get_run(run_id)
        return await self._store_call(self.context_store.versions, run_id, agent_id, key)

    async def sweep_contexts(self, run_id: Optional[str] = None, older_than_days: float = 30) -> int:
        return await self._store_call(self.context_store.sweep, run_id, timedelta(days=older_than_days))

    async def cleanup(self, older_than_days: float = 7) -> Dict[str, int]:
        """
        Delete runs that stopped more than ``older_than_days`` ago.

        Removes each run with its agents, results, logs and contexts, then
        drops finished dispatcher jobs of the same age.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        removed = {"runs": 0, "agents": 0, "results": 0, "logs": 0, "contexts": 0}
        for run in self.repository.list_runs():
            if not run.status.is_terminal or run.id in self._tasks:
                continue
            if run.completed_at is None or run.completed_at >= cutoff:
                continue
            counts = self.repository.delete_run(run.id)
            removed["contexts"] += await self._store_call(self.context_store.delete_run, run.id)
            removed["runs"] += 1
            for name, count in counts.items():
                removed[name] += count
        removed["jobs"] = self.dispatcher.clean(timedelta(days=older_than_days))
        logger.info("Cleanup removed %s", removed)
        return removed

    # Helpers ----------------------------------------------------------------

    async def _store_call(self, fn: Any, *args: Any) -> Any:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=self.storage_timeout)

    def _log(self, run_id: str, level: str, message: str, **context: Any) -> None:
        logger.log(logging.getLevelName(level.upper()), "[run=%s] %s %s", run_id, message, context or "")
        self.repository.insert_log(run_id, level, message, context=context)
