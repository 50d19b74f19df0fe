import threading
from typing import Any, Dict, Iterable, List, Optional, Union

from core.errors import InvalidTransition, RunNotFound
from core.types import (
    AgentRecord,
    AgentStatus,
    AgentTier,
    LogEntry,
    MetaOutput,
    ResultRecord,
    Run,
    RunStatus,
    utcnow,
)

AGENT_TRANSITIONS = {
    AgentStatus.PENDING: (AgentStatus.ACTIVE, AgentStatus.FAILED),
    AgentStatus.ACTIVE: (AgentStatus.COMPLETED, AgentStatus.FAILED),
    AgentStatus.COMPLETED: (),
    AgentStatus.FAILED: (),
}

RUN_TRANSITIONS = {
    RunStatus.QUEUED: (RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED),
    RunStatus.RUNNING: (RunStatus.CONVERGED, RunStatus.EXHAUSTED, RunStatus.FAILED, RunStatus.CANCELLED),
}


class RunRepository:
    """
    In-memory storage for runs, agents, results and run logs.

    Agent status changes are compare-and-set: the caller names the status it
    expects and the change only happens if the stored row still has it. In
    production, this would be backed by a relational database.
    """

    def __init__(self):
        self._runs: Dict[str, Run] = {}
        self._agents: Dict[str, AgentRecord] = {}
        self._results: List[ResultRecord] = []
        self._logs: Dict[str, List[LogEntry]] = {}
        self._lock = threading.RLock()

    # Run methods
    def create_run(self, run: Run) -> Run:
        """Store a new run."""
        with self._lock:
            self._runs[run.id] = run
            self._logs.setdefault(run.id, [])
        return run

    def get_run(self, run_id: str) -> Run:
        """Get a run by ID, raising RunNotFound if it does not exist."""
        with self._lock:
            run = self._runs.get(run_id)
        if run is None:
            raise RunNotFound(f"Run {run_id} not found", reason="no such run")
        return run

    def list_runs(self) -> List[Run]:
        """All runs, newest first."""
        with self._lock:
            return sorted(self._runs.values(), key=lambda r: r.created_at, reverse=True)

    def transition_run(self, run_id: str, to: RunStatus, **fields: Any) -> Run:
        """Move a run to ``to``; terminal runs never change status again."""
        with self._lock:
            run = self.get_run(run_id)
            if to not in RUN_TRANSITIONS.get(run.status, ()):
                raise InvalidTransition(
                    f"Run {run_id} cannot go from {run.status.value} to {to.value}",
                    reason=f"run is {run.status.value}",
                )
            run.status = to
            if to == RunStatus.RUNNING and run.started_at is None:
                run.started_at = utcnow()
            if to.is_terminal:
                run.completed_at = utcnow()
            for name, value in fields.items():
                setattr(run, name, value)
            return run

    def set_iteration(self, run_id: str, iteration: int) -> None:
        with self._lock:
            self.get_run(run_id).iteration = iteration

    def add_meta_output(self, run_id: str, output: MetaOutput) -> None:
        with self._lock:
            self.get_run(run_id).meta_outputs.append(output)

    # Agent methods
    def create_agent(self, agent: AgentRecord) -> AgentRecord:
        """Store a pending agent."""
        with self._lock:
            self._agents[agent.id] = agent
        return agent

    def get_agent(self, agent_id: str) -> Optional[AgentRecord]:
        with self._lock:
            return self._agents.get(agent_id)

    def transition_agent(
        self,
        agent_id: str,
        expected: Union[AgentStatus, Iterable[AgentStatus]],
        to: AgentStatus,
        **fields: Any,
    ) -> AgentRecord:
        """
        Atomically move an agent from one of ``expected`` to ``to``.

        Raises InvalidTransition when the stored status is not expected or the
        state machine does not allow the change.
        """
        expected = (expected,) if isinstance(expected, AgentStatus) else tuple(expected)
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is None:
                raise InvalidTransition(f"Agent {agent_id} not found", reason="no such agent")
            if agent.status not in expected or to not in AGENT_TRANSITIONS[agent.status]:
                raise InvalidTransition(
                    f"Agent {agent_id} is {agent.status.value}, cannot move to {to.value}",
                    reason=f"agent is {agent.status.value}",
                )
            agent.status = to
            if to == AgentStatus.ACTIVE:
                agent.started_at = utcnow()
            elif to in (AgentStatus.COMPLETED, AgentStatus.FAILED):
                agent.completed_at = utcnow()
            for name, value in fields.items():
                setattr(agent, name, value)
            return agent

    def attach_job(self, agent_id: str, job_id: str) -> None:
        """Record the dispatcher job that executes an agent."""
        with self._lock:
            agent = self._agents.get(agent_id)
            if agent is not None:
                agent.job_id = job_id

    def list_agents(
        self,
        run_id: str,
        tier: Optional[AgentTier] = None,
        iteration: Optional[int] = None,
    ) -> List[AgentRecord]:
        """Agents of a run in creation order, optionally filtered."""
        with self._lock:
            agents = [
                a for a in self._agents.values()
                if a.run_id == run_id
                and (tier is None or a.tier == tier)
                and (iteration is None or a.iteration == iteration)
            ]
        return sorted(agents, key=lambda a: a.created_at)

    def agent_counts(self, run_id: str) -> Dict[str, Dict[str, int]]:
        """Agent counts per tier and status."""
        counts = {tier.value: {status.value: 0 for status in AgentStatus} for tier in AgentTier}
        for agent in self.list_agents(run_id):
            counts[agent.tier.value][agent.status.value] += 1
        return counts

    # Result methods
    def insert_result(self, result: ResultRecord) -> ResultRecord:
        """Append an agent result. Results are never updated."""
        with self._lock:
            self._results.append(result)
        return result

    def list_results(
        self,
        run_id: str,
        tier: Optional[AgentTier] = None,
        iteration: Optional[int] = None,
    ) -> List[ResultRecord]:
        with self._lock:
            return [
                r for r in self._results
                if r.run_id == run_id
                and (tier is None or r.tier == tier)
                and (iteration is None or r.iteration == iteration)
            ]

    # Log methods
    def insert_log(
        self,
        run_id: str,
        level: str,
        message: str,
        agent_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> LogEntry:
        entry = LogEntry(run_id, level, message, agent_id=agent_id, context=dict(context or {}))
        with self._lock:
            self._logs.setdefault(run_id, []).append(entry)
        return entry

    def list_logs(self, run_id: str, limit: Optional[int] = None) -> List[LogEntry]:
        """Run log entries, oldest first; ``limit`` keeps the most recent."""
        with self._lock:
            logs = list(self._logs.get(run_id, []))
        if limit:
            return logs[-limit:]
        return logs

    def delete_run(self, run_id: str) -> Dict[str, int]:
        """Remove a run with its agents, results and logs."""
        with self._lock:
            self._runs.pop(run_id, None)
            agent_ids = [a.id for a in self._agents.values() if a.run_id == run_id]
            for agent_id in agent_ids:
                del self._agents[agent_id]
            kept = [r for r in self._results if r.run_id != run_id]
            removed_results = len(self._results) - len(kept)
            self._results = kept
            logs = self._logs.pop(run_id, [])
        return {"agents": len(agent_ids), "results": removed_results, "logs": len(logs)}

    # Utility methods
    def clear(self) -> None:
        """Clear all stored data."""
        with self._lock:
            self._runs.clear()
            self._agents.clear()
            self._results.clear()
            self._logs.clear()
