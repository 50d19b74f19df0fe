from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Optional
from dataclasses import dataclass, field
import asyncio
import logging
import time

from .dispatcher import Job
from .errors import InvalidTransition, ProviderUnavailable, describe_error
from .llm import GenerationOptions
from .types import AgentResponse, AgentStatus, AgentTier, ContextWriteMode, ResultRecord

logger = logging.getLogger(__name__)


@dataclass
class AgentConfig:
    """Configuration for a tier agent."""
    name: str
    description: str
    tier: AgentTier
    model: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 4096
    system_prompt: Optional[str] = None
    timeout_seconds: float = 120.0
    storage_timeout_seconds: float = 30.0


@dataclass
class AgentTask:
    """One execution of an agent within a run, bound to the job that carries it."""
    run_id: str
    agent_id: str
    iteration: int
    job: Optional[Job] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def attempt(self) -> int:
        return self.job.attempts_made if self.job else 1

    @property
    def is_final_attempt(self) -> bool:
        return self.job.is_final_attempt if self.job else True

    def report_progress(self, percent: float) -> None:
        if self.job is not None:
            self.job.report_progress(percent)


class TierAgent(ABC):
    """
    Base class for Micro, Meso and Meta agents.

    ``run`` drives one execution through the agent state machine
    (pending -> active -> completed | failed): the first attempt claims the
    agent, later attempts of the same job resume it, and only a fully
    successful extraction writes the context artifact and the result row.
    Failures propagate to the dispatcher, which decides whether to retry and
    calls ``mark_failed`` once attempts are exhausted.

    Both writes are skipped once the agent is no longer active, so an attempt
    abandoned by a barrier timeout does not publish late output. The check
    runs in the storage thread just before each write; a write already past
    it still lands. The context is written before the result row, so a
    result insert that fails on the final attempt leaves that context version
    behind for a failed agent.
    """

    context_mode = ContextWriteMode.OVERWRITE

    def __init__(
        self,
        config: AgentConfig,
        text_generator: Any,
        calculator: Any,
        context_store: Any,
        repository: Any,
    ):
        self.config = config
        self.text_generator = text_generator
        self.calculator = calculator
        self.context_store = context_store
        self.repository = repository

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def tier(self) -> AgentTier:
        return self.config.tier

    @property
    def description(self) -> str:
        return self.config.description

    def get_system_prompt(self) -> str:
        """Get the system prompt for this agent."""
        if self.config.system_prompt:
            return self.config.system_prompt
        return self._default_system_prompt()

    @abstractmethod
    def _default_system_prompt(self) -> str:
        """Return the default system prompt for this agent type."""
        pass

    @abstractmethod
    async def process(self, task: AgentTask, input_data: Dict[str, Any]) -> Any:
        """Produce the tier output; its ``confidence`` must be set."""
        pass

    @abstractmethod
    def context_key(self, task: AgentTask, output: Any) -> str:
        pass

    def context_payload(self, output: Any) -> Any:
        return output.to_dict()

    # Execution ------------------------------------------------------------

    def job_handler(self, task: AgentTask, input_data: Dict[str, Any]) -> Callable[[Job], Awaitable[AgentResponse]]:
        """Adapt ``run`` to the dispatcher's ``handler(job)`` signature."""
        async def handler(job: Job) -> AgentResponse:
            task.job = job
            return await self.run(task, input_data)
        return handler

    def failure_handler(self, task: AgentTask) -> Callable[[Job], None]:
        def on_failed(job: Job) -> None:
            self.mark_failed(task, job.error)
        return on_failed

    async def run(self, task: AgentTask, input_data: Dict[str, Any]) -> AgentResponse:
        start_time = time.time()
        self._claim(task)
        task.report_progress(10)

        output = await self.process(task, input_data)
        output.agent_id = task.agent_id
        task.report_progress(70)

        key = self.context_key(task, output)
        await self._store_call(
            self._while_active(task, self.context_store.write),
            task.run_id,
            task.agent_id,
            key,
            self.context_payload(output),
            self.context_mode,
            {"tier": self.tier.value, "iteration": task.iteration, **task.metadata},
        )
        task.report_progress(90)

        await self._store_call(
            self._while_active(task, self.repository.insert_result),
            ResultRecord(
                run_id=task.run_id,
                agent_id=task.agent_id,
                tier=self.tier,
                iteration=task.iteration,
                content=output.to_dict(),
                confidence=output.confidence,
            ),
        )

        execution_time_ms = int((time.time() - start_time) * 1000)
        self.repository.transition_agent(
            task.agent_id,
            AgentStatus.ACTIVE,
            AgentStatus.COMPLETED,
            execution_time_ms=execution_time_ms,
            confidence=output.confidence,
        )
        self._log(
            task, "info", f"{self.name} completed",
            confidence=round(output.confidence, 4), execution_time_ms=execution_time_ms, context_key=key,
        )
        return AgentResponse(
            agent_id=task.agent_id,
            tier=self.tier,
            output=output,
            confidence=output.confidence,
            execution_time_ms=execution_time_ms,
        )

    def _claim(self, task: AgentTask) -> None:
        if task.attempt <= 1:
            self.repository.transition_agent(task.agent_id, AgentStatus.PENDING, AgentStatus.ACTIVE)
            self._log(task, "info", f"{self.name} started")
            return
        # A retry of the same job resumes the agent it already claimed.
        agent = self.repository.get_agent(task.agent_id)
        if agent is None or agent.status != AgentStatus.ACTIVE:
            self.repository.transition_agent(task.agent_id, AgentStatus.PENDING, AgentStatus.ACTIVE)
        self._log(task, "info", f"{self.name} resumed (attempt {task.attempt})")

    def mark_failed(self, task: AgentTask, error: Optional[BaseException]) -> None:
        """Record a terminal failure; a no-op for agents already terminal."""
        agent = self.repository.get_agent(task.agent_id)
        if agent is None or agent.status in (AgentStatus.COMPLETED, AgentStatus.FAILED):
            return
        label, reason = describe_error(error) if error is not None else ("internal_error", "unknown error")
        self.repository.transition_agent(
            task.agent_id,
            (AgentStatus.PENDING, AgentStatus.ACTIVE),
            AgentStatus.FAILED,
            error_message=f"{label}: {reason}",
        )
        self._log(task, "error", f"{self.name} failed", label=label, reason=reason)

    # Collaborators ----------------------------------------------------------

    async def _call_llm(self, prompt: str, max_tokens: Optional[int] = None) -> str:
        """Make a call to the text-generation service."""
        if self.text_generator is None:
            raise ProviderUnavailable("No text generator configured", reason="no provider configured")
        options = GenerationOptions(
            system=self.get_system_prompt(),
            model=self.config.model,
            max_tokens=max_tokens or self.config.max_tokens,
            temperature=self.config.temperature,
            timeout_seconds=self.config.timeout_seconds,
        )
        return await self.text_generator.generate(prompt, options)

    async def _store_call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking storage call in a worker thread, bounded by the storage timeout."""
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args),
            timeout=self.config.storage_timeout_seconds,
        )

    def _while_active(self, task: AgentTask, fn: Callable[..., Any]) -> Callable[..., Any]:
        """Wrap a storage call so it only runs while the agent is still active."""
        def call(*args: Any) -> Any:
            agent = self.repository.get_agent(task.agent_id)
            if agent is None or agent.status != AgentStatus.ACTIVE:
                raise InvalidTransition(
                    f"Agent {task.agent_id} is no longer active",
                    reason="agent no longer active",
                )
            return fn(*args)
        return call

    def _log(self, task: AgentTask, level: str, message: str, **context: Any) -> None:
        logger.log(
            logging.getLevelName(level.upper()),
            "[run=%s agent=%s iteration=%d] %s %s",
            task.run_id, task.agent_id, task.iteration, message, context or "",
        )
        self.repository.insert_log(
            task.run_id, level, message, agent_id=task.agent_id,
            context={"tier": self.tier.value, "iteration": task.iteration, **context},
        )
