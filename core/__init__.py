from .types import (
    AgentTier,
    AgentStatus,
    RunStatus,
    ContextWriteMode,
    PaperRecord,
    RunConfig,
    MicroOutput,
    MesoOutput,
    MetaOutput,
    Run,
    AgentRecord,
    AgentResponse,
)
from .base_agent import AgentConfig, AgentTask, TierAgent
from .confidence import ConfidenceCalculator
from .dispatcher import JobDispatcher, JobStatus, QueueConfig, RetryPolicy
from .llm import LLMProvider, create_llm_client, create_text_generator, get_default_model

__version__ = "1.0.0"

__all__ = [
    "AgentTier",
    "AgentStatus",
    "RunStatus",
    "ContextWriteMode",
    "PaperRecord",
    "RunConfig",
    "MicroOutput",
    "MesoOutput",
    "MetaOutput",
    "Run",
    "AgentRecord",
    "AgentResponse",
    "AgentConfig",
    "AgentTask",
    "TierAgent",
    "ConfidenceCalculator",
    "JobDispatcher",
    "JobStatus",
    "QueueConfig",
    "RetryPolicy",
    "LLMProvider",
    "create_llm_client",
    "create_text_generator",
    "get_default_model",
]
