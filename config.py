"""
Configuration for the RMRI Orchestrator.

Environment Variables:
    ANTHROPIC_API_KEY        - Primary: Your Anthropic/Claude API key
    OPENAI_API_KEY           - Fallback: Your OpenAI API key
    LLM_MODEL                - Optional: model for the preferred provider
    LLM_PROVIDER             - Optional: anthropic | openai (default: whichever key is set)
    LLM_TIMEOUT_SECONDS      - Per-request text-generation timeout (default: 120)
    STORAGE_TIMEOUT_SECONDS  - Per-call context storage timeout (default: 30)
    CONTEXT_STORAGE_DIR      - Directory for context blobs (blank: keep in memory)
    CONTEXT_MAX_BYTES        - Per-artifact size limit (default: 10 MiB)
    MICRO_CONCURRENCY        - Concurrent Micro jobs (default: 10)
    MICRO_MAX_ATTEMPTS       - Attempts per Micro job (default: 3)
    JOB_TIMEOUT_SECONDS      - Per-attempt job timeout (default: 300)
    MAX_ITERATIONS           - Default iteration budget per run (default: 3)
    CONVERGENCE_THRESHOLD    - Default convergence threshold (default: 0.70)
    FAILURE_THRESHOLD        - Tolerated Micro failure rate (default: 0.30)
    API_HOST / API_PORT      - Server bind address (default: 0.0.0.0:8000)
    LOG_LEVEL                - Root log level (default: INFO)

Create a .env file in this directory with:

    ANTHROPIC_API_KEY=sk-ant-your-key-here
    LLM_MODEL=claude-sonnet-4-20250514
"""

import os
from dataclasses import dataclass
from typing import Optional

from core.dispatcher import default_queue_configs
from core.llm import LLMProvider, get_default_model
from core.types import RunConfig


@dataclass
class Config:
    """Application configuration."""

    # LLM Settings (Claude/Anthropic is primary)
    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None  # Fallback
    llm_model: str = "claude-sonnet-4-20250514"
    llm_provider: str = "anthropic"
    llm_timeout_seconds: float = 120.0

    # Storage Settings
    storage_timeout_seconds: float = 30.0
    context_storage_dir: Optional[str] = None
    context_max_bytes: int = 10 * 1024 * 1024

    # Dispatcher Settings
    micro_concurrency: int = 10
    micro_max_attempts: int = 3
    job_timeout_seconds: float = 300.0

    # Run defaults
    max_iterations: int = 3
    convergence_threshold: float = 0.70
    failure_threshold: float = 0.30

    # API Settings
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        # Auto-detect provider based on available keys
        anthropic_key = os.getenv("ANTHROPIC_API_KEY") or None
        openai_key = os.getenv("OPENAI_API_KEY") or None

        if anthropic_key or not openai_key:
            provider = LLMProvider.ANTHROPIC.value
        else:
            provider = LLMProvider.OPENAI.value
        provider = os.getenv("LLM_PROVIDER", provider)

        return cls(
            anthropic_api_key=anthropic_key,
            openai_api_key=openai_key,
            llm_model=os.getenv("LLM_MODEL", get_default_model(LLMProvider(provider))),
            llm_provider=provider,
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
            storage_timeout_seconds=float(os.getenv("STORAGE_TIMEOUT_SECONDS", "30")),
            context_storage_dir=os.getenv("CONTEXT_STORAGE_DIR") or None,
            context_max_bytes=int(os.getenv("CONTEXT_MAX_BYTES", str(10 * 1024 * 1024))),
            micro_concurrency=int(os.getenv("MICRO_CONCURRENCY", "10")),
            micro_max_attempts=int(os.getenv("MICRO_MAX_ATTEMPTS", "3")),
            job_timeout_seconds=float(os.getenv("JOB_TIMEOUT_SECONDS", "300")),
            max_iterations=int(os.getenv("MAX_ITERATIONS", "3")),
            convergence_threshold=float(os.getenv("CONVERGENCE_THRESHOLD", "0.70")),
            failure_threshold=float(os.getenv("FAILURE_THRESHOLD", "0.30")),
            api_host=os.getenv("API_HOST", "0.0.0.0"),
            api_port=int(os.getenv("API_PORT", "8000")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> bool:
        """Check if a text-generation provider is configured."""
        return bool(self.anthropic_api_key or self.openai_api_key)

    def get_api_key(self) -> Optional[str]:
        """Get the appropriate API key based on provider."""
        if self.llm_provider == LLMProvider.ANTHROPIC.value:
            return self.anthropic_api_key
        return self.openai_api_key

    def run_defaults(self) -> RunConfig:
        """Default RunConfig for runs that do not override it."""
        return RunConfig(
            max_iterations=self.max_iterations,
            convergence_threshold=self.convergence_threshold,
            failure_threshold=self.failure_threshold,
        )

    def queue_configs(self):
        return default_queue_configs(
            micro_concurrency=self.micro_concurrency,
            micro_attempts=self.micro_max_attempts,
            job_timeout_seconds=self.job_timeout_seconds,
        )
