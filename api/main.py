import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from agents.meso_agent import MesoAgentConfig
from agents.meta_agent import MetaAgentConfig
from agents.micro_agent import MicroAgentConfig
from agents.orchestrator import Orchestrator
from config import Config
from core import __version__
from core.confidence import ConfidenceCalculator
from core.dispatcher import JobDispatcher
from core.errors import InvalidTransition, ResultsNotReady, RMRIError, RunNotFound
from core.llm import LLMProvider, create_text_generator
from core.types import AgentTier, RunConfig
from storage.blob import InMemoryBlobStore, LocalBlobStore
from storage.context_store import ContextStore
from storage.memory import RunRepository

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    RunNotFound: 404,
    ResultsNotReady: 409,
    InvalidTransition: 409,
}


# Request/Response Models
class PaperModel(BaseModel):
    title: str = Field(..., min_length=1, description="Paper title")
    abstract: str = ""
    full_text: str = ""
    id: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    citations: int = 0
    venue: Optional[str] = None
    doi: Optional[str] = None
    url: Optional[str] = None


class RunConfigModel(BaseModel):
    max_iterations: Optional[int] = Field(default=None, ge=1)
    convergence_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    min_cluster_size: Optional[int] = Field(default=None, ge=1)
    max_clusters: Optional[int] = Field(default=None, ge=1)
    gap_ranking_limit: Optional[int] = Field(default=None, ge=1)
    failure_threshold: Optional[float] = Field(default=None, ge=0, le=1)
    iteration_timeout_seconds: Optional[float] = Field(default=None, gt=0)


class CreateRunRequest(BaseModel):
    topic: str = Field(..., min_length=1, description="Research domain or topic")
    papers: List[PaperModel] = Field(..., min_length=1, description="Paper records to analyze")
    config: Optional[RunConfigModel] = None


class SweepRequest(BaseModel):
    run_id: Optional[str] = None
    older_than_days: float = Field(default=30, ge=0)


class CleanupRequest(BaseModel):
    older_than_days: float = Field(default=7, ge=0)


def build_orchestrator(config: Config, text_generator: Any = None, queue_configs: Any = None) -> Orchestrator:
    """Wire the engine's components from configuration."""
    if config.context_storage_dir:
        blob_store = LocalBlobStore(config.context_storage_dir)
    else:
        blob_store = InMemoryBlobStore()

    agent_settings = {
        "timeout_seconds": config.llm_timeout_seconds,
        "storage_timeout_seconds": config.storage_timeout_seconds,
    }
    return Orchestrator(
        dispatcher=JobDispatcher(queue_configs or config.queue_configs()),
        repository=RunRepository(),
        context_store=ContextStore(blob_store, max_bytes=config.context_max_bytes),
        calculator=ConfidenceCalculator(),
        text_generator=text_generator,
        default_run_config=config.run_defaults(),
        micro_config=MicroAgentConfig(**agent_settings),
        meso_config=MesoAgentConfig(**agent_settings),
        meta_config=MetaAgentConfig(**agent_settings),
        storage_timeout_seconds=config.storage_timeout_seconds,
    )


def create_app(config: Optional[Config] = None, text_generator: Any = None, queue_configs: Any = None) -> FastAPI:
    config = config or Config.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        generator = text_generator
        if generator is None:
            generator = create_text_generator(
                anthropic_api_key=config.anthropic_api_key,
                openai_api_key=config.openai_api_key,
                model=config.llm_model,
                preferred=LLMProvider(config.llm_provider),
            )
        if generator is None:
            logger.warning("No LLM API key configured; agents will use heuristic extraction")

        app.state.config = config
        app.state.orchestrator = build_orchestrator(config, generator, queue_configs)
        logger.info("RMRI Orchestrator API starting (provider=%s)", config.llm_provider if generator else "none")
        yield
        logger.info("RMRI Orchestrator API shutting down")
        await app.state.orchestrator.shutdown()
        await app.state.orchestrator.dispatcher.close()

    app = FastAPI(
        title="RMRI Orchestrator",
        description="""
    Recursive Multi-Agent Research Intelligence:
    - **Micro agents**: per-paper extraction of contributions, limitations and gaps
    - **Meso agent**: thematic clustering of the iteration's papers
    - **Meta agent**: gap ranking and convergence testing across iterations
    """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Serve static files
    static_dir = Path(__file__).parent.parent / "static"
    if static_dir.exists():
        app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

    @app.exception_handler(RMRIError)
    async def engine_error_handler(request: Request, exc: RMRIError):
        status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 500)
        return JSONResponse(status_code=status, content={"error": exc.label, "detail": exc.reason})

    def get_orchestrator(request: Request) -> Orchestrator:
        return request.app.state.orchestrator

    # API Endpoints
    @app.get("/")
    async def root():
        """Serve the UI."""
        html_file = static_dir / "index.html"
        if html_file.exists():
            return FileResponse(str(html_file))
        return {
            "name": "RMRI Orchestrator",
            "version": __version__,
            "status": "running",
            "tiers": [tier.value for tier in AgentTier],
        }

    @app.get("/health")
    async def health_check(orchestrator: Orchestrator = Depends(get_orchestrator)):
        """Health check endpoint with queue and worker liveness."""
        return {
            **orchestrator.health_check(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "llm_provider": config.llm_provider,
            "anthropic_configured": bool(config.anthropic_api_key),
            "openai_configured": bool(config.openai_api_key),
        }

    @app.post("/runs", status_code=202)
    async def create_run(body: CreateRunRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
        """
        Start a new run.

        The run executes in the background. Use the returned run id to poll
        ``/runs/{run_id}/status``.
        """
        run_config = orchestrator.default_run_config
        if body.config is not None:
            overrides = body.config.model_dump(exclude_none=True)
            try:
                run_config = RunConfig(**{**run_config.to_dict(), **overrides})
            except ValueError as e:
                raise HTTPException(status_code=422, detail=str(e))
        run = await orchestrator.start_run(
            body.topic,
            [paper.model_dump() for paper in body.papers],
            run_config,
        )
        return {
            "run_id": run.id,
            "status": run.status.value,
            "message": "Run created. Use /runs/{run_id}/status to check progress.",
        }

    @app.get("/runs")
    async def list_runs(orchestrator: Orchestrator = Depends(get_orchestrator)):
        return {"runs": orchestrator.list_runs()}

    @app.get("/runs/{run_id}/status")
    async def get_run_status(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
        return orchestrator.get_status(run_id)

    @app.get("/runs/{run_id}/results")
    async def get_run_results(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
        return orchestrator.get_results(run_id)

    @app.post("/runs/{run_id}/cancel")
    async def cancel_run(run_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
        run = await orchestrator.cancel(run_id)
        return {"run_id": run.id, "status": run.status.value}

    @app.get("/runs/{run_id}/agents")
    async def get_run_agents(
        run_id: str,
        tier: Optional[AgentTier] = None,
        iteration: Optional[int] = None,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ):
        return {"agents": orchestrator.get_agents(run_id, tier, iteration)}

    @app.get("/runs/{run_id}/logs")
    async def get_run_logs(
        run_id: str,
        limit: Optional[int] = None,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ):
        return {"logs": orchestrator.get_logs(run_id, limit)}

    @app.get("/runs/{run_id}/contexts")
    async def list_run_contexts(
        run_id: str,
        agent_id: Optional[str] = None,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ):
        return {"contexts": await orchestrator.list_contexts(run_id, agent_id)}

    # Keys may contain "/" (DOI-based paper ids), so they are matched as paths
    # and the versions route is registered first.
    @app.get("/runs/{run_id}/contexts/{agent_id}/{key:path}/versions")
    async def get_context_versions(
        run_id: str,
        agent_id: str,
        key: str,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ):
        return {"versions": await orchestrator.context_versions(run_id, agent_id, key)}

    @app.get("/runs/{run_id}/contexts/{agent_id}/{key:path}")
    async def read_run_context(
        run_id: str,
        agent_id: str,
        key: str,
        version: Optional[int] = None,
        summary_only: bool = False,
        orchestrator: Orchestrator = Depends(get_orchestrator),
    ):
        record = await orchestrator.read_context(run_id, agent_id, key, version, summary_only)
        if record is None:
            return JSONResponse(status_code=404, content={"error": "context_not_found", "detail": key})
        return record

    @app.post("/contexts/sweep")
    async def sweep_contexts(body: SweepRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
        removed = await orchestrator.sweep_contexts(body.run_id, body.older_than_days)
        return {"removed": removed}

    @app.post("/runs/cleanup")
    async def cleanup_runs(body: CleanupRequest, orchestrator: Orchestrator = Depends(get_orchestrator)):
        """Delete finished runs, their contexts and dispatcher jobs older than ``older_than_days``."""
        return {"removed": await orchestrator.cleanup(body.older_than_days)}

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
        job = orchestrator.get_job(job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"error": "job_not_found", "detail": job_id})
        return job

    @app.get("/queues/stats")
    async def queue_stats(orchestrator: Orchestrator = Depends(get_orchestrator)):
        return orchestrator.queue_stats()

    @app.post("/queues/{queue}/pause")
    async def pause_queue(queue: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
        try:
            return orchestrator.pause_queue(queue)
        except KeyError:
            return JSONResponse(status_code=404, content={"error": "queue_not_found", "detail": queue})

    @app.post("/queues/{queue}/resume")
    async def resume_queue(queue: str, orchestrator: Orchestrator = Depends(get_orchestrator)):
        try:
            return orchestrator.resume_queue(queue)
        except KeyError:
            return JSONResponse(status_code=404, content={"error": "queue_not_found", "detail": queue})

    return app


# Run with: uvicorn api.main:app --reload
app = create_app()
