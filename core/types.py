from enum import Enum
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime, timezone
import re
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AgentTier(Enum):
    MICRO = "micro"
    MESO = "meso"
    META = "meta"


class AgentStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class RunStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    CONVERGED = "converged"
    EXHAUSTED = "exhausted"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in (RunStatus.QUEUED, RunStatus.RUNNING)


class ContextWriteMode(Enum):
    OVERWRITE = "overwrite"
    APPEND = "append"


class ContributionType(Enum):
    METHODOLOGICAL = "methodological"
    THEORETICAL = "theoretical"
    EMPIRICAL = "empirical"
    TOOL_SYSTEM = "tool_system"


SEVERITIES = ("low", "medium", "high")
PRIORITIES = ("high", "medium", "low")


@dataclass
class PaperRecord:
    """A research paper handed to a Micro agent."""
    title: str
    abstract: str = ""
    full_text: str = ""
    id: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    year: Optional[int] = None
    citations: int = 0
    venue: Optional[str] = None
    doi: Optional[str] = None
    url: Optional[str] = None

    @property
    def paper_id(self) -> str:
        if self.id:
            return str(self.id)
        if self.doi:
            return self.doi
        slug = re.sub(r"[^a-z0-9]", "", (self.title or "unknown").lower())[:20]
        return f"{slug or 'unknown'}_{self.year or 'unknown'}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaperRecord":
        return cls(
            title=data.get("title") or "Untitled",
            abstract=data.get("abstract") or "",
            full_text=data.get("full_text") or data.get("fullText") or data.get("content") or "",
            id=data.get("id"),
            authors=list(data.get("authors") or []),
            year=data.get("year"),
            citations=int(data.get("citations") or 0),
            venue=data.get("venue"),
            doi=data.get("doi"),
            url=data.get("url"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paper_id": self.paper_id,
            "title": self.title,
            "abstract": self.abstract,
            "authors": self.authors,
            "year": self.year,
            "citations": self.citations,
            "venue": self.venue,
            "doi": self.doi,
            "url": self.url,
        }


@dataclass
class RunConfig:
    """Per-run tuning knobs."""
    max_iterations: int = 3
    convergence_threshold: float = 0.70
    min_cluster_size: int = 2
    max_clusters: int = 10
    gap_ranking_limit: int = 20
    failure_threshold: float = 0.30
    iteration_timeout_seconds: float = 900.0
    convergence_top_k: int = 10

    def __post_init__(self):
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if not 0.0 <= self.convergence_threshold <= 1.0:
            raise ValueError("convergence_threshold must be within [0, 1]")
        if not 0.0 <= self.failure_threshold <= 1.0:
            raise ValueError("failure_threshold must be within [0, 1]")
        if self.min_cluster_size < 1 or self.max_clusters < 1:
            raise ValueError("cluster bounds must be positive")
        if self.min_cluster_size > self.max_clusters:
            raise ValueError("min_cluster_size cannot exceed max_clusters")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_iterations": self.max_iterations,
            "convergence_threshold": self.convergence_threshold,
            "min_cluster_size": self.min_cluster_size,
            "max_clusters": self.max_clusters,
            "gap_ranking_limit": self.gap_ranking_limit,
            "failure_threshold": self.failure_threshold,
            "iteration_timeout_seconds": self.iteration_timeout_seconds,
            "convergence_top_k": self.convergence_top_k,
        }


# ---------------------------------------------------------------------------
# Micro tier
# ---------------------------------------------------------------------------

@dataclass
class Contribution:
    type: str
    description: str
    confidence: float = 0.7
    evidence: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "confidence": self.confidence,
            "evidence": self.evidence,
        }


@dataclass
class Limitation:
    type: str
    description: str
    severity: str = "medium"
    confidence: float = 0.7

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "severity": self.severity,
            "confidence": self.confidence,
        }


@dataclass
class ResearchGap:
    type: str
    description: str
    priority: str = "medium"
    confidence: float = 0.7
    source: str = "paper"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "priority": self.priority,
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass
class Methodology:
    approach: str = "Not specified"
    techniques: List[str] = field(default_factory=list)
    datasets: List[str] = field(default_factory=list)
    metrics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "approach": self.approach,
            "techniques": self.techniques,
            "datasets": self.datasets,
            "metrics": self.metrics,
        }


@dataclass
class MicroOutput:
    """Structured extraction for one paper."""
    paper_id: str
    title: str
    year: Optional[int] = None
    citations: int = 0
    contributions: List[Contribution] = field(default_factory=list)
    limitations: List[Limitation] = field(default_factory=list)
    research_gaps: List[ResearchGap] = field(default_factory=list)
    methodology: Methodology = field(default_factory=Methodology)
    structure: Dict[str, bool] = field(default_factory=dict)
    fingerprint: List[float] = field(default_factory=list)
    extraction_mode: str = "llm"
    provider_confidence: float = 0.5
    confidence: float = 0.0
    iteration: int = 1
    agent_id: Optional[str] = None

    @property
    def evidence_count(self) -> int:
        return len(self.contributions) + len(self.limitations) + len(self.research_gaps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "paper_id": self.paper_id,
            "title": self.title,
            "year": self.year,
            "citations": self.citations,
            "contributions": [c.to_dict() for c in self.contributions],
            "limitations": [l.to_dict() for l in self.limitations],
            "research_gaps": [g.to_dict() for g in self.research_gaps],
            "methodology": self.methodology.to_dict(),
            "structure": self.structure,
            "fingerprint": self.fingerprint,
            "extraction_mode": self.extraction_mode,
            "provider_confidence": self.provider_confidence,
            "confidence": self.confidence,
            "iteration": self.iteration,
            "agent_id": self.agent_id,
        }


# ---------------------------------------------------------------------------
# Meso tier
# ---------------------------------------------------------------------------

@dataclass
class Pattern:
    type: str
    description: str
    confidence: float = 0.7
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "description": self.description,
            "confidence": self.confidence,
            **self.details,
        }


@dataclass
class GapGroup:
    priority: str
    count: int
    gaps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"priority": self.priority, "count": self.count, "gaps": self.gaps}


@dataclass
class Cluster:
    cluster_id: int
    label: str
    keywords: List[str]
    paper_ids: List[str]
    cohesion: float
    key_contributions: List[Dict[str, Any]] = field(default_factory=list)
    identified_gaps: List[GapGroup] = field(default_factory=list)
    common_methodologies: List[Dict[str, Any]] = field(default_factory=list)
    trends: List[Dict[str, Any]] = field(default_factory=list)
    year_range: Optional[Dict[str, int]] = None

    @property
    def size(self) -> int:
        return len(self.paper_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "label": self.label,
            "keywords": self.keywords,
            "paper_ids": self.paper_ids,
            "size": self.size,
            "cohesion": self.cohesion,
            "key_contributions": self.key_contributions,
            "identified_gaps": [g.to_dict() for g in self.identified_gaps],
            "common_methodologies": self.common_methodologies,
            "trends": self.trends,
            "year_range": self.year_range,
        }


@dataclass
class ThematicGap:
    theme: str
    description: str
    priority: str = "medium"
    confidence: float = 0.6
    gap_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "theme": self.theme,
            "description": self.description,
            "priority": self.priority,
            "confidence": self.confidence,
            "gap_count": self.gap_count,
        }


@dataclass
class MesoOutput:
    iteration: int
    clusters: List[Cluster] = field(default_factory=list)
    patterns: List[Pattern] = field(default_factory=list)
    thematic_gaps: List[ThematicGap] = field(default_factory=list)
    clustering_mode: str = "llm"
    total_papers: int = 0
    provider_confidence: float = 0.5
    confidence: float = 0.0
    agent_id: Optional[str] = None

    @property
    def average_cohesion(self) -> float:
        if not self.clusters:
            return 0.5
        return sum(c.cohesion for c in self.clusters) / len(self.clusters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "total_papers": self.total_papers,
            "total_clusters": len(self.clusters),
            "clusters": [c.to_dict() for c in self.clusters],
            "patterns": [p.to_dict() for p in self.patterns],
            "thematic_gaps": [g.to_dict() for g in self.thematic_gaps],
            "clustering_mode": self.clustering_mode,
            "average_cohesion": self.average_cohesion,
            "provider_confidence": self.provider_confidence,
            "confidence": self.confidence,
            "agent_id": self.agent_id,
        }


# ---------------------------------------------------------------------------
# Meta tier
# ---------------------------------------------------------------------------

@dataclass
class GapScores:
    importance: float
    novelty: float
    feasibility: float
    impact: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "importance": self.importance,
            "novelty": self.novelty,
            "feasibility": self.feasibility,
            "impact": self.impact,
        }


@dataclass
class RankedGap:
    gap: str
    theme: str
    priority: str
    scores: GapScores
    total_score: float
    source: str
    type: str = "inferred"
    confidence: float = 0.7
    rank: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rank": self.rank,
            "gap": self.gap,
            "type": self.type,
            "theme": self.theme,
            "priority": self.priority,
            "scores": self.scores.to_dict(),
            "total_score": self.total_score,
            "confidence": self.confidence,
            "source": self.source,
        }


@dataclass
class ConvergenceResult:
    converged: bool
    similarity: float
    reason: str
    threshold: float = 0.70

    def to_dict(self) -> Dict[str, Any]:
        return {
            "converged": self.converged,
            "similarity": self.similarity,
            "reason": self.reason,
            "threshold": self.threshold,
        }


@dataclass
class MetaOutput:
    iteration: int
    ranked_gaps: List[RankedGap] = field(default_factory=list)
    cross_domain_patterns: List[Pattern] = field(default_factory=list)
    research_frontiers: List[Dict[str, Any]] = field(default_factory=list)
    recommended_directions: List[Dict[str, Any]] = field(default_factory=list)
    convergence: ConvergenceResult = field(
        default_factory=lambda: ConvergenceResult(False, 0.0, "No previous iteration")
    )
    statistics: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    agent_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "ranked_gaps": [g.to_dict() for g in self.ranked_gaps],
            "cross_domain_patterns": [p.to_dict() for p in self.cross_domain_patterns],
            "research_frontiers": self.research_frontiers,
            "recommended_directions": self.recommended_directions,
            "convergence": self.convergence.to_dict(),
            "statistics": self.statistics,
            "confidence": self.confidence,
            "agent_id": self.agent_id,
        }


# ---------------------------------------------------------------------------
# Run / agent records
# ---------------------------------------------------------------------------

@dataclass
class Run:
    """One end-to-end analysis session."""
    topic: str
    papers: List[PaperRecord] = field(default_factory=list)
    config: RunConfig = field(default_factory=RunConfig)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: RunStatus = RunStatus.QUEUED
    iteration: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_label: Optional[str] = None
    error_reason: Optional[str] = None
    meta_outputs: List[MetaOutput] = field(default_factory=list)

    @property
    def latest_meta(self) -> Optional[MetaOutput]:
        return self.meta_outputs[-1] if self.meta_outputs else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "topic": self.topic,
            "status": self.status.value,
            "iteration": self.iteration,
            "paper_count": len(self.papers),
            "config": self.config.to_dict(),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error_label": self.error_label,
            "error_reason": self.error_reason,
        }


@dataclass
class AgentRecord:
    """One unit of work within a run."""
    run_id: str
    tier: AgentTier
    name: str
    iteration: int
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: AgentStatus = AgentStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    execution_time_ms: Optional[int] = None
    confidence: Optional[float] = None
    job_id: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "tier": self.tier.value,
            "name": self.name,
            "iteration": self.iteration,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "execution_time_ms": self.execution_time_ms,
            "confidence": self.confidence,
            "job_id": self.job_id,
            "error_message": self.error_message,
            "metadata": self.metadata,
        }


@dataclass
class ResultRecord:
    """Append-only row holding one agent's output."""
    run_id: str
    agent_id: Optional[str]
    tier: AgentTier
    iteration: int
    content: Dict[str, Any]
    confidence: float
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "run_id": self.run_id,
            "agent_id": self.agent_id,
            "tier": self.tier.value,
            "iteration": self.iteration,
            "confidence": self.confidence,
            "content": self.content,
            "created_at": _iso(self.created_at),
        }


@dataclass
class LogEntry:
    run_id: str
    level: str
    message: str
    agent_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "agent_id": self.agent_id,
            "level": self.level,
            "message": self.message,
            "context": self.context,
            "created_at": _iso(self.created_at),
        }


@dataclass
class AgentResponse:
    """Outcome of one agent execution, returned as the job result."""
    agent_id: str
    tier: AgentTier
    output: Any
    confidence: float
    success: bool = True
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_time_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "tier": self.tier.value,
            "output": self.output.to_dict() if hasattr(self.output, "to_dict") else self.output,
            "confidence": self.confidence,
            "success": self.success,
            "error": self.error,
            "metadata": self.metadata,
            "execution_time_ms": self.execution_time_ms,
        }
