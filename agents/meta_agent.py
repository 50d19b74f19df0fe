"""
Meta tier: gap ranking, cross-domain synthesis and the convergence test.

The Meta agent is deterministic. It scores every candidate gap from the
Meso output with four keyword heuristics:

    importance   priority, cluster size and cluster cohesion
    novelty      novelty vocabulary, cross-theme intersections
    feasibility  availability cues minus complexity cues, kept in [0.2, 1]
    impact       impact vocabulary, thematic (cross-cluster) origin

and ranks them by ``0.35 I + 0.25 N + 0.20 F + 0.20 S``.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Set

from core.base_agent import AgentConfig, AgentTask, TierAgent
from core.errors import ConvergenceUndefined
from core.text import jaccard, token_set
from core.types import (
    AgentTier,
    ConvergenceResult,
    GapScores,
    MesoOutput,
    MetaOutput,
    Pattern,
    RankedGap,
    RunConfig,
)

logger = logging.getLogger(__name__)

SCORE_WEIGHTS = {"importance": 0.35, "novelty": 0.25, "feasibility": 0.20, "impact": 0.20}

NOVELTY_KEYWORDS = ("unexplored", "novel", "new", "emerging", "frontier", "innovative", "untapped")
COMPLEXITY_KEYWORDS = ("fundamental", "theoretical", "long-term", "require significant", "major breakthrough")
IMPACT_KEYWORDS = (
    "significant", "important", "critical", "essential",
    "breakthrough", "transformative", "game-changing",
)
MAX_DIRECTIONS = 10


@dataclass
class CandidateGap:
    gap: str
    priority: str
    theme: str
    source: str
    cluster_size: int = 0
    cluster_cohesion: float = 0.0
    confidence: float = 0.7


def collect_candidates(meso: MesoOutput) -> List[CandidateGap]:
    """Candidate gaps in extraction order: cluster gaps first, then thematic gaps."""
    candidates = []
    for cluster in meso.clusters:
        for group in cluster.identified_gaps:
            for description in group.gaps:
                candidates.append(CandidateGap(
                    gap=description,
                    priority=group.priority,
                    theme=cluster.label,
                    source="meso_cluster",
                    cluster_size=cluster.size,
                    cluster_cohesion=cluster.cohesion,
                ))
    for thematic in meso.thematic_gaps:
        candidates.append(CandidateGap(
            gap=thematic.description,
            priority=thematic.priority,
            theme=thematic.theme,
            source="thematic_analysis",
            confidence=thematic.confidence,
        ))
    return candidates


def importance_score(candidate: CandidateGap) -> float:
    score = 0.5
    if candidate.priority == "high":
        score += 0.3
    elif candidate.priority == "medium":
        score += 0.15
    if candidate.cluster_size:
        score += min(0.2, candidate.cluster_size * 0.02)
    if candidate.cluster_cohesion:
        score += candidate.cluster_cohesion * 0.2
    return min(score, 1.0)


def novelty_score(candidate: CandidateGap) -> float:
    text = f"{candidate.gap} {candidate.theme}".lower()
    score = 0.5 + 0.1 * sum(1 for kw in NOVELTY_KEYWORDS if kw in text)
    if "∩" in text or "intersection" in text:
        score += 0.2
    return min(score, 1.0)


def feasibility_score(candidate: CandidateGap) -> float:
    text = candidate.gap.lower()
    score = 0.6
    if "data available" in text or "existing" in text:
        score += 0.2
    score -= 0.1 * sum(1 for kw in COMPLEXITY_KEYWORDS if kw in text)
    return max(0.2, min(score, 1.0))


def impact_score(candidate: CandidateGap) -> float:
    text = candidate.gap.lower()
    score = 0.5 + 0.1 * sum(1 for kw in IMPACT_KEYWORDS if kw in text)
    if candidate.source == "thematic_analysis":
        score += 0.15
    return min(score, 1.0)


def rank_gaps(candidates: Sequence[CandidateGap], limit: Optional[int] = None) -> List[RankedGap]:
    """Score and rank candidates; equal totals keep extraction order."""
    scored = []
    for candidate in candidates:
        scores = GapScores(
            importance=importance_score(candidate),
            novelty=novelty_score(candidate),
            feasibility=feasibility_score(candidate),
            impact=impact_score(candidate),
        )
        total = sum(getattr(scores, name) * weight for name, weight in SCORE_WEIGHTS.items())
        scored.append(RankedGap(
            gap=candidate.gap,
            theme=candidate.theme,
            priority=candidate.priority,
            scores=scores,
            total_score=round(min(max(total, 0.0), 1.0), 6),
            source=candidate.source,
            confidence=candidate.confidence,
        ))

    ranked = sorted(scored, key=lambda g: g.total_score, reverse=True)
    for rank, gap in enumerate(ranked, start=1):
        gap.rank = rank
    return ranked[:limit] if limit is not None else ranked


def gap_token_set(gaps: Sequence[Any], top_k: int) -> Set[str]:
    tokens: Set[str] = set()
    for gap in list(gaps)[:top_k]:
        text = gap.gap if hasattr(gap, "gap") else gap.get("gap", "")
        tokens |= token_set(text)
    return tokens


def convergence_similarity(current: Sequence[Any], previous: Optional[Sequence[Any]], top_k: int = 10) -> float:
    """
    Jaccard similarity of the pooled top-``top_k`` gap vocabularies.

    Raises ConvergenceUndefined when there is no previous iteration.
    """
    if previous is None:
        raise ConvergenceUndefined("No previous iteration to compare against")
    return jaccard(gap_token_set(current, top_k), gap_token_set(previous, top_k))


def check_convergence(
    current: Sequence[Any],
    previous: Optional[Sequence[Any]],
    threshold: float = 0.70,
    top_k: int = 10,
) -> ConvergenceResult:
    try:
        similarity = convergence_similarity(current, previous, top_k)
    except ConvergenceUndefined:
        return ConvergenceResult(False, 0.0, "No previous iteration", threshold)

    converged = similarity >= threshold
    if converged:
        reason = f"Top gaps stabilized ({similarity * 100:.1f}% similarity)"
    else:
        reason = f"Still evolving ({similarity * 100:.1f}% similarity, threshold {threshold * 100:.0f}%)"
    return ConvergenceResult(converged, similarity, reason, threshold)


@dataclass
class MetaAgentConfig(AgentConfig):
    """Configuration specific to the Meta Agent."""
    name: str = "Meta Agent"
    description: str = "Ranks research gaps across themes and tests convergence"
    tier: AgentTier = AgentTier.META


class MetaAgent(TierAgent):
    """
    Meta Agent: synthesizes one iteration's Meso output.

    Capabilities:
    - Gap ranking by importance, novelty, feasibility and impact
    - Cross-domain patterns and research frontiers
    - Recommended research directions
    - Convergence test against the previous iteration
    """

    def _default_system_prompt(self) -> str:
        return "You are a Meta Agent that ranks research gaps across thematic clusters."

    async def process(self, task: AgentTask, input_data: Dict[str, Any]) -> MetaOutput:
        meso: MesoOutput = input_data["meso_output"]
        previous: Optional[MetaOutput] = input_data.get("previous_meta")
        config: RunConfig = input_data.get("config") or RunConfig()

        candidates = collect_candidates(meso)
        ranked = rank_gaps(candidates, limit=config.gap_ranking_limit)
        task.report_progress(40)

        patterns = self._cross_domain_patterns(meso)
        frontiers = self._research_frontiers(meso, patterns)
        directions = self._research_directions(ranked, frontiers)
        convergence = check_convergence(
            ranked,
            previous.ranked_gaps if previous is not None else None,
            threshold=config.convergence_threshold,
            top_k=config.convergence_top_k,
        )

        output = MetaOutput(
            iteration=task.iteration,
            ranked_gaps=ranked,
            cross_domain_patterns=patterns,
            research_frontiers=frontiers,
            recommended_directions=directions,
            convergence=convergence,
            statistics={
                "total_clusters": len(meso.clusters),
                "total_papers": meso.total_papers,
                "total_gaps_identified": len(candidates),
                "ranked_gaps": len(ranked),
                "unique_themes": len({c.label for c in meso.clusters}),
            },
        )
        output.confidence = self.calculator.calculate_meta_confidence(
            output,
            provider_confidence=meso.confidence,
            has_previous=previous is not None,
        ).final_confidence
        self._log(
            task, "info", "Convergence checked",
            converged=convergence.converged, similarity=round(convergence.similarity, 4),
        )
        return output

    @staticmethod
    def _cross_domain_patterns(meso: MesoOutput) -> List[Pattern]:
        patterns = []

        keyword_counts = Counter(k for cluster in meso.clusters for k in set(cluster.keywords))
        for keyword, frequency in keyword_counts.most_common():
            if frequency < 2:
                break
            patterns.append(Pattern(
                type="recurring_theme",
                description=f"Theme appears across {frequency} clusters",
                confidence=min(0.9, 0.5 + frequency * 0.1),
                details={"theme": keyword, "frequency": frequency},
            ))

        method_counts = Counter(
            m["method"] for cluster in meso.clusters for m in cluster.common_methodologies
        )
        for method, frequency in method_counts.most_common(5):
            if frequency < 2:
                break
            patterns.append(Pattern(
                type="cross_domain_methodology",
                description="Methodology used across multiple themes",
                confidence=0.8,
                details={"methodology": method, "frequency": frequency},
            ))

        ranges = [c.year_range for c in meso.clusters if c.year_range]
        if ranges:
            first = min(r["min"] for r in ranges)
            last = max(r["max"] for r in ranges)
            if last - first > 3:
                patterns.append(Pattern(
                    type="temporal_evolution",
                    description=f"Research evolution spanning {last - first} years",
                    confidence=0.85,
                    details={"year_range": {"min": first, "max": last}},
                ))
        return patterns

    @staticmethod
    def _research_frontiers(meso: MesoOutput, patterns: List[Pattern]) -> List[Dict[str, Any]]:
        frontiers = []
        trending = [
            {"theme": c.label, "trends": c.trends, "papers": c.size}
            for c in meso.clusters if c.trends
        ]
        if trending:
            frontiers.append({
                "type": "trending_research",
                "themes": trending[:5],
                "description": "Rapidly evolving research areas with increasing activity",
                "confidence": 0.8,
            })

        recurring = [p.to_dict() for p in patterns if p.type == "recurring_theme"][:3]
        if recurring:
            frontiers.append({
                "type": "cross_domain_synthesis",
                "patterns": recurring,
                "description": "Opportunities for interdisciplinary research",
                "confidence": 0.75,
            })

        methods = [p.to_dict() for p in patterns if p.type == "cross_domain_methodology"][:3]
        if methods:
            frontiers.append({
                "type": "methodological_innovation",
                "methodologies": methods,
                "description": "New methodological approaches gaining traction",
                "confidence": 0.7,
            })
        return frontiers

    @staticmethod
    def _research_directions(ranked: List[RankedGap], frontiers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        directions = [
            {
                "priority": index + 1,
                "direction": gap.gap,
                "theme": gap.theme,
                "rationale": f"High-impact gap with score {gap.total_score:.2f}",
                "expected_impact": gap.scores.impact,
                "feasibility": gap.scores.feasibility,
                "novelty": gap.scores.novelty,
                "confidence": gap.confidence,
            }
            for index, gap in enumerate(ranked[:5])
        ]
        for frontier in frontiers:
            if frontier["type"] == "cross_domain_synthesis":
                themes = " and ".join(p["theme"] for p in frontier["patterns"])
                directions.append({
                    "priority": len(directions) + 1,
                    "direction": f"Explore intersections between {themes}",
                    "theme": "cross-domain",
                    "rationale": "Cross-domain synthesis opportunity",
                    "expected_impact": 0.8,
                    "feasibility": 0.6,
                    "novelty": 0.85,
                    "confidence": frontier["confidence"],
                })
        return directions[:MAX_DIRECTIONS]

    def context_key(self, task: AgentTask, output: MetaOutput) -> str:
        return f"meta_output_{task.iteration}"
