import itertools
import logging
import math
from collections import Counter, OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from core.base_agent import AgentConfig, AgentTask, TierAgent
from core.errors import InsufficientData, TransientProviderError
from core.text import cosine, jaccard, keywords, token_set
from core.types import (
    PRIORITIES,
    AgentTier,
    Cluster,
    GapGroup,
    MesoOutput,
    MicroOutput,
    Pattern,
    RunConfig,
    ThematicGap,
)
from core.utils import Parsed, parse_json_output

logger = logging.getLogger(__name__)

METHOD_TERMS = (
    "neural network", "deep learning", "machine learning",
    "transformer", "lstm", "cnn", "rnn",
    "reinforcement learning", "supervised", "unsupervised",
    "clustering", "classification", "regression",
)


def target_cluster_count(paper_count: int, min_clusters: int, max_clusters: int) -> int:
    """Cluster count for ``paper_count`` papers, bounded by the run config and the paper count."""
    if paper_count <= 5:
        suggested = 2
    elif paper_count <= 10:
        suggested = 3
    elif paper_count <= 20:
        suggested = 4
    elif paper_count <= 50:
        suggested = 6
    else:
        suggested = math.ceil(math.sqrt(paper_count))
    bounded = max(min_clusters, min(max_clusters, suggested))
    return max(1, min(paper_count, bounded))


def paper_keywords(output: MicroOutput) -> set:
    text = " ".join([output.title] + [c.description for c in output.contributions])
    return {t for t in token_set(text) if len(t) > 4}


def cohesion(members: Sequence[MicroOutput]) -> float:
    """Mean pairwise Jaccard of member keyword sets; 1.0 for a singleton."""
    if len(members) <= 1:
        return 1.0
    sets = [paper_keywords(m) for m in members]
    pairs = list(itertools.combinations(sets, 2))
    return sum(jaccard(a, b) for a, b in pairs) / len(pairs)


def agglomerate(outputs: Sequence[MicroOutput], k: int) -> List[List[int]]:
    """
    Average-linkage agglomerative clustering on fingerprints.

    Starts from singletons and repeatedly merges the most similar pair until
    ``k`` groups remain. Ties go to the lowest indices, so the result is
    deterministic for a given input order.
    """
    groups: List[List[int]] = [[i] for i in range(len(outputs))]
    vectors = [o.fingerprint for o in outputs]

    def linkage(a: List[int], b: List[int]) -> float:
        return sum(cosine(vectors[i], vectors[j]) for i in a for j in b) / (len(a) * len(b))

    while len(groups) > max(k, 1):
        best: Optional[tuple] = None
        for i, j in itertools.combinations(range(len(groups)), 2):
            score = linkage(groups[i], groups[j])
            if best is None or score > best[0]:
                best = (score, i, j)
        _, i, j = best
        groups[i] = sorted(groups[i] + groups[j])
        del groups[j]
    return groups


@dataclass
class MesoAgentConfig(AgentConfig):
    """Configuration specific to the Meso Agent."""
    name: str = "Meso Agent"
    description: str = "Clusters Micro outputs into themes and synthesizes each cluster"
    tier: AgentTier = AgentTier.MESO
    max_tokens: int = 2048


class MesoAgent(TierAgent):
    """
    Meso Agent: groups the iteration's papers into thematic clusters.

    Capabilities:
    - Cluster proposal from the text-generation service, validated
    - Deterministic fingerprint clustering when no proposal is usable
    - Per-cluster synthesis of contributions, gaps, methodologies and trends
    - Cross-cluster patterns and thematic gaps
    """

    def _default_system_prompt(self) -> str:
        return """You are a Meso Agent that groups research papers into thematic clusters.

CRITICAL RULES:
1. Every paper id must appear in exactly one cluster
2. Use ONLY the paper ids you are given
3. Give each cluster a short theme label derived from its papers

Output Format:
Return a JSON object with:
{
    "clusters": [
        {"label": "Theme label", "paper_ids": ["id1", "id2"]}
    ]
}

Return ONLY the JSON object."""

    def _build_prompt(self, outputs: Sequence[MicroOutput], k_min: int, k_max: int) -> str:
        lines = []
        for output in outputs:
            terms = ", ".join(sorted(paper_keywords(output))[:8])
            lines.append(f"- id: {output.paper_id} | title: {output.title} | keywords: {terms}")
        papers = "\n".join(lines)
        return f"""Group these {len(outputs)} papers into between {k_min} and {k_max} thematic clusters.

=== PAPERS ===
{papers}
=== END OF PAPERS ==="""

    async def process(self, task: AgentTask, input_data: Dict[str, Any]) -> MesoOutput:
        outputs: List[MicroOutput] = list(input_data["micro_outputs"])
        config: RunConfig = input_data.get("config") or RunConfig()
        if not outputs:
            raise InsufficientData("No Micro outputs to cluster", reason="no completed micro agents")

        k = target_cluster_count(len(outputs), config.min_cluster_size, config.max_clusters)
        k_min = min(config.min_cluster_size, len(outputs))
        k_max = max(k_min, min(config.max_clusters, len(outputs)))

        groups = None
        labels: List[Optional[str]] = []
        mode = "fallback"
        if self.text_generator is not None and len(outputs) > 1:
            proposal = await self._propose(task, outputs, k_min, k_max)
            if proposal is not None:
                groups, labels = proposal
                mode = "llm"
        if groups is None:
            groups = agglomerate(outputs, k)
            labels = [None] * len(groups)
        task.report_progress(40)

        clusters = [
            self._summarize_cluster(cluster_id, [outputs[i] for i in members], label)
            for cluster_id, (members, label) in enumerate(zip(groups, labels))
        ]
        patterns = self._cross_cluster_patterns(clusters)
        thematic_gaps = self._thematic_gaps(clusters)

        provider_confidence = self.calculator.aggregate(
            [o.confidence for o in outputs], "weighted_average"
        ).final_confidence
        output = MesoOutput(
            iteration=task.iteration,
            clusters=clusters,
            patterns=patterns,
            thematic_gaps=thematic_gaps,
            clustering_mode=mode,
            total_papers=len(outputs),
            provider_confidence=provider_confidence,
        )
        output.confidence = self.calculator.calculate_meso_confidence(output).final_confidence
        return output

    # Clustering -------------------------------------------------------------

    async def _propose(self, task: AgentTask, outputs: Sequence[MicroOutput], k_min: int, k_max: int):
        try:
            response = await self._call_llm(self._build_prompt(outputs, k_min, k_max))
        except TransientProviderError as e:
            if not task.is_final_attempt:
                raise
            self._log(task, "warning", "Provider failed on final attempt, using fallback clustering", label=e.label)
            return None

        result = parse_json_output(response, validate=lambda doc: self._validate_proposal(doc, outputs, k_min, k_max))
        if isinstance(result, Parsed):
            return result.value
        self._log(task, "warning", "Unusable cluster proposal, using fallback clustering", reason=result.reason)
        return None

    def _validate_proposal(self, document: Any, outputs: Sequence[MicroOutput], k_min: int, k_max: int):
        """
        Normalise a proposed clustering so every paper is assigned exactly once.

        Unknown ids and repeats are dropped, unassigned papers join the group
        whose fingerprint they are closest to, and surplus groups are merged
        into their nearest neighbour. Raises ValueError if fewer than
        ``k_min`` groups remain.
        """
        raw_clusters = document["clusters"]
        if not isinstance(raw_clusters, list):
            raise TypeError("clusters must be a list")

        index = {o.paper_id: i for i, o in enumerate(outputs)}
        assigned = set()
        groups: List[List[int]] = []
        labels: List[Optional[str]] = []
        for raw in raw_clusters:
            members = []
            for paper_id in raw.get("paper_ids") or []:
                i = index.get(str(paper_id))
                if i is not None and i not in assigned:
                    assigned.add(i)
                    members.append(i)
            if members:
                groups.append(members)
                label = raw.get("label")
                labels.append(str(label).strip() if isinstance(label, str) and label.strip() else None)

        if not groups:
            raise ValueError("proposal assigns no known papers")

        vectors = [o.fingerprint for o in outputs]

        def closeness(i: int, group: List[int]) -> float:
            return sum(cosine(vectors[i], vectors[j]) for j in group) / len(group)

        for i in range(len(outputs)):
            if i not in assigned:
                best = max(range(len(groups)), key=lambda g: closeness(i, groups[g]))
                groups[best].append(i)

        while len(groups) > k_max:
            smallest = min(range(len(groups)), key=lambda g: len(groups[g]))
            members = groups.pop(smallest)
            labels.pop(smallest)
            target = max(
                range(len(groups)),
                key=lambda g: sum(closeness(i, groups[g]) for i in members),
            )
            groups[target].extend(members)

        if len(groups) < k_min:
            raise ValueError(f"proposal has {len(groups)} clusters, need at least {k_min}")
        return [sorted(g) for g in groups], labels

    # Synthesis --------------------------------------------------------------

    def _summarize_cluster(self, cluster_id: int, members: List[MicroOutput], label: Optional[str]) -> Cluster:
        texts = [m.title for m in members] + [c.description for m in members for c in m.contributions]
        cluster_keywords = keywords(texts, limit=10)
        label = label or ", ".join(cluster_keywords[:5]) or f"Cluster {cluster_id + 1}"

        years = [m.year for m in members if m.year]
        return Cluster(
            cluster_id=cluster_id,
            label=label,
            keywords=cluster_keywords,
            paper_ids=[m.paper_id for m in members],
            cohesion=round(cohesion(members), 4),
            key_contributions=self._synthesize_contributions(members),
            identified_gaps=self._synthesize_gaps(members),
            common_methodologies=self._common_methodologies(members),
            trends=self._trends(members),
            year_range={"min": min(years), "max": max(years)} if years else None,
        )

    @staticmethod
    def _synthesize_contributions(members: List[MicroOutput]) -> List[Dict[str, Any]]:
        grouped: "OrderedDict[str, list]" = OrderedDict()
        for member in members:
            for contribution in member.contributions:
                grouped.setdefault(contribution.type, []).append(contribution)
        return [
            {
                "type": contribution_type,
                "count": len(items),
                "summary": f"{len(items)} contributions in {contribution_type}",
                "examples": [c.description for c in items[:3]],
                "avg_confidence": sum(c.confidence for c in items) / len(items),
            }
            for contribution_type, items in grouped.items()
        ]

    @staticmethod
    def _synthesize_gaps(members: List[MicroOutput]) -> List[GapGroup]:
        gaps = [g for m in members for g in m.research_gaps]
        groups = []
        for priority in PRIORITIES:
            descriptions = [g.description for g in gaps if g.priority == priority]
            if descriptions:
                unique = list(OrderedDict.fromkeys(descriptions))
                groups.append(GapGroup(priority=priority, count=len(descriptions), gaps=unique[:5]))
        return groups

    @staticmethod
    def _common_methodologies(members: List[MicroOutput]) -> List[Dict[str, Any]]:
        counts: Counter = Counter()
        for member in members:
            found = set(member.methodology.techniques)
            text = " ".join(c.description for c in member.contributions).lower()
            found.update(term for term in METHOD_TERMS if term in text)
            counts.update(found)
        return [
            {"method": method, "frequency": count, "percentage": count / len(members) * 100}
            for method, count in counts.most_common(5)
        ]

    @staticmethod
    def _trends(members: List[MicroOutput]) -> List[Dict[str, Any]]:
        trends = []
        years = sorted(m.year for m in members if m.year)
        if len(years) >= 3:
            mid = len(years) // 2
            if max(years[mid:]) > max(years[:mid]):
                trends.append({
                    "type": "increasing_activity",
                    "description": "Growing research interest in recent years",
                    "confidence": 0.7,
                })
        recent = [m for m in members if (m.year or 0) >= 2020]
        if recent and sum(m.citations for m in recent) / len(recent) > 10:
            trends.append({
                "type": "high_impact",
                "description": "Recent papers showing high citation impact",
                "confidence": 0.8,
            })
        return trends

    @staticmethod
    def _cross_cluster_patterns(clusters: List[Cluster]) -> List[Pattern]:
        patterns = []
        methods = list(OrderedDict.fromkeys(
            m["method"] for cluster in clusters for m in cluster.common_methodologies
        ))
        if methods:
            patterns.append(Pattern(
                type="methodology_overlap",
                description=f"Common methodologies across clusters: {', '.join(methods[:5])}",
                confidence=0.75,
                details={"methods": methods[:5]},
            ))

        ranges = [c.year_range for c in clusters if c.year_range]
        if ranges:
            first = min(r["min"] for r in ranges)
            last = max(r["max"] for r in ranges)
            if last - first > 5:
                patterns.append(Pattern(
                    type="temporal_evolution",
                    description=f"Research spanning {last - first} years ({first}-{last})",
                    confidence=0.8,
                    details={"year_range": {"min": first, "max": last}},
                ))
        return patterns

    @staticmethod
    def _thematic_gaps(clusters: List[Cluster]) -> List[ThematicGap]:
        gaps = []
        for cluster in clusters:
            total = sum(group.count for group in cluster.identified_gaps)
            if total > cluster.size:
                gaps.append(ThematicGap(
                    theme=cluster.label,
                    description=f"High concentration of research gaps in {cluster.label}",
                    priority="high",
                    confidence=0.8,
                    gap_count=total,
                ))
        for first, second in itertools.combinations(clusters, 2):
            gaps.append(ThematicGap(
                theme=f"{first.label} ∩ {second.label}",
                description=f"Potential for cross-domain research between {first.label} and {second.label}",
                priority="medium",
                confidence=0.6,
            ))
        return gaps

    def context_key(self, task: AgentTask, output: MesoOutput) -> str:
        return f"meso_output_{task.iteration}"
