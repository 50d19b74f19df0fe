"""
Confidence calculation for RMRI agents.

Combines four signals into one normalized score:
- Provider confidence (what the text-generation service reported)
- Similarity agreement (between providers, clusters or iterations)
- Evidence count (number of supporting items, with diminishing returns)
- Output quality (a structural heuristic, see ``_output_quality``)

The output-quality component is an approximate proxy based on shape, length
and vocabulary. It does not measure whether the output is correct.
"""

import json
import logging
import math
import re
import statistics
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .errors import InvalidWeights

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = {
    "provider_confidence": 0.35,
    "similarity_agreement": 0.30,
    "evidence_count": 0.20,
    "output_quality": 0.15,
}

DEFAULT_THRESHOLDS = {
    "high": 0.75,
    "medium": 0.50,
    "low": 0.30,
}

WEIGHT_TOLERANCE = 0.01

AGGREGATION_METHODS = ("min", "max", "median", "weighted_average")

ACADEMIC_KEYWORDS = ("research", "study", "findings", "methodology", "analysis", "evidence")
EXPECTED_FIELDS = ("contributions", "research_gaps", "gaps", "patterns", "clusters", "ranked_gaps")


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return min(max(float(value), low), high)


@dataclass
class ConfidenceResult:
    final_confidence: float
    confidence_level: str
    breakdown: Dict[str, Dict[str, float]]
    is_reliable: bool
    needs_verification: bool
    calculated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_confidence": self.final_confidence,
            "confidence_level": self.confidence_level,
            "breakdown": self.breakdown,
            "is_reliable": self.is_reliable,
            "needs_verification": self.needs_verification,
            "calculated_at": self.calculated_at.isoformat(),
        }


@dataclass
class AggregateResult:
    final_confidence: float
    confidence_level: str
    method: str
    item_count: int
    range: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "final_confidence": self.final_confidence,
            "confidence_level": self.confidence_level,
            "method": self.method,
            "item_count": self.item_count,
            "range": self.range,
        }


class ConfidenceCalculator:
    """Turns heterogeneous raw signals into a single [0, 1] confidence."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        thresholds: Optional[Dict[str, float]] = None,
    ):
        self.weights = dict(DEFAULT_WEIGHTS)
        self.thresholds = dict(thresholds or DEFAULT_THRESHOLDS)
        if weights:
            self.set_weights(weights)

    def calculate_confidence(
        self,
        provider_confidence: float = 0.5,
        similarity_agreement: float = 0.5,
        evidence_count: float = 0,
        output: Any = None,
        max_evidence: float = 10,
    ) -> ConfidenceResult:
        """
        Calculate a normalized confidence score.

        Args:
            provider_confidence: Confidence reported by the text-generation service (0-1)
            similarity_agreement: Agreement between providers / clusters / iterations (0-1)
            evidence_count: Number of supporting items
            output: The produced output, used for the quality heuristic
            max_evidence: Evidence count at which the evidence component saturates

        Returns:
            ConfidenceResult with the final score, its level and a per-component breakdown
        """
        provider_score = _clamp(provider_confidence)
        agreement_score = self._agreement_score(similarity_agreement)
        evidence_score = self._evidence_score(evidence_count, max_evidence)
        quality_score = self._output_quality(output) if output is not None else 0.5

        components = {
            "provider_confidence": provider_score,
            "similarity_agreement": agreement_score,
            "evidence_count": evidence_score,
            "output_quality": quality_score,
        }

        breakdown = {}
        total = 0.0
        for name, score in components.items():
            contribution = score * self.weights[name]
            total += contribution
            breakdown[name] = {
                "score": score,
                "weight": self.weights[name],
                "contribution": contribution,
            }
        breakdown["evidence_count"]["raw_count"] = max(float(evidence_count), 0.0)

        final = _clamp(total)
        return ConfidenceResult(
            final_confidence=final,
            confidence_level=self.level(final),
            breakdown=breakdown,
            is_reliable=final >= self.thresholds["medium"],
            needs_verification=final < self.thresholds["medium"],
        )

    def calculate_ensemble_confidence(self, ensemble: Optional[Dict[str, Any]]) -> ConfidenceResult:
        """
        Confidence for an answer produced by several providers.

        ``ensemble`` carries ``providers`` (names of the providers that
        answered), their average ``confidence``, ``metrics.average_similarity``
        between their answers and the merged ``output``. Without providers the
        answer is treated as a weak single guess.
        """
        if not ensemble or not ensemble.get("providers"):
            return self.calculate_confidence(provider_confidence=0.3)

        metrics = ensemble.get("metrics") or {}
        return self.calculate_confidence(
            provider_confidence=ensemble.get("confidence") or 0.5,
            similarity_agreement=metrics.get("average_similarity") or 0.5,
            evidence_count=len(ensemble["providers"]),
            output=ensemble.get("output"),
            max_evidence=3,
        )

    # Tier helpers -------------------------------------------------------

    def calculate_micro_confidence(self, output: Any) -> ConfidenceResult:
        """Single paper: no cross-provider comparison, so agreement is fixed at 0.7."""
        return self.calculate_confidence(
            provider_confidence=output.provider_confidence,
            similarity_agreement=0.7,
            evidence_count=output.evidence_count,
            output=output.to_dict(),
            max_evidence=20,
        )

    def calculate_meso_confidence(self, output: Any) -> ConfidenceResult:
        evidence = len(output.clusters) + len(output.patterns) + len(output.thematic_gaps)
        return self.calculate_confidence(
            provider_confidence=output.provider_confidence,
            similarity_agreement=output.average_cohesion,
            evidence_count=evidence,
            output=output.to_dict(),
            max_evidence=15,
        )

    def calculate_meta_confidence(
        self, output: Any, provider_confidence: float = 0.5, has_previous: bool = False
    ) -> ConfidenceResult:
        evidence = (
            len(output.ranked_gaps)
            + len(output.cross_domain_patterns)
            + len(output.research_frontiers)
        )
        agreement = output.convergence.similarity if has_previous else 0.5
        return self.calculate_confidence(
            provider_confidence=provider_confidence,
            similarity_agreement=agreement,
            evidence_count=evidence,
            output=output.to_dict(),
            max_evidence=25,
        )

    # Aggregation ----------------------------------------------------------

    def aggregate(self, confidences: Sequence[float], method: str = "weighted_average") -> AggregateResult:
        """
        Aggregate many confidences into one.

        Methods: ``min`` (conservative), ``max`` (optimistic), ``median`` and
        ``weighted_average`` (sorted descending, weight 1/rank). Unknown
        methods fall back to ``weighted_average``.
        """
        values = [_clamp(c) for c in confidences or []]
        if method not in AGGREGATION_METHODS:
            logger.warning("Unknown aggregation method %r, using weighted_average", method)
            method = "weighted_average"

        if not values:
            return AggregateResult(0.0, "very_low", method, 0, {"min": 0.0, "max": 0.0, "spread": 0.0})

        if method == "min":
            score = min(values)
        elif method == "max":
            score = max(values)
        elif method == "median":
            score = statistics.median(values)
        else:
            ordered = sorted(values, reverse=True)
            weights = [1.0 / (rank + 1) for rank in range(len(ordered))]
            score = sum(v * w for v, w in zip(ordered, weights)) / sum(weights)

        score = _clamp(score)
        return AggregateResult(
            final_confidence=score,
            confidence_level=self.level(score),
            method=method,
            item_count=len(values),
            range={"min": min(values), "max": max(values), "spread": max(values) - min(values)},
        )

    # Configuration --------------------------------------------------------

    def set_weights(self, new_weights: Dict[str, float]) -> None:
        unknown = set(new_weights) - set(DEFAULT_WEIGHTS)
        if unknown:
            raise InvalidWeights(f"Unknown weight names: {', '.join(sorted(unknown))}")

        merged = {**self.weights, **new_weights}
        if any(w < 0 for w in merged.values()):
            raise InvalidWeights("Weights must be non-negative")
        total = sum(merged.values())
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise InvalidWeights(f"Weights must sum to 1.0 (got {total:.3f})")
        self.weights = merged

    def get_config(self) -> Dict[str, Dict[str, float]]:
        return {"weights": dict(self.weights), "thresholds": dict(self.thresholds)}

    def level(self, score: float) -> str:
        if score >= self.thresholds["high"]:
            return "high"
        if score >= self.thresholds["medium"]:
            return "medium"
        if score >= self.thresholds["low"]:
            return "low"
        return "very_low"

    # Components -----------------------------------------------------------

    @staticmethod
    def _agreement_score(similarity: float) -> float:
        normalized = _clamp(similarity)
        if normalized > 0.7:
            return normalized + (normalized - 0.7) * 0.5
        if normalized < 0.3:
            return normalized * 0.5
        return normalized

    @staticmethod
    def _evidence_score(count: float, max_expected: float) -> float:
        count = max(float(count), 0.0)
        max_expected = max(float(max_expected), 0.0)
        if count == 0:
            return 0.0
        if max_expected == 0:
            return 0.5
        return _clamp(math.log2(1 + count / max_expected))

    @staticmethod
    def _output_quality(output: Any) -> float:
        """Approximate quality from structure, length and vocabulary."""
        if hasattr(output, "to_dict"):
            output = output.to_dict()
        if not output:
            return 0.0

        is_text = isinstance(output, str)
        text = output if is_text else json.dumps(output, default=str)
        score = 0.5

        word_count = len(text.split())
        if 100 < word_count < 5000:
            score += 0.15
        elif word_count < 20:
            score -= 0.2

        if not is_text:
            score += 0.1
            if isinstance(output, dict) and any(output.get(f) for f in EXPECTED_FIELDS):
                score += 0.1
        else:
            if re.search(r"(^|\n)\s*[-*•]\s", text):
                score += 0.1
            if re.search(r"\[\d+\]|\(\d{4}\)", text):
                score += 0.05
            lowered = text.lower()
            matches = sum(1 for kw in ACADEMIC_KEYWORDS if kw in lowered)
            score += (matches / len(ACADEMIC_KEYWORDS)) * 0.1

        return _clamp(score)
