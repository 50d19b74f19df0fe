"""
Paper extraction helpers for the Micro tier.

``detect_structure`` and ``heuristic_extract`` are the keyword-based
fallback used when no text-generation output is usable; their results are
labelled ``heuristic`` and carry a low provider confidence.
``validate_extraction`` turns a model's JSON document into typed records.
"""

import re
from typing import Any, Dict, List, Optional, Sequence

from core.text import split_sentences
from core.types import (
    PRIORITIES,
    SEVERITIES,
    Contribution,
    ContributionType,
    Limitation,
    Methodology,
    PaperRecord,
    ResearchGap,
)

SECTION_PATTERNS = {
    "introduction": re.compile(r"\bintroduction\b", re.I),
    "methodology": re.compile(r"\b(methodology|methods|approach)\b", re.I),
    "results": re.compile(r"\b(results|findings|experiments)\b", re.I),
    "discussion": re.compile(r"\b(discussion|analysis)\b", re.I),
    "conclusion": re.compile(r"\b(conclusion|summary)\b", re.I),
    "related_work": re.compile(r"\b(related work|background|literature review)\b", re.I),
    "limitations": re.compile(r"\b(limitations?|constraints?|weakness(es)?|drawbacks?)\b", re.I),
    "future_work": re.compile(r"\bfuture (work|research|directions?)\b", re.I),
}

PROBLEM_KEYWORDS = ("problem", "challenge", "issue", "addresses", "tackles")
NOVELTY_KEYWORDS = ("novel", "new", "first", "propose", "introduce", "original")
APPROACH_KEYWORDS = ("method", "approach", "technique", "algorithm", "framework")
FINDINGS_KEYWORDS = ("result", "finding", "show", "demonstrate", "achieve")
CONTRIBUTION_KEYWORDS = ("contribute", "contribution", "propose", "introduce", "develop")

TECHNIQUES = (
    "neural network", "deep learning", "machine learning", "reinforcement learning",
    "transformer", "regression", "classification", "clustering",
    "optimization", "algorithm", "model",
)
METRICS = (
    "accuracy", "precision", "recall", "f1", "f1-score", "auc", "roc",
    "rmse", "mae", "mse", "performance", "efficiency", "effectiveness",
)
DATASET_RE = re.compile(r"\b([A-Z][A-Za-z0-9-]+)\s+dataset", re.I)

_CONTRIBUTION_TYPE_HINTS = (
    (ContributionType.TOOL_SYSTEM, ("tool", "system", "library", "platform", "toolkit", "software")),
    (ContributionType.THEORETICAL, ("theory", "theorem", "proof", "theoretical", "bound")),
    (ContributionType.EMPIRICAL, ("experiment", "empirical", "evaluate", "benchmark", "study", "show")),
)


def _contains_term(text: str, term: str) -> bool:
    return re.search(rf"\b{re.escape(term)}\b", text) is not None


def detect_structure(paper: PaperRecord) -> Dict[str, bool]:
    """Which common sections the paper's text mentions."""
    text = paper.full_text or paper.abstract or ""
    return {name: bool(pattern.search(text)) for name, pattern in SECTION_PATTERNS.items()}


def first_sentence_with(text: str, keywords: Sequence[str]) -> Optional[str]:
    for sentence in split_sentences(text):
        lowered = sentence.lower()
        if any(kw in lowered for kw in keywords):
            return sentence
    return None


def classify_contribution(description: str) -> str:
    lowered = description.lower()
    for contribution_type, hints in _CONTRIBUTION_TYPE_HINTS:
        if any(hint in lowered for hint in hints):
            return contribution_type.value
    return ContributionType.METHODOLOGICAL.value


def extract_techniques(text: str) -> List[str]:
    lowered = text.lower()
    return [t for t in TECHNIQUES if _contains_term(lowered, t)]


def extract_metrics(text: str) -> List[str]:
    lowered = text.lower()
    return [m for m in METRICS if _contains_term(lowered, m)]


def extract_datasets(text: str) -> List[str]:
    seen: List[str] = []
    for match in DATASET_RE.finditer(text or ""):
        name = match.group(1)
        if name.lower() not in ("the", "a", "this", "our", "new", "large", "small") and name not in seen:
            seen.append(name)
    return seen


def heuristic_extract(paper: PaperRecord, structure: Dict[str, bool]) -> Dict[str, Any]:
    """
    Keyword-based extraction from the abstract and full text.

    Returns the same shape as ``validate_extraction``.
    """
    abstract = paper.abstract or ""
    abstract_lower = abstract.lower()
    searchable = " ".join(filter(None, [abstract, paper.full_text[:5000] if paper.full_text else ""]))

    contributions: List[Contribution] = []
    novelty = first_sentence_with(abstract, NOVELTY_KEYWORDS)
    if novelty:
        contributions.append(Contribution(
            type=ContributionType.METHODOLOGICAL.value,
            description=novelty,
            confidence=0.6,
            evidence="novelty statement in abstract",
        ))
    for sentence in split_sentences(abstract):
        lowered = sentence.lower()
        if sentence != novelty and any(kw in lowered for kw in CONTRIBUTION_KEYWORDS):
            contributions.append(Contribution(
                type=classify_contribution(sentence),
                description=sentence,
                confidence=0.5,
                evidence="abstract",
            ))
    findings = first_sentence_with(abstract, FINDINGS_KEYWORDS)
    if findings and all(c.description != findings for c in contributions):
        contributions.append(Contribution(
            type=ContributionType.EMPIRICAL.value,
            description=findings,
            confidence=0.5,
            evidence="findings statement in abstract",
        ))

    limitations: List[Limitation] = []
    if structure.get("limitations"):
        limitations.append(Limitation(
            type="stated",
            description="Paper discusses its own limitations",
            severity="medium",
            confidence=0.6,
        ))
    if "validation" not in abstract_lower and "evaluate" not in abstract_lower:
        limitations.append(Limitation(
            type="methodological",
            description="Limited validation or evaluation mentioned",
            severity="medium",
            confidence=0.4,
        ))
    if "small dataset" in abstract_lower or "limited data" in abstract_lower:
        limitations.append(Limitation(
            type="data",
            description="Dataset size limitations mentioned",
            severity="high",
            confidence=0.6,
        ))

    gaps: List[ResearchGap] = []
    if structure.get("future_work"):
        gaps.append(ResearchGap(
            type="stated_future_work",
            description="Future research directions stated by the authors",
            priority="high",
            confidence=0.6,
            source="paper_explicit",
        ))
    if structure.get("limitations"):
        gaps.append(ResearchGap(
            type="limitation_derived",
            description="Addressing stated limitations represents research opportunity",
            priority="medium",
            confidence=0.5,
            source="inferred",
        ))
    if "comparison" not in abstract_lower and "baseline" not in abstract_lower:
        gaps.append(ResearchGap(
            type="methodological",
            description="Lack of comparative evaluation with baselines",
            priority="medium",
            confidence=0.4,
            source="inferred",
        ))

    methodology = Methodology(
        approach=first_sentence_with(abstract, APPROACH_KEYWORDS) or "Not specified",
        techniques=extract_techniques(searchable),
        datasets=extract_datasets(searchable),
        metrics=extract_metrics(searchable),
    )
    return {
        "contributions": contributions,
        "limitations": limitations,
        "research_gaps": gaps,
        "methodology": methodology,
        "problem": first_sentence_with(abstract, PROBLEM_KEYWORDS),
    }


def _items(document: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    items = document[key]
    if not isinstance(items, list):
        raise TypeError(f"{key} must be a list")
    return [item for item in items if isinstance(item, dict) and str(item.get("description") or "").strip()]


def _score(value: Any, default: float) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and 0.0 <= value <= 1.0:
        return float(value)
    return default


def validate_extraction(document: Any) -> Dict[str, Any]:
    """
    Convert a model document into typed Micro records.

    Raises KeyError/TypeError when a required list is missing or malformed.
    Unknown enum values are normalised rather than rejected.
    """
    if not isinstance(document, dict):
        raise TypeError("extraction must be a JSON object")

    contribution_types = {t.value for t in ContributionType}
    contributions = [
        Contribution(
            type=item.get("type") if item.get("type") in contribution_types else classify_contribution(item["description"]),
            description=str(item["description"]).strip(),
            confidence=_score(item.get("confidence"), 0.7),
            evidence=str(item.get("evidence") or ""),
        )
        for item in _items(document, "contributions")
    ]
    limitations = [
        Limitation(
            type=str(item.get("type") or "stated"),
            description=str(item["description"]).strip(),
            severity=item.get("severity") if item.get("severity") in SEVERITIES else "medium",
            confidence=_score(item.get("confidence"), 0.7),
        )
        for item in _items(document, "limitations")
    ]
    gaps = [
        ResearchGap(
            type=str(item.get("type") or "stated"),
            description=str(item["description"]).strip(),
            priority=item.get("priority") if item.get("priority") in PRIORITIES else "medium",
            confidence=_score(item.get("confidence"), 0.7),
            source=str(item.get("source") or "paper"),
        )
        for item in _items(document, "research_gaps")
    ]

    raw_method = document.get("methodology") or {}
    if not isinstance(raw_method, dict):
        raise TypeError("methodology must be an object")
    methodology = Methodology(
        approach=str(raw_method.get("approach") or "Not specified"),
        techniques=[str(t) for t in raw_method.get("techniques") or []],
        datasets=[str(d) for d in raw_method.get("datasets") or []],
        metrics=[str(m) for m in raw_method.get("metrics") or []],
    )
    return {
        "contributions": contributions,
        "limitations": limitations,
        "research_gaps": gaps,
        "methodology": methodology,
        "provider_confidence": _score(document.get("confidence"), 0.8),
    }
