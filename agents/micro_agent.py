import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from core.base_agent import AgentConfig, AgentTask, TierAgent
from core.errors import TransientProviderError
from core.text import fingerprint
from core.types import AgentTier, ContextWriteMode, MicroOutput, PaperRecord
from core.utils import Fallback, Parsed, parse_json_output

from .extraction import detect_structure, heuristic_extract, validate_extraction

logger = logging.getLogger(__name__)

HEURISTIC_PROVIDER_CONFIDENCE = 0.3


@dataclass
class MicroAgentConfig(AgentConfig):
    """Configuration specific to the Micro Agent."""
    name: str = "Micro Agent"
    description: str = "Extracts contributions, limitations and gaps from one paper"
    tier: AgentTier = AgentTier.MICRO
    max_text_chars: int = 6000
    fingerprint_chars: int = 2000


class MicroAgent(TierAgent):
    """
    Micro Agent: analyzes a single paper.

    Capabilities:
    - Section detection
    - Contribution, limitation and research-gap extraction
    - Methodology summary (approach, techniques, datasets, metrics)
    - A hashed fingerprint used by the Meso tier for similarity
    """

    context_mode = ContextWriteMode.APPEND

    def __init__(self, config: MicroAgentConfig, text_generator: Any, calculator: Any,
                 context_store: Any, repository: Any):
        super().__init__(config, text_generator, calculator, context_store, repository)
        self.max_text_chars = config.max_text_chars
        self.fingerprint_chars = config.fingerprint_chars

    def _default_system_prompt(self) -> str:
        return """You are a Micro Agent that analyzes ONE research paper at a time.

CRITICAL RULES:
1. Use ONLY the paper content given to you - do NOT add external knowledge
2. Quote or closely paraphrase the paper when describing findings
3. If the paper does not state something, leave it out

Output Format:
Return a JSON object with:
{
    "contributions": [
        {"type": "methodological|theoretical|empirical|tool_system",
         "description": "...", "confidence": 0.0-1.0, "evidence": "quote or section"}
    ],
    "limitations": [
        {"type": "stated|methodological|data|scope", "description": "...",
         "severity": "low|medium|high", "confidence": 0.0-1.0}
    ],
    "research_gaps": [
        {"type": "stated_future_work|methodological|...", "description": "...",
         "priority": "high|medium|low", "confidence": 0.0-1.0}
    ],
    "methodology": {
        "approach": "...", "techniques": ["..."], "datasets": ["..."], "metrics": ["..."]
    },
    "confidence": 0.0-1.0
}

Return ONLY the JSON object."""

    def _build_prompt(self, paper: PaperRecord, structure: Dict[str, bool]) -> str:
        sections = ", ".join(name for name, present in structure.items() if present) or "none detected"
        body = (paper.full_text or "")[: self.max_text_chars]
        return f"""Analyze this research paper.

Title: {paper.title}
Year: {paper.year or "unknown"}
Detected sections: {sections}

Abstract:
{paper.abstract or "Not available"}

=== PAPER TEXT (truncated) ===
{body or "Not available"}
=== END OF PAPER TEXT ===

Extract the paper's contributions, limitations, research gaps and methodology."""

    async def process(self, task: AgentTask, input_data: Dict[str, Any]) -> MicroOutput:
        paper: PaperRecord = input_data["paper"]
        structure = detect_structure(paper)

        extracted, mode = await self._extract(task, paper, structure)
        task.report_progress(50)

        text = " ".join([paper.title or "", paper.abstract or "", (paper.full_text or "")[: self.fingerprint_chars]])
        output = MicroOutput(
            paper_id=paper.paper_id,
            title=paper.title,
            year=paper.year,
            citations=paper.citations,
            contributions=extracted["contributions"],
            limitations=extracted["limitations"],
            research_gaps=extracted["research_gaps"],
            methodology=extracted["methodology"],
            structure=structure,
            fingerprint=fingerprint(text),
            extraction_mode=mode,
            provider_confidence=extracted.get("provider_confidence", HEURISTIC_PROVIDER_CONFIDENCE),
            iteration=task.iteration,
        )
        output.confidence = self.calculator.calculate_micro_confidence(output).final_confidence
        return output

    async def _extract(
        self, task: AgentTask, paper: PaperRecord, structure: Dict[str, bool]
    ) -> Tuple[Dict[str, Any], str]:
        def heuristic() -> Dict[str, Any]:
            return heuristic_extract(paper, structure)

        if self.text_generator is None:
            return heuristic(), "heuristic"

        try:
            response = await self._call_llm(self._build_prompt(paper, structure))
        except TransientProviderError as e:
            if not task.is_final_attempt:
                raise
            self._log(task, "warning", "Provider failed on final attempt, using heuristic extraction",
                      label=e.label, paper_id=paper.paper_id)
            return heuristic(), "heuristic"

        result = parse_json_output(response, validate=validate_extraction, default=heuristic)
        if isinstance(result, Parsed):
            return result.value, "llm"
        if isinstance(result, Fallback):
            self._log(task, "warning", "Unusable extraction output, using heuristic extraction",
                      reason=result.reason, paper_id=paper.paper_id)
        return result.value, "heuristic"

    def context_key(self, task: AgentTask, output: MicroOutput) -> str:
        return f"micro_output_{task.iteration}_{output.paper_id}"

    def context_payload(self, output: MicroOutput) -> Any:
        return [output.to_dict()]
