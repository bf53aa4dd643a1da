import logging
import re
from typing import List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from .agents import EVALUATOR_PROMPT, fill_template
from .llm import Generate, coerce_str_list, parse_json_response
from .schemas import Evaluation, Fact, Plan
from .token_tracker import TokenTracker


MAX_FACTS_DISPLAY = 50
FACT_CLIP = 200

_GITHUB_REPO_RE = re.compile(r"github\.com/([^/]+/[^/?#]+)")


def source_origin(url: str) -> Optional[str]:
    """``owner/repo`` for GitHub URLs, the host otherwise."""
    match = _GITHUB_REPO_RE.search(url or "")
    if match:
        return match.group(1)
    host = urlparse(url or "").netloc
    return host or None


class EvaluatorAgent:
    def __init__(
        self,
        generate: Generate,
        tracker: Optional[TokenTracker] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.generate = generate
        self.tracker = tracker
        self.logger = logger or logging.getLogger("deepresearch.evaluator")

    def build_prompt(self, question: str, plan: Plan, facts: List[Fact], sources: List[str]) -> str:
        aspects_text = "\n".join(f"- {aspect.id}: {aspect.title}" for aspect in plan.aspects)
        lines = []
        for fact in facts[:MAX_FACTS_DISPLAY]:
            clipped = fact.text[:FACT_CLIP] + ("..." if len(fact.text) > FACT_CLIP else "")
            lines.append(f"- [{fact.aspect_id}] {clipped}")
        if len(facts) > MAX_FACTS_DISPLAY:
            lines.append(f"... and {len(facts) - MAX_FACTS_DISPLAY} more facts")
        origins = {origin for origin in (source_origin(url) for url in sources) if origin}
        return fill_template(
            EVALUATOR_PROMPT,
            question=question,
            aspects=aspects_text,
            facts="\n".join(lines) or "None yet",
            source_count=len(sources),
            repo_count=len(origins),
        )

    def evaluate(
        self,
        question: str,
        plan: Plan,
        facts: List[Fact],
        sources: List[str],
        model: Optional[str] = None,
    ) -> Evaluation:
        self.logger.info("Evaluating research progress...")
        prompt = self.build_prompt(question, plan, facts, sources)
        raw = self.generate(prompt, model)
        if self.tracker is not None:
            self.tracker.record_text("evaluation", prompt, raw)

        data = parse_json_response(raw)
        if not isinstance(data, dict):
            self.logger.error("Failed to parse evaluation JSON; using midpoint evaluation")
            return Evaluation.midpoint()
        try:
            evaluation = Evaluation(
                coverage_score=data.get("coverage_score") or 0.0,
                confidence_score=data.get("confidence_score") or 0.0,
                source_diversity=data.get("source_diversity") or 0.0,
                aspect_completion=data.get("aspect_completion") or 0.0,
                missing_aspects=coerce_str_list(data.get("missing_aspects")),
                notes=coerce_str_list(data.get("notes")),
            )
        except ValidationError as exc:
            self.logger.error("Invalid evaluation payload: %s", exc)
            return Evaluation.midpoint()
        if not evaluation.is_valid():
            self.logger.warning("Evaluation scores outside [0, 1]; using midpoint evaluation")
            return Evaluation.midpoint()
        self.logger.info(
            "Evaluation: coverage=%.2f, confidence=%.2f",
            evaluation.coverage_score,
            evaluation.confidence_score,
        )
        return evaluation
