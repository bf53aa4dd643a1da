import logging
from typing import Optional

from .agents import PLANNER_PROMPT, PREVIOUS_ERRORS_BLOCK, fill_template
from .errors import PlanningError
from .llm import Generate
from .plan_verifier import PlanVerifier
from .schemas import Plan
from .token_tracker import TokenTracker


MAX_PLAN_ATTEMPTS = 3


class Planner:
    """Generates a plan and re-prompts with the verifier's errors until it passes."""

    def __init__(
        self,
        generate: Generate,
        max_aspects: int = 8,
        breadth_limit: int = 5,
        max_attempts: int = MAX_PLAN_ATTEMPTS,
        tracker: Optional[TokenTracker] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.generate = generate
        self.max_aspects = max_aspects
        self.breadth_limit = breadth_limit
        self.max_attempts = max(int(max_attempts), 1)
        self.tracker = tracker
        self.logger = logger or logging.getLogger("deepresearch.planner")
        self.verifier = PlanVerifier(max_aspects=max_aspects, logger=self.logger)

    def build_prompt(self, question: str, prior_knowledge: str = "", previous_errors=None) -> str:
        prior = prior_knowledge.strip() or "None"
        if previous_errors:
            errors = "\n".join(f"- {err}" for err in previous_errors)
            prior += "\n\n" + fill_template(PREVIOUS_ERRORS_BLOCK, errors=errors)
        return fill_template(
            PLANNER_PROMPT,
            question=question,
            prior_knowledge=prior,
            max_aspects=self.max_aspects,
            breadth_limit=self.breadth_limit,
        )

    def generate_plan(self, question: str, prior_knowledge: str = "", model: Optional[str] = None) -> Plan:
        self.logger.info("Generating research plan...")
        last_errors = []
        for attempt in range(1, self.max_attempts + 1):
            self.logger.debug("Plan generation attempt %s/%s", attempt, self.max_attempts)
            prompt = self.build_prompt(question, prior_knowledge, last_errors)
            raw = self.generate(prompt, model)
            if self.tracker is not None:
                self.tracker.record_text("planning", prompt, raw)
            result = self.verifier.verify(raw)
            if result.valid and result.plan is not None:
                self.logger.info("Plan generated with %s aspects", len(result.plan.aspects))
                return result.plan
            self.logger.warning("Plan validation failed: %s", ", ".join(result.errors))
            last_errors = result.errors
        raise PlanningError(
            f"Failed to generate valid plan after {self.max_attempts} attempts. "
            f"Last errors: {', '.join(last_errors)}",
            errors=last_errors,
        )
