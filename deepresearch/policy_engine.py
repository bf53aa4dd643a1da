import logging
from typing import Optional

from .schemas import PolicyAction


NEAR_BUDGET_RATIO = 0.8
REPLAN_GAP_THRESHOLD = 2


class PolicyEngine:
    """Ordered rule list over the latest evaluation and budget; first match wins.

    1. usage >= budget                              -> finalize_partial
    2. confidence >= stop_if_confidence             -> finalize_full
    3. usage >= 80% and coverage < min_coverage     -> finalize_partial
    4. >= 2 missing aspects and replans left        -> replan
    5. replans exhausted and coverage too low       -> finalize_partial
    6. replans exhausted and coverage acceptable    -> finalize_full
    7. coverage too low with budget to spare        -> continue
    8. otherwise                                    -> continue
    """

    def __init__(
        self,
        min_coverage: float = 0.75,
        stop_if_confidence: float = 0.85,
        replan_max: int = 2,
        logger: Optional[logging.Logger] = None,
    ):
        self.min_coverage = min_coverage
        self.stop_if_confidence = stop_if_confidence
        self.replan_max = replan_max
        self.logger = logger or logging.getLogger("deepresearch.policy")

    def decide(
        self,
        coverage_score: float = 0.0,
        confidence_score: float = 0.0,
        token_usage: int = 0,
        token_budget: int = 60_000,
        replans_used: int = 0,
        aspect_gap_count: int = 0,
    ) -> PolicyAction:
        coverage = coverage_score or 0.0
        confidence = confidence_score or 0.0
        usage_ratio = token_usage / token_budget if token_budget > 0 else float("inf")

        if usage_ratio >= 1.0:
            self.logger.info("Budget exhausted, finalizing partial")
            return PolicyAction.FINALIZE_PARTIAL

        if confidence >= self.stop_if_confidence:
            self.logger.info("High confidence reached (%.2f), finalizing full", confidence)
            return PolicyAction.FINALIZE_FULL

        if usage_ratio >= NEAR_BUDGET_RATIO and coverage < self.min_coverage:
            self.logger.info("Near budget limit with low coverage, finalizing partial")
            return PolicyAction.FINALIZE_PARTIAL

        if aspect_gap_count >= REPLAN_GAP_THRESHOLD and replans_used < self.replan_max:
            self.logger.info("Significant gaps (%s), requesting replan", aspect_gap_count)
            return PolicyAction.REPLAN

        if replans_used >= self.replan_max and coverage < self.min_coverage:
            self.logger.info("Max replans reached with low coverage, finalizing partial")
            return PolicyAction.FINALIZE_PARTIAL

        if replans_used >= self.replan_max and coverage >= self.min_coverage:
            self.logger.info("Max replans reached with acceptable coverage, finalizing full")
            return PolicyAction.FINALIZE_FULL

        if coverage < self.min_coverage and usage_ratio < NEAR_BUDGET_RATIO:
            self.logger.info(
                "Continuing research (coverage: %.2f, budget: %d%%)", coverage, round(usage_ratio * 100)
            )
            return PolicyAction.CONTINUE

        self.logger.info("Default continue action")
        return PolicyAction.CONTINUE
