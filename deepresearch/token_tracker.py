import math
import threading
from typing import Any, Dict, Optional

from .errors import UnknownStageError


STAGES = ("planning", "research", "summarization", "evaluation", "report")
DEFAULT_TOKEN_BUDGET = 60_000
NEAR_LIMIT_RATIO = 0.9
CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str]) -> int:
    """Crude, deterministic estimate: ceil(len / 4). Not a real tokenizer."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class TokenTracker:
    """Per-stage token accounting against a fixed budget.

    Summarization records from several worker threads at once, so writes
    go through a lock; the derived queries only read.
    """

    def __init__(self, budget: int = DEFAULT_TOKEN_BUDGET):
        self.budget = int(budget)
        self.usage: Dict[str, int] = {stage: 0 for stage in STAGES}
        self._lock = threading.Lock()

    def record(self, stage: Any, tokens: int) -> None:
        name = str(getattr(stage, "value", stage))
        if name not in self.usage:
            raise UnknownStageError(f"Invalid stage: {name}")
        with self._lock:
            self.usage[name] += int(tokens)

    def record_text(self, stage: Any, *texts: Optional[str]) -> int:
        tokens = sum(estimate_tokens(text) for text in texts)
        self.record(stage, tokens)
        return tokens

    @property
    def total(self) -> int:
        return sum(self.usage.values())

    @property
    def remaining(self) -> int:
        return max(self.budget - self.total, 0)

    def is_exhausted(self) -> bool:
        return self.total >= self.budget

    def is_near_limit(self) -> bool:
        return self.total >= self.budget * NEAR_LIMIT_RATIO

    def would_exceed(self, predicted_tokens: int) -> bool:
        return self.total + predicted_tokens > self.budget

    def usage_ratio(self) -> float:
        if self.budget <= 0:
            return float("inf")
        return self.total / self.budget

    def usage_percentage(self) -> float:
        if self.budget <= 0:
            return 100.0
        return round(self.total / self.budget * 100, 2)

    def budget_status(self) -> str:
        if self.is_exhausted():
            return "exhausted"
        if self.is_near_limit():
            return "near_limit"
        return "within"

    def summary(self) -> Dict[str, Any]:
        return {
            "budget": self.budget,
            "total": self.total,
            "remaining": self.remaining,
            "usage_percentage": self.usage_percentage(),
            "breakdown": dict(self.usage),
        }
