"""Relevance ranking and lossy compaction of the accumulated fact set."""

import logging
import math
import re
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .schemas import Fact


FRESHNESS_DECAY_DAYS = 30
UNKNOWN_FRESHNESS = 0.5
KEYWORD_WEIGHT = 0.5
FRESHNESS_WEIGHT = 0.2
CONFIDENCE_WEIGHT = 0.3

COMPACTION_THRESHOLD = 8000
KEEP_PER_ASPECT = 3
ROLLUP_CLIP = 101
GENERAL_ASPECT = "general"

_WORD_RE = re.compile(r"\W+")


def _keywords(text: Optional[str]) -> List[str]:
    return [word for word in _WORD_RE.split((text or "").lower()) if len(word) >= 3]


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class RelevanceRanker:
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger("deepresearch.memory")

    def keyword_overlap(self, text: str, question: str) -> float:
        query_words = _keywords(question)
        if not query_words:
            return 0.0
        overlap = set(_keywords(text)) & set(query_words)
        return len(overlap) / len(query_words)

    def freshness(self, extracted_at: Optional[str], now: Optional[datetime] = None) -> float:
        if not extracted_at:
            return UNKNOWN_FRESHNESS
        try:
            extracted = _parse_timestamp(extracted_at)
        except (TypeError, ValueError):
            return UNKNOWN_FRESHNESS
        current = now or datetime.now(timezone.utc)
        days_old = (current - extracted).total_seconds() / 86400
        return math.exp(-days_old / FRESHNESS_DECAY_DAYS)

    def score(self, fact: Fact, question: str, now: Optional[datetime] = None) -> float:
        return (
            KEYWORD_WEIGHT * self.keyword_overlap(fact.text, question)
            + FRESHNESS_WEIGHT * self.freshness(fact.extracted_at, now)
            + CONFIDENCE_WEIGHT * fact.confidence
        )

    def rank(self, facts: List[Fact], question: str, top_k: int = 40) -> List[Fact]:
        if not facts:
            return []
        now = datetime.now(timezone.utc)
        scored = [(self.score(fact, question, now), fact) for fact in facts]
        # sorted() is stable, so ties keep their arrival order.
        scored = sorted(scored, key=lambda pair: pair[0], reverse=True)
        return [fact for _, fact in scored[:top_k]]


class Compaction:
    """Keeps the top facts per aspect and folds the rest into one rollup fact."""

    def __init__(self, threshold: int = COMPACTION_THRESHOLD, logger: Optional[logging.Logger] = None):
        self.threshold = threshold
        self.logger = logger or logging.getLogger("deepresearch.memory")

    def total_tokens(self, facts: List[Fact]) -> int:
        return sum(fact.token_count for fact in facts)

    def needs_compaction(self, facts: List[Fact]) -> bool:
        return self.total_tokens(facts) > self.threshold

    def rollup(self, aspect_id: str, dropped: List[Fact]) -> Fact:
        text = f"Summary of {len(dropped)} additional facts: " + "; ".join(
            fact.text[:ROLLUP_CLIP] for fact in dropped
        )
        urls: Dict[str, None] = {}
        for fact in dropped:
            for url in fact.source_urls:
                urls.setdefault(url, None)
        confidence = sum(fact.confidence for fact in dropped) / len(dropped)
        return Fact(text=text, source_urls=list(urls), aspect_id=aspect_id, confidence=confidence)

    def compact(self, facts: List[Fact]) -> List[Fact]:
        if not self.needs_compaction(facts):
            return facts
        self.logger.info("Compacting %s facts...", len(facts))
        groups: Dict[str, List[Fact]] = {}
        for fact in facts:
            groups.setdefault(fact.aspect_id or GENERAL_ASPECT, []).append(fact)

        compacted: List[Fact] = []
        for aspect_id, group in groups.items():
            if len(group) <= KEEP_PER_ASPECT:
                compacted.extend(group)
                continue
            ordered = sorted(group, key=lambda fact: fact.confidence, reverse=True)
            compacted.extend(ordered[:KEEP_PER_ASPECT])
            compacted.append(self.rollup(aspect_id, ordered[KEEP_PER_ASPECT:]))
        self.logger.info("Compacted to %s facts", len(compacted))
        return compacted
