import math
from datetime import datetime, timedelta, timezone

import pytest

from deepresearch.memory import Compaction, RelevanceRanker
from deepresearch.schemas import Fact


def _fact(text, confidence=0.5, aspect_id="a1", urls=None, extracted_at=None):
    payload = {
        "text": text,
        "source_urls": urls or [f"https://example.com/{abs(hash(text))}"],
        "aspect_id": aspect_id,
        "confidence": confidence,
    }
    if extracted_at is not None:
        payload["extracted_at"] = extracted_at
    return Fact(**payload)


def test_keyword_overlap_ignores_short_words():
    ranker = RelevanceRanker()
    assert ranker.keyword_overlap("flaky tests on CI", "Are flaky tests bad?") == pytest.approx(2 / 4)
    assert ranker.keyword_overlap("anything", "a b c") == 0.0


def test_freshness_decays_and_defaults():
    ranker = RelevanceRanker()
    now = datetime(2024, 1, 31, tzinfo=timezone.utc)
    month_ago = (now - timedelta(days=30)).isoformat()
    assert ranker.freshness(month_ago, now) == pytest.approx(math.exp(-1))
    assert ranker.freshness("yesterday-ish", now) == 0.5
    assert ranker.freshness(None, now) == 0.5


def test_score_weights():
    ranker = RelevanceRanker()
    now = datetime.now(timezone.utc)
    fact = _fact("flaky tests", confidence=1.0, extracted_at=now.isoformat())
    assert ranker.score(fact, "flaky tests", now) == pytest.approx(0.5 + 0.2 + 0.3)


def test_rank_orders_by_score_and_truncates():
    ranker = RelevanceRanker()
    relevant = _fact("flaky tests retried in CI", confidence=0.9)
    unrelated = _fact("release notes formatting", confidence=0.9)
    weak = _fact("flaky tests", confidence=0.0)
    ranked = ranker.rank([unrelated, weak, relevant], "flaky tests in CI", top_k=2)
    assert ranked == [relevant, weak]
    assert ranker.rank([], "q") == []


def test_compaction_only_above_threshold():
    compactor = Compaction(threshold=100)
    small = [_fact("x" * 40) for _ in range(5)]
    assert not compactor.needs_compaction(small)
    assert compactor.compact(small) is small


def test_compaction_keeps_top_three_and_rolls_up_the_rest():
    compactor = Compaction(threshold=10)
    texts = [f"fact number {i} " + "y" * 120 for i in range(5)]
    group = [
        _fact(texts[i], confidence=c, urls=[f"https://s/{i % 2}"])
        for i, c in enumerate([0.1, 0.9, 0.5, 0.7, 0.3])
    ]
    small_group = [_fact("other aspect", aspect_id="a2")]
    unassigned = [_fact("no aspect " + "z" * 60, aspect_id=None)]

    compacted = compactor.compact(group + small_group + unassigned)

    a1 = [fact for fact in compacted if fact.aspect_id == "a1"]
    assert [fact.confidence for fact in a1[:3]] == [0.9, 0.7, 0.5]
    rollup = a1[3]
    assert rollup.text.startswith("Summary of 2 additional facts: ")
    assert rollup.text == "Summary of 2 additional facts: " + "; ".join(
        [texts[4][:101], texts[0][:101]]
    )
    assert rollup.source_urls == ["https://s/0"]
    assert rollup.confidence == pytest.approx(0.2)
    assert [fact.text for fact in compacted if fact.aspect_id == "a2"] == ["other aspect"]
    assert any(fact.aspect_id is None for fact in compacted)
    assert len(compacted) == 4 + 1 + 1


def test_default_compaction_threshold_is_8000_tokens():
    compactor = Compaction()
    assert not compactor.needs_compaction([_fact("x" * 32_000)])
    assert compactor.needs_compaction([_fact("x" * 32_004)])
