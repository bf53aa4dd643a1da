import json

import pytest

from deepresearch.errors import GenerationError
from deepresearch.evaluator import EvaluatorAgent, source_origin
from deepresearch.reporter import (
    ReporterAgent,
    format_methodology,
    render_sources,
    source_descriptions,
    with_canonical_sources,
)
from deepresearch.schemas import Evaluation, Fact, Plan, Summary
from deepresearch.summarizer import MAX_BODY_CHARS, SummarizerAgent
from deepresearch.token_tracker import TokenTracker
from tests.fakes import EVAL_CONFIDENT, PLAN_TWO_ASPECTS, REPORT_MD


URL = "https://github.com/acme/ci/issues/7"
PLAN = Plan(**PLAN_TWO_ASPECTS)


def _reply(text):
    prompts = []

    def generate(prompt, model=None):
        prompts.append(prompt)
        if isinstance(text, Exception):
            raise text
        return text

    generate.prompts = prompts
    return generate


# --- summarizer -------------------------------------------------------------


def test_summarizer_truncates_long_bodies():
    generate = _reply(json.dumps({"facts": ["one"], "confidence": 0.7}))
    agent = SummarizerAgent(generate)
    agent.summarize({"url": URL, "title": "Flaky", "body": "x" * (MAX_BODY_CHARS + 1)})
    prompt = generate.prompts[0]
    assert "x" * MAX_BODY_CHARS + "\n\n[TRUNCATED]" in prompt
    assert "x" * (MAX_BODY_CHARS + 1) not in prompt
    assert f"URL: {URL}" in prompt


def test_summarizer_falls_back_to_search_snippet():
    generate = _reply(json.dumps({"facts": ["one"]}))
    agent = SummarizerAgent(generate)
    summary = agent.summarize({"url": URL, "summary": "snippet text"})
    assert "snippet text" in generate.prompts[0]
    assert summary.confidence == 0.5
    assert summary.facts == ["one"]


def test_summarizer_records_tokens():
    tracker = TokenTracker(1000)
    agent = SummarizerAgent(_reply(json.dumps({"facts": ["one"], "confidence": 0.9})), tracker=tracker)
    agent.summarize({"url": URL, "body": "body"})
    assert tracker.usage["summarization"] > 0
    assert tracker.total == tracker.usage["summarization"]


@pytest.mark.parametrize(
    "raw",
    ["not json at all", "[1, 2, 3]", json.dumps({"facts": ["a"], "confidence": "very"})],
)
def test_summarizer_malformed_output_yields_empty_summary(raw):
    summary = SummarizerAgent(_reply(raw)).summarize({"url": URL, "body": "b"})
    assert summary == Summary.empty(URL)


def test_summarizer_non_list_facts_become_empty():
    summary = SummarizerAgent(_reply(json.dumps({"facts": "one fact", "confidence": 0.6}))).summarize(
        {"url": URL, "body": "b"}
    )
    assert summary.facts == []
    assert summary.confidence == 0.6


def test_summarizer_propagates_generation_errors():
    agent = SummarizerAgent(_reply(GenerationError("down", status_code=503)))
    with pytest.raises(GenerationError):
        agent.summarize({"url": URL, "body": "b"})


def test_summary_to_facts_drops_invalid_facts():
    agent = SummarizerAgent(_reply(""))
    facts = agent.summary_to_facts(Summary(source_url=URL, facts=["kept", "  "], confidence=0.7), "a1")
    assert [fact.text for fact in facts] == ["kept"]
    assert facts[0].source_urls == [URL]
    assert facts[0].aspect_id == "a1"
    assert agent.summary_to_facts(Summary(source_url=URL, facts=["x"], confidence=1.5)) == []
    assert agent.summary_to_facts(Summary(source_url="", facts=["x"], confidence=0.5)) == []


# --- evaluator --------------------------------------------------------------


def test_source_origin():
    assert source_origin("https://github.com/acme/ci/issues/7") == "acme/ci"
    assert source_origin("https://docs.example.com/page") == "docs.example.com"
    assert source_origin("") is None


def test_evaluator_prompt_clips_facts_and_counts_origins():
    facts = [Fact(text=f"{i} " + "z" * 250, source_urls=[URL], aspect_id="a1") for i in range(51)]
    sources = [
        "https://github.com/acme/ci/issues/1",
        "https://github.com/acme/ci/issues/2",
        "https://github.com/other/tool/pull/3",
    ]
    prompt = EvaluatorAgent(_reply("")).build_prompt("q?", PLAN, facts, sources)
    assert "- a1: Detection" in prompt
    assert "... and 1 more facts" in prompt
    assert "z" * 200 not in prompt
    assert prompt.count("...") >= 50
    assert "Unique sources: 3" in prompt
    assert "Distinct origins: 2" in prompt


def test_evaluator_parses_scores():
    tracker = TokenTracker(1000)
    evaluation = EvaluatorAgent(_reply(json.dumps(EVAL_CONFIDENT)), tracker=tracker).evaluate("q?", PLAN, [], [])
    assert evaluation.coverage_score == 0.9
    assert evaluation.notes == ["well covered"]
    assert tracker.usage["evaluation"] > 0


@pytest.mark.parametrize(
    "raw",
    [
        "garbage",
        json.dumps({**EVAL_CONFIDENT, "coverage_score": 1.5}),
        json.dumps({**EVAL_CONFIDENT, "confidence_score": "high"}),
    ],
)
def test_evaluator_falls_back_to_midpoint(raw):
    evaluation = EvaluatorAgent(_reply(raw)).evaluate("q?", PLAN, [], [])
    assert evaluation == Evaluation.midpoint()


# --- reporter ---------------------------------------------------------------


SOURCES = ["https://github.com/acme/ci/issues/1", "https://github.com/acme/ci/issues/2"]
FACTS = [
    Fact(text="Teams retry flaky jobs twice", source_urls=[SOURCES[0]], aspect_id="a2", confidence=0.8),
    Fact(text="Dashboards track flake rates", source_urls=[SOURCES[1]], aspect_id="a1", confidence=0.7),
]
METHODOLOGY = {
    "depth_reached": 1,
    "breadth": 2,
    "token_usage": {"planning": 10, "research": 20},
    "budget_status": "within",
}


def _sources_section(report):
    return report[report.index("## Sources"):]


def test_reporter_replaces_model_sources_with_canonical_list():
    tracker = TokenTracker(10_000)
    reporter = ReporterAgent(_reply(REPORT_MD), tracker=tracker)
    report = reporter.generate_report(
        "q?", PLAN, FACTS, SOURCES, methodology=METHODOLOGY, titles={SOURCES[0]: "Retry policy"}
    )
    assert "example.invalid" not in report
    assert report.count("## Sources") == 1
    section = _sources_section(report)
    assert f"S1: {SOURCES[0]} – Retry policy" in section
    assert f"S2: {SOURCES[1]} – Dashboards track flake rates" in section
    assert report.startswith("# Flaky CI")
    assert tracker.usage["report"] > 0


def test_reporter_appends_sources_when_missing():
    report = ReporterAgent(_reply("# Report\n\n## Executive Summary\nShort.")).generate_report(
        "q?", PLAN, FACTS, SOURCES
    )
    assert report.rstrip().endswith(f"S2: {SOURCES[1]} – Dashboards track flake rates")
    assert report.index("## Executive Summary") < report.index("## Sources")


@pytest.mark.parametrize("reply", [GenerationError("model offline"), "   "])
def test_reporter_fallback_has_every_section(reply):
    report = ReporterAgent(_reply(reply)).generate_report(
        "How do maintainers handle flaky CI?",
        PLAN,
        FACTS,
        SOURCES,
        gaps=["cost of retries"],
        methodology=METHODOLOGY,
    )
    headings = [
        "# Research Report: How do maintainers handle flaky CI?",
        "## Executive Summary",
        "## Key Findings",
        "## Detailed Analysis",
        "### Detection",
        "### Mitigation",
        "## Remaining Gaps",
        "## Methodology",
        "## Sources",
    ]
    positions = [report.index(heading) for heading in headings]
    assert positions == sorted(positions)
    assert "- cost of retries" in report
    assert "- Depth reached: 1" in report
    assert f"S1: {SOURCES[0]}" in report


def test_source_descriptions_prefer_title_then_fact_then_placeholder():
    long_fact = Fact(text="w" * 100, source_urls=["https://c"], confidence=0.5)
    described = source_descriptions(
        ["https://a", "https://b", "https://c", "https://d"],
        FACTS + [Fact(text="about b", source_urls=["https://b"]), long_fact],
        {"https://a": "Title A"},
    )
    assert described == {
        "https://a": "Title A",
        "https://b": "about b",
        "https://c": "w" * 80 + "...",
        "https://d": "conversation",
    }


def test_render_and_replace_sources_section():
    section = render_sources([], {})
    assert "No sources were collected." in section
    replaced = with_canonical_sources("# R\n\n## Sources\nold\n\n## Appendix\nkeep\n", render_sources(["https://a"], {}))
    assert "old" not in replaced
    assert "S1: https://a – conversation" in replaced
    assert "## Appendix\nkeep" in replaced


def test_format_methodology_lists_every_stage():
    text = format_methodology(METHODOLOGY)
    assert "planning=10, research=20, summarization=0, evaluation=0, report=0" in text
    assert "- Budget status: within" in text
    assert format_methodology({}).startswith("- Depth reached: N/A")


def test_evaluator_wraps_bare_string_gaps_and_notes():
    reply = json.dumps({**EVAL_CONFIDENT, "missing_aspects": "cost", "notes": "thin"})
    evaluation = EvaluatorAgent(_reply(reply)).evaluate("q?", PLAN, [], [])
    assert evaluation.missing_aspects == ["cost"]
    assert evaluation.notes == ["thin"]

    reply = json.dumps({**EVAL_CONFIDENT, "missing_aspects": ["cost", None, " "], "notes": None})
    evaluation = EvaluatorAgent(_reply(reply)).evaluate("q?", PLAN, [], [])
    assert evaluation.missing_aspects == ["cost"]
    assert evaluation.notes == []


@pytest.mark.parametrize("topics, expected", [("ci", ["ci"]), (7, ["7"]), (["ci", "tests"], ["ci", "tests"]), (None, [])])
def test_summarizer_normalizes_topics(topics, expected):
    calls = []

    def generate(prompt, model=None):
        calls.append(prompt)
        return json.dumps({"facts": ["one"], "topics": topics, "confidence": 0.6})

    summary = SummarizerAgent(generate).summarize({"url": URL, "body": "b"})
    assert summary.topics == expected
    assert summary.facts == ["one"]
    assert len(calls) == 1
