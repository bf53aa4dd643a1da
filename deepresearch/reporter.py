import logging
import re
from typing import Any, Dict, List, Mapping, Optional

from .agents import REPORTER_PROMPT, fill_template
from .errors import GenerationError
from .llm import Generate
from .schemas import Fact, Plan
from .token_tracker import STAGES, TokenTracker


KEY_FINDINGS_LIMIT = 10
DESCRIPTION_CLIP = 80

_SOURCES_SECTION_RE = re.compile(r"^##\s+Sources\b.*?(?=^##\s|\Z)", re.MULTILINE | re.DOTALL)


def format_methodology(methodology: Mapping[str, Any]) -> str:
    lines = [
        f"- Depth reached: {methodology.get('depth_reached', 'N/A')}",
        f"- Breadth: {methodology.get('breadth', 'N/A')} aspects",
    ]
    usage = methodology.get("token_usage")
    if usage:
        parts = ", ".join(f"{stage}={usage.get(stage, 0)}" for stage in STAGES)
        lines.append(f"- Token usage: {parts}")
    lines.append(f"- Budget status: {methodology.get('budget_status', 'N/A')}")
    return "\n".join(lines)


def source_descriptions(sources: List[str], facts: List[Fact], titles: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    titles = titles or {}
    described: Dict[str, str] = {}
    for url in sources:
        title = (titles.get(url) or "").strip()
        if not title:
            first = next((fact.text for fact in facts if url in fact.source_urls), "")
            title = first[:DESCRIPTION_CLIP] + ("..." if len(first) > DESCRIPTION_CLIP else "")
        described[url] = title or "conversation"
    return described


def render_sources(sources: List[str], descriptions: Mapping[str, str]) -> str:
    lines = ["## Sources", ""]
    if not sources:
        lines.append("No sources were collected.")
    for idx, url in enumerate(sources, start=1):
        lines.append(f"S{idx}: {url} – {descriptions.get(url, 'conversation')}")
    return "\n".join(lines) + "\n"


def with_canonical_sources(report: str, sources_section: str) -> str:
    """Replace the report's Sources section with ``sources_section``, or append it."""
    if _SOURCES_SECTION_RE.search(report):
        return _SOURCES_SECTION_RE.sub(lambda _: sources_section + "\n", report, count=1).rstrip() + "\n"
    return report.rstrip() + "\n\n" + sources_section


class ReporterAgent:
    def __init__(
        self,
        generate: Generate,
        tracker: Optional[TokenTracker] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.generate = generate
        self.tracker = tracker
        self.logger = logger or logging.getLogger("deepresearch.reporter")

    def build_prompt(
        self,
        question: str,
        plan: Plan,
        facts: List[Fact],
        sources: List[str],
        gaps: List[str],
        methodology: Mapping[str, Any],
    ) -> str:
        blocks = []
        for aspect in plan.aspects:
            block = [f"### {aspect.title} ({aspect.id})"]
            block.extend(f"- {fact.text}" for fact in facts if fact.aspect_id == aspect.id)
            blocks.append("\n".join(block))
        return fill_template(
            REPORTER_PROMPT,
            question=question,
            facts="\n\n".join(blocks),
            sources="\n".join(f"S{idx}: {url}" for idx, url in enumerate(sources, start=1)),
            success_criteria="\n".join(f"- {item}" for item in plan.success_criteria) or "None",
            gaps="\n".join(f"- {gap}" for gap in gaps) or "None identified",
            methodology=format_methodology(methodology),
        )

    def generate_report(
        self,
        question: str,
        plan: Plan,
        facts: List[Fact],
        sources: List[str],
        gaps: Optional[List[str]] = None,
        methodology: Optional[Mapping[str, Any]] = None,
        titles: Optional[Mapping[str, str]] = None,
        model: Optional[str] = None,
    ) -> str:
        self.logger.info("Generating final research report...")
        gaps = list(gaps or [])
        methodology = dict(methodology or {})
        sources_section = render_sources(sources, source_descriptions(sources, facts, titles))
        prompt = self.build_prompt(question, plan, facts, sources, gaps, methodology)
        try:
            report = self.generate(prompt, model)
        except GenerationError as exc:
            self.logger.error("Report generation error: %s", exc)
            return self.fallback_report(question, plan, facts, gaps, methodology, sources_section, str(exc))
        if self.tracker is not None:
            self.tracker.record_text("report", prompt, report)
        if not (report or "").strip():
            self.logger.error("Report generation returned an empty document")
            return self.fallback_report(
                question, plan, facts, gaps, methodology, sources_section, "empty response"
            )
        self.logger.info("Report generated successfully (%s characters)", len(report))
        return with_canonical_sources(report, sources_section)

    def fallback_report(
        self,
        question: str,
        plan: Plan,
        facts: List[Fact],
        gaps: List[str],
        methodology: Mapping[str, Any],
        sources_section: str,
        error: str,
    ) -> str:
        """Deterministic report with every required section, built without the model."""
        lines = [f"# Research Report: {question}", "", "## Executive Summary", ""]
        lines.append(
            f"Automatic report writing failed ({error}); below are the {len(facts)} "
            f"facts gathered across {len(plan.aspects)} aspects."
        )
        lines += ["", "## Key Findings", ""]
        lines += [f"- {fact.text}" for fact in facts[:KEY_FINDINGS_LIMIT]] or ["- No findings collected."]
        if len(facts) > KEY_FINDINGS_LIMIT:
            lines.append(f"- ... and {len(facts) - KEY_FINDINGS_LIMIT} more facts")
        lines += ["", "## Detailed Analysis", ""]
        for aspect in plan.aspects:
            lines.append(f"### {aspect.title}")
            lines.append("")
            aspect_facts = [fact for fact in facts if fact.aspect_id == aspect.id]
            lines += [f"- {fact.text}" for fact in aspect_facts] or ["- No facts for this aspect."]
            lines.append("")
        lines += ["## Remaining Gaps", ""]
        lines += [f"- {gap}" for gap in gaps] or ["- None identified"]
        lines += ["", "## Methodology", "", format_methodology(methodology), ""]
        return "\n".join(lines) + "\n" + sources_section
