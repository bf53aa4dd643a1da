import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .agents import SUMMARIZER_PROMPT, fill_template
from .llm import Generate, coerce_str_list, parse_json_response
from .schemas import Fact, Summary
from .token_tracker import TokenTracker


MAX_BODY_CHARS = 10_000
TRUNCATION_MARKER = "\n\n[TRUNCATED]"


def _field(record: Dict[str, Any], key: str) -> str:
    value = record.get(key)
    return str(value) if value is not None else ""


class SummarizerAgent:
    """Turns one conversation record into a ``Summary`` of atomic facts.

    Malformed model output degrades to an empty summary. Generation errors
    propagate so the calling node can retry them.
    """

    def __init__(
        self,
        generate: Generate,
        tracker: Optional[TokenTracker] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.generate = generate
        self.tracker = tracker
        self.logger = logger or logging.getLogger("deepresearch.summarizer")

    def build_prompt(self, record: Dict[str, Any]) -> str:
        body = _field(record, "body") or _field(record, "summary")
        if len(body) > MAX_BODY_CHARS:
            body = body[:MAX_BODY_CHARS] + TRUNCATION_MARKER
        return fill_template(
            SUMMARIZER_PROMPT,
            title=_field(record, "title"),
            url=_field(record, "url"),
            body=body,
        )

    def summarize(self, record: Dict[str, Any], model: Optional[str] = None) -> Summary:
        url = _field(record, "url")
        self.logger.debug("Summarizing: %s", _field(record, "title") or url)
        prompt = self.build_prompt(record)
        raw = self.generate(prompt, model)
        if self.tracker is not None:
            self.tracker.record_text("summarization", prompt, raw)

        data = parse_json_response(raw)
        if not isinstance(data, dict):
            self.logger.error("Failed to parse summary JSON for %s", url)
            return Summary.empty(url)
        facts = data.get("facts") or []
        if not isinstance(facts, list):
            facts = []
        try:
            summary = Summary(
                source_url=url,
                facts=[str(text) for text in facts if isinstance(text, (str, int, float))],
                topics=coerce_str_list(data.get("topics")),
                confidence=data["confidence"] if data.get("confidence") is not None else 0.5,
            )
        except ValidationError as exc:
            self.logger.error("Invalid summary payload for %s: %s", url, exc)
            return Summary.empty(url)
        if not summary.is_valid():
            self.logger.warning("Invalid summary generated for %s", url)
        return summary

    def summary_to_facts(self, summary: Summary, aspect_id: Optional[str] = None) -> List[Fact]:
        facts = []
        for text in summary.facts:
            fact = Fact(
                text=text,
                source_urls=[summary.source_url] if summary.source_url else [],
                aspect_id=aspect_id,
                confidence=summary.confidence,
            )
            if fact.is_valid():
                facts.append(fact)
        return facts
