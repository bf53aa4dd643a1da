import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import SearchError
from .schemas import Fact, ResearchResult, Summary
from .summarizer import SummarizerAgent
from .workflow import ParallelBatchNode


class SummarizeHitsNode(ParallelBatchNode):
    """Summarizes search hits, one worker thread per hit.

    Reads ``hits``/``aspect_id``/``model`` from the shared mapping and writes
    ``summaries`` and ``facts`` back in hit order. A hit whose summarization
    keeps failing contributes an empty summary.
    """

    def __init__(
        self,
        summarizer: SummarizerAgent,
        max_retries: int = 1,
        wait: float = 0.0,
        max_workers: Optional[int] = None,
    ):
        super().__init__(max_retries=max_retries, wait=wait, max_workers=max_workers)
        self.summarizer = summarizer

    def prepare(self, shared: Dict[str, Any]) -> List[Tuple[Dict[str, Any], Optional[str]]]:
        model = shared.get("model")
        return [(hit, model) for hit in shared.get("hits") or []]

    def execute(self, item: Tuple[Dict[str, Any], Optional[str]]) -> Summary:
        record, model = item
        return self.summarizer.summarize(record, model)

    def exec_fallback(self, item: Tuple[Dict[str, Any], Optional[str]], exc: Exception) -> Summary:
        record, _ = item
        url = str(record.get("url") or "")
        self.summarizer.logger.error("Summarization failed for %s: %s", url, exc)
        return Summary.empty(url)

    def finalize(self, shared: Dict[str, Any], prep_res: Any, exec_res: List[Summary]) -> str:
        aspect_id = shared.get("aspect_id")
        facts: List[Fact] = []
        for summary in exec_res:
            facts.extend(self.summarizer.summary_to_facts(summary, aspect_id))
        shared["summaries"] = exec_res
        shared["facts"] = facts
        return "summarized"


class ResearchSubAgent:
    """Search one query, optionally fetch full records, summarize every hit."""

    def __init__(
        self,
        search: Any,
        summarizer: SummarizerAgent,
        fetch: Any = None,
        retry_attempts: int = 1,
        retry_wait_s: float = 0.0,
        max_workers: Optional[int] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.search = search
        self.fetch = fetch
        self.summarizer = summarizer
        self.logger = logger or logging.getLogger("deepresearch.research")
        self.node = SummarizeHitsNode(
            summarizer,
            max_retries=retry_attempts,
            wait=retry_wait_s,
            max_workers=max_workers,
        )

    def _fetch_full(self, hit: Dict[str, Any]) -> Dict[str, Any]:
        record = self.fetch(hit["url"]) if self.fetch else None
        if not record:
            return hit
        return {**hit, **record}

    def research(
        self,
        query: str,
        aspect_id: Optional[str] = None,
        limit: int = 5,
        model: Optional[str] = None,
    ) -> ResearchResult:
        self.logger.info("Researching: %s", query)
        try:
            hits = list(self.search(query, limit) or [])
        except (SearchError, httpx.HTTPError) as exc:
            self.logger.error("Search failed for '%s': %s", query, exc)
            return ResearchResult()
        hits = [hit for hit in hits if isinstance(hit, dict) and hit.get("url")]
        self.logger.info("Found %s results", len(hits))
        if not hits:
            return ResearchResult()

        records = [self._fetch_full(hit) for hit in hits]
        shared: Dict[str, Any] = {"hits": records, "aspect_id": aspect_id, "model": model}
        self.node.run(shared)
        result = ResearchResult(raw_results=hits, summaries=shared["summaries"], facts=shared["facts"])
        self.logger.info(
            "Extracted %s facts from %s conversations", len(result.facts), len(result.summaries)
        )
        return result
