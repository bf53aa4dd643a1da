import json
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx


logger = logging.getLogger("deepresearch.search")

SEARCH_MODES = {"semantic", "keyword"}

# search(query, limit) -> [record]; any callable with this shape can stand in for the client.
Search = Callable[[str, int], List[Dict[str, Any]]]


def parse_search_body(text: str) -> List[Dict[str, Any]]:
    """Accept a JSON list, a ``{"results": [...]}`` object, or JSON Lines."""
    raw = (text or "").strip()
    if not raw:
        return []
    try:
        data = json.loads(raw)
    except ValueError:
        data = None
        records: List[Any] = []
        for line in raw.splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                records.append(json.loads(line))
            except ValueError:
                logger.debug("Skipping non-JSON line: %s", line[:50])
    else:
        if isinstance(data, dict):
            records = data.get("results") or []
        elif isinstance(data, list):
            records = data
        else:
            records = []
    return [record for record in records if isinstance(record, dict) and record.get("url")]


class ConversationSearchClient:
    """HTTP adapter for the conversation search service.

    Failures never raise: ``search`` yields ``[]`` and ``fetch`` yields ``None``
    after logging, so a flaky backend degrades a round instead of ending it.
    """

    def __init__(
        self,
        base_url: str,
        collection: Optional[str] = None,
        mode: str = "semantic",
        timeout_s: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.collection = collection
        self.mode = mode if mode in SEARCH_MODES else "semantic"
        # Pooled connections; summaries fan out across threads.
        self.client = client or httpx.Client(
            timeout=timeout_s,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    def search(self, query: str, limit: int = 5, mode: Optional[str] = None) -> List[Dict[str, Any]]:
        chosen = (mode or self.mode or "semantic").strip().lower()
        if chosen not in SEARCH_MODES:
            logger.warning("Unknown search mode '%s'", chosen)
            return []
        payload: Dict[str, Any] = {"query": query, "limit": int(limit), "mode": chosen}
        if self.collection:
            payload["collection"] = self.collection
        logger.debug("%s search: %s", chosen, query)
        resp = self._request("POST", f"{self.base_url}/search", json=payload)
        if resp is None:
            return []
        results = parse_search_body(resp.text)
        return results[: int(limit)] if limit else results

    __call__ = search

    def fetch(self, url: str) -> Optional[Dict[str, Any]]:
        resp = self._request("GET", f"{self.base_url}/conversation", params={"url": url})
        if resp is None:
            return None
        try:
            data = resp.json()
        except ValueError as exc:
            logger.error("Failed to parse conversation JSON for %s: %s", url, exc)
            return None
        if not isinstance(data, dict):
            return None
        data.setdefault("url", url)
        return data

    def _request(self, method: str, url: str, **kwargs: Any) -> Optional[httpx.Response]:
        """Shared request helper; logs and returns None on any HTTP failure."""
        try:
            resp = self.client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except ValueError:
                detail = e.response.text
            logger.error("Search backend returned HTTP %s: %s", e.response.status_code, detail)
        except httpx.RequestError as e:
            logger.error("Search request failed: %s", e)
        return None

    def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            self.client.close()
