import json
import logging
import re
from typing import Any, Callable, Dict, List, Optional

import httpx

from .errors import GenerationError


logger = logging.getLogger("deepresearch.llm")

# generate(prompt, model) -> text; any callable with this shape can stand in for LLMClient.
Generate = Callable[[str, Optional[str]], str]

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


def parse_json_response(text: Optional[str]) -> Optional[Any]:
    """Best-effort JSON extraction from model output.

    Tries the raw text, then the first fenced block, then the outermost
    ``{...}`` span. Returns None when nothing parses.
    """
    raw = (text or "").strip()
    if not raw:
        return None
    candidates = [raw]
    fence = _FENCE_RE.search(raw)
    if fence:
        candidates.append(fence.group(1).strip())
    start, end = raw.find("{"), raw.rfind("}")
    if start != -1 and end > start:
        candidates.append(raw[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    return None


def coerce_str_list(value: Any) -> List[str]:
    """Model fields that should be lists: a bare scalar becomes one item, None becomes []."""
    if isinstance(value, list):
        items = value
    elif value is None:
        items = []
    else:
        items = [value]
    return [str(item) for item in items if item is not None and str(item).strip()]


class LLMClient:
    """Synchronous client for an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout_s: float = 60.0,
        temperature: float = 0.2,
        max_tokens: int = 2048,
        client: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.default_model = default_model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.client = client or httpx.Client(timeout=timeout_s)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except ValueError:
            pass
        return response.text

    def generate(self, prompt: str, model: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        chosen = model or self.default_model
        if chosen:
            payload["model"] = chosen
        url = f"{self.base_url}/chat/completions"
        try:
            resp = self.client.post(url, json=payload, headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            detail = self._extract_error_detail(exc.response)
            raise GenerationError(
                f"LLM call failed with HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
                detail=detail,
            ) from exc
        except httpx.RequestError as exc:
            raise GenerationError(f"LLM request failed: {exc}", detail=str(exc)) from exc
        except ValueError as exc:
            raise GenerationError("LLM returned a non-JSON body") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise GenerationError("LLM returned no choices", detail=json.dumps(data, ensure_ascii=True))
        content = (choices[0].get("message") or {}).get("content") or ""
        return content.strip()

    __call__ = generate

    def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            self.client.close()
