import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field


CONFIG_PATH = Path("config.json")
ENV_OVERRIDE_KEY = "DEEPRESEARCH_ENV_OVERRIDES_CONFIG"
ENV_OVERRIDE_TRUE = {"1", "true", "yes", "on"}


class EndpointConfig(BaseModel):
    base_url: str = "http://127.0.0.1:1234/v1"
    api_key: Optional[str] = None
    timeout_s: float = 60.0
    temperature: float = 0.2
    max_tokens: int = 2048

    model_config = {"protected_namespaces": ()}


class SearchConfig(BaseModel):
    base_url: str = "http://127.0.0.1:8765"
    collection: Optional[str] = None
    mode: str = "semantic"
    timeout_s: float = 30.0
    fetch_full_records: bool = False


class ModelConfig(BaseModel):
    reasoning: Optional[str] = None
    summary: Optional[str] = None
    fast: Optional[str] = None


class ResearchSettings(BaseModel):
    # Control loop
    max_depth: int = 3
    breadth_limit: int = 5
    max_aspects: int = 8
    token_budget: int = 60_000
    min_coverage: float = 0.75
    stop_if_confidence: float = 0.85
    replan_max: int = 2
    relevance_top_k: int = 40
    max_summaries_per_branch: int = 6

    # Retry around collaborator calls made from nodes
    retry_attempts: int = 2
    retry_wait_s: float = 1.0
    max_parallel_summaries: Optional[int] = None

    # Persistence
    cache_path: str = "./cache/deep_research"
    persist_intermediate: bool = False

    llm: EndpointConfig = Field(default_factory=EndpointConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    models: ModelConfig = Field(default_factory=ModelConfig)

    def to_safe_dict(self) -> dict:
        data = self.model_dump()
        if data.get("llm", {}).get("api_key"):
            data["llm"]["api_key"] = "********"
        return data

    model_config = {"protected_namespaces": ()}


_INT_KEYS = (
    "max_depth",
    "breadth_limit",
    "max_aspects",
    "token_budget",
    "replan_max",
    "relevance_top_k",
    "max_summaries_per_branch",
    "retry_attempts",
)
_FLOAT_KEYS = ("min_coverage", "stop_if_confidence", "retry_wait_s")


def _load_from_env() -> Dict[str, Any]:
    load_dotenv()
    env_map = {
        "max_depth": os.getenv("DEEPRESEARCH_MAX_DEPTH"),
        "breadth_limit": os.getenv("DEEPRESEARCH_BREADTH_LIMIT"),
        "max_aspects": os.getenv("DEEPRESEARCH_MAX_ASPECTS"),
        "token_budget": os.getenv("DEEPRESEARCH_TOKEN_BUDGET"),
        "min_coverage": os.getenv("DEEPRESEARCH_MIN_COVERAGE"),
        "stop_if_confidence": os.getenv("DEEPRESEARCH_STOP_IF_CONFIDENCE"),
        "replan_max": os.getenv("DEEPRESEARCH_REPLAN_MAX"),
        "relevance_top_k": os.getenv("DEEPRESEARCH_RELEVANCE_TOP_K"),
        "max_summaries_per_branch": os.getenv("DEEPRESEARCH_MAX_SUMMARIES_PER_BRANCH"),
        "retry_attempts": os.getenv("DEEPRESEARCH_RETRY_ATTEMPTS"),
        "retry_wait_s": os.getenv("DEEPRESEARCH_RETRY_WAIT_S"),
        "cache_path": os.getenv("DEEPRESEARCH_CACHE_PATH"),
        "persist_intermediate": os.getenv("DEEPRESEARCH_PERSIST_INTERMEDIATE"),
        "llm_base_url": os.getenv("LLM_BASE_URL"),
        "llm_api_key": os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY"),
        "search_base_url": os.getenv("SEARCH_BASE_URL"),
        "search_collection": os.getenv("SEARCH_COLLECTION"),
        "model_reasoning": os.getenv("MODEL_REASONING"),
        "model_summary": os.getenv("MODEL_SUMMARY"),
        "model_fast": os.getenv("MODEL_FAST"),
    }
    cleaned = {k: v for k, v in env_map.items() if v not in (None, "")}
    for key in _INT_KEYS:
        if key in cleaned:
            cleaned[key] = int(cleaned[key])
    for key in _FLOAT_KEYS:
        if key in cleaned:
            cleaned[key] = float(cleaned[key])
    if "persist_intermediate" in cleaned:
        cleaned["persist_intermediate"] = str(cleaned["persist_intermediate"]).lower() in ENV_OVERRIDE_TRUE

    nested: Dict[str, Dict[str, Any]] = {}
    for flat_key, (section, field) in {
        "llm_base_url": ("llm", "base_url"),
        "llm_api_key": ("llm", "api_key"),
        "search_base_url": ("search", "base_url"),
        "search_collection": ("search", "collection"),
        "model_reasoning": ("models", "reasoning"),
        "model_summary": ("models", "summary"),
        "model_fast": ("models", "fast"),
    }.items():
        if flat_key in cleaned:
            nested.setdefault(section, {})[field] = cleaned.pop(flat_key)
    cleaned.update(nested)
    return cleaned


def _env_overrides_config() -> bool:
    return str(os.getenv(ENV_OVERRIDE_KEY, "")).strip().lower() in ENV_OVERRIDE_TRUE


def _merge(low: Dict[str, Any], high: Dict[str, Any]) -> Dict[str, Any]:
    """Merge two settings dicts one level deep; ``high`` wins."""
    merged = dict(low)
    for key, value in high.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return merged


def load_settings(config_path: Optional[Path] = None) -> ResearchSettings:
    env_data = _load_from_env()
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    if path.exists():
        try:
            file_data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            file_data = {}
        if not isinstance(file_data, dict):
            file_data = {}
    # Config wins by default; allow env overrides only when explicitly enabled.
    if _env_overrides_config():
        merged = _merge(file_data, env_data)
    else:
        merged = _merge(env_data, file_data)
    llm = merged.get("llm")
    if isinstance(llm, dict) and not llm.get("api_key") and env_data.get("llm", {}).get("api_key"):
        llm["api_key"] = env_data["llm"]["api_key"]
    return ResearchSettings(**merged)


def save_settings(settings: ResearchSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
