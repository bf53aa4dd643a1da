import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, get_args

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .token_tracker import estimate_tokens


ArtifactType = Literal[
    "plan_node",
    "query",
    "result_raw",
    "summary",
    "fact",
    "expansion_suggestion",
    "evaluation",
    "final_report",
]
ARTIFACT_TYPES = frozenset(get_args(ArtifactType))

DEPTH_LIMIT_MIN = 1
DEPTH_LIMIT_MAX = 5


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()[:16]


def fact_id(text: str) -> str:
    return f"fact_{_digest(text or '')}"


def artifact_id(artifact_type: str, data: Any) -> str:
    payload = json.dumps(data, ensure_ascii=True, sort_keys=True, separators=(",", ":"))
    return f"{artifact_type}_{_digest(f'{artifact_type}:{payload}')}"


def _in_unit_range(value: Optional[float]) -> bool:
    return value is not None and 0.0 <= value <= 1.0


class PolicyAction(str, Enum):
    """Per-round control decision returned by the policy engine."""

    CONTINUE = "continue"
    REPLAN = "replan"
    FINALIZE_FULL = "finalize_full"
    FINALIZE_PARTIAL = "finalize_partial"

    @property
    def is_terminal(self) -> bool:
        return self in (PolicyAction.FINALIZE_FULL, PolicyAction.FINALIZE_PARTIAL)


class Aspect(BaseModel):
    id: str = ""
    title: str = ""
    queries: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="ignore")


class Plan(BaseModel):
    question: str = ""
    aspects: List[Aspect] = Field(default_factory=list)
    depth_limit: int = 3
    breadth_limit: int = 5
    initial_hypotheses: List[str] = Field(default_factory=list)
    success_criteria: List[str] = Field(default_factory=list)

    model_config = ConfigDict(frozen=True, extra="ignore")

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str) -> "Plan":
        return cls.model_validate_json(raw)

    def aspect(self, aspect_id: str) -> Optional[Aspect]:
        for item in self.aspects:
            if item.id == aspect_id:
                return item
        return None

    def all_queries(self) -> List[str]:
        return [query for item in self.aspects for query in item.queries]

    def validation_errors(self) -> List[str]:
        errors: List[str] = []
        if not self.question.strip():
            errors.append("Question is required")
        if not DEPTH_LIMIT_MIN <= self.depth_limit <= DEPTH_LIMIT_MAX:
            errors.append(f"Depth limit must be between {DEPTH_LIMIT_MIN} and {DEPTH_LIMIT_MAX}")
        if self.breadth_limit < 1:
            errors.append("Breadth limit must be at least 1")
        if len(self.aspects) > self.breadth_limit:
            errors.append("Number of aspects exceeds breadth limit")
        for idx, item in enumerate(self.aspects):
            if not item.id.strip():
                errors.append(f"Aspect {idx} missing id")
            if not item.title.strip():
                errors.append(f"Aspect {idx} missing title")
            if not item.queries:
                errors.append(f"Aspect {idx} must have at least 1 query")
            elif any(not query.strip() for query in item.queries):
                errors.append(f"Aspect {idx} contains empty queries")
        normalized = [query.strip().lower() for query in self.all_queries() if query.strip()]
        if len(set(normalized)) != len(normalized):
            errors.append("Duplicate queries detected across aspects")
        return errors

    def is_valid(self) -> bool:
        return not self.validation_errors()


class Fact(BaseModel):
    """Atomic, source-attributed claim. The id depends on the text only."""

    id: str = ""
    text: str = ""
    source_urls: List[str] = Field(default_factory=list)
    aspect_id: Optional[str] = None
    confidence: float = 0.5
    extracted_at: str = Field(default_factory=utc_now)

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def _assign_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = dict(data)
            data["id"] = fact_id(data.get("text") or "")
        return data

    @property
    def token_count(self) -> int:
        return estimate_tokens(self.text)

    def is_valid(self) -> bool:
        if not self.text.strip():
            return False
        if not self.source_urls:
            return False
        return _in_unit_range(self.confidence)


class Summary(BaseModel):
    source_url: str = ""
    facts: List[str] = Field(default_factory=list)
    topics: List[str] = Field(default_factory=list)
    confidence: float = 0.5

    @classmethod
    def empty(cls, source_url: str = "") -> "Summary":
        return cls(source_url=source_url, facts=[], topics=[], confidence=0.0)

    def is_valid(self) -> bool:
        return bool(self.source_url.strip()) and _in_unit_range(self.confidence)


class Evaluation(BaseModel):
    coverage_score: float = 0.0
    confidence_score: float = 0.0
    source_diversity: float = 0.0
    aspect_completion: float = 0.0
    missing_aspects: List[str] = Field(default_factory=list)
    notes: List[str] = Field(default_factory=list)

    model_config = {"extra": "allow"}

    @classmethod
    def midpoint(cls) -> "Evaluation":
        return cls(
            coverage_score=0.5,
            confidence_score=0.5,
            source_diversity=0.5,
            aspect_completion=0.5,
        )

    def is_valid(self) -> bool:
        return all(
            _in_unit_range(value)
            for value in (
                self.coverage_score,
                self.confidence_score,
                self.source_diversity,
                self.aspect_completion,
            )
        )


class Artifact(BaseModel):
    """Typed, timestamped envelope for anything the research loop persists."""

    id: str = ""
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now)

    @model_validator(mode="before")
    @classmethod
    def _assign_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id"):
            data = dict(data)
            data["id"] = artifact_id(str(data.get("type") or ""), data.get("data") or {})
        return data

    def is_valid(self) -> bool:
        return self.type in ARTIFACT_TYPES and self.data is not None


class VerificationResult(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    plan: Optional[Plan] = None


class ResearchResult(BaseModel):
    raw_results: List[Dict[str, Any]] = Field(default_factory=list)
    summaries: List[Summary] = Field(default_factory=list)
    facts: List[Fact] = Field(default_factory=list)


class SourceUsage(BaseModel):
    url: str
    facts_used: int = 0


class RunManifest(BaseModel):
    question: str
    run_id: str
    plan_version: int = 2
    status: Literal["complete", "partial", "failed"] = "complete"
    token_usage: Dict[str, int] = Field(default_factory=dict)
    depth_reached: int = 0
    aspects_completed: int = 0
    confidence_final: float = 0.0
    sources: List[SourceUsage] = Field(default_factory=list)
    timestamp: str = Field(default_factory=utc_now)


class RunResult(BaseModel):
    success: bool
    run_id: str
    report: Optional[str] = None
    report_path: Optional[str] = None
    outcome: Optional[str] = None
    stats: Dict[str, Any] = Field(default_factory=dict)
    budget: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
