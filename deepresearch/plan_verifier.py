import json
import logging
from typing import Any, List, Optional, Union

from pydantic import ValidationError

from .llm import parse_json_response
from .schemas import Plan, VerificationResult


MAX_ASPECTS = 8
REQUIRED_KEYS = ("question", "aspects", "depth_limit", "breadth_limit")


def _validation_messages(exc: ValidationError) -> List[str]:
    messages = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"Invalid field {loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return messages


class PlanVerifier:
    """Deterministic structural checks on a generated plan.

    ``verify`` never raises; every problem comes back in ``errors`` and
    ``plan`` is only set when the result is valid.
    """

    def __init__(self, max_aspects: int = MAX_ASPECTS, logger: Optional[logging.Logger] = None):
        self.max_aspects = max_aspects
        self.logger = logger or logging.getLogger("deepresearch.plan_verifier")

    def verify(self, plan_json: Union[str, dict, None]) -> VerificationResult:
        data: Any
        if isinstance(plan_json, dict):
            data = plan_json
        elif isinstance(plan_json, str):
            try:
                data = json.loads(plan_json)
            except ValueError:
                data = parse_json_response(plan_json)
        else:
            data = None
        if not isinstance(data, dict):
            return VerificationResult(valid=False, errors=["Invalid JSON format"])

        errors: List[str] = [f"Missing required key: {key}" for key in REQUIRED_KEYS if key not in data]
        try:
            plan = Plan.model_validate(data)
        except ValidationError as exc:
            self.logger.debug("Plan failed schema validation: %s", exc)
            return VerificationResult(valid=False, errors=errors + _validation_messages(exc))

        errors = plan.validation_errors() + errors
        if len(plan.aspects) > self.max_aspects:
            errors.append(f"Too many aspects (max: {self.max_aspects})")
        return VerificationResult(valid=not errors, errors=errors, plan=None if errors else plan)
