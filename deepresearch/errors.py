from typing import List, Optional


class DeepResearchError(Exception):
    """Base class for every error raised by the research loop."""


class FlowError(DeepResearchError):
    pass


class PlanningError(DeepResearchError):
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = list(errors or [])


class ArtifactValidationError(DeepResearchError, ValueError):
    pass


class UnknownStageError(DeepResearchError, ValueError):
    pass


class GenerationError(DeepResearchError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class SearchError(DeepResearchError):
    def __init__(self, message: str, status_code: Optional[int] = None, detail: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
