from typing import List, Optional

from sbom_api.models import RunWarning


class PipelineError(Exception):
    """Fatal error for one analysis run. Carries the warnings gathered so far."""

    kind = "PipelineError"
    status_code = 500

    def __init__(self, message: str, warnings: Optional[List[RunWarning]] = None):
        super().__init__(message)
        self.message = message
        self.warnings: List[RunWarning] = list(warnings or [])

    def to_payload(self) -> dict:
        return {
            "error": self.message,
            "kind": self.kind,
            "warnings": [w.model_dump() for w in self.warnings],
        }


class FetchError(PipelineError):
    kind = "FetchError"
    status_code = 502


class FeedUnavailable(PipelineError):
    kind = "FeedUnavailable"
    status_code = 503


class MissingCredential(PipelineError):
    kind = "MissingCredential"
    status_code = 400


class RunInProgress(PipelineError):
    kind = "RunInProgress"
    status_code = 409


class RunCancelled(PipelineError):
    kind = "RunCancelled"
    status_code = 409


class ManifestParseError(ValueError):
    """Raised by an extractor for a single unparsable manifest."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason
