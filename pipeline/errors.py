"""
Error taxonomy for the ingestion and scoring pipeline.

Per-record and per-source errors are contained by the orchestrator and
reported in the cycle summary. Only PersistenceFailure escalates to the
caller.
"""

from typing import Any, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """An observation is missing required fields or carries unusable values."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class SourceUnavailable(PipelineError):
    """A provider could not deliver data for this cycle."""

    def __init__(self, message: str, source: str = "unknown"):
        super().__init__(message)
        self.source = source


class FetchError(SourceUnavailable):
    """
    An adapter call failed.

    kind is one of "network", "auth", "schema" or "http".
    """

    def __init__(
        self,
        message: str,
        source: str = "unknown",
        kind: str = "network",
        status_code: Optional[int] = None,
    ):
        super().__init__(message, source=source)
        self.kind = kind
        self.status_code = status_code


class RateLimitExceeded(FetchError):
    """The provider kept answering 429 after the single permitted retry."""

    def __init__(self, message: str, source: str = "unknown"):
        super().__init__(message, source=source, kind="http", status_code=429)


class PersistenceFailure(PipelineError):
    """The store rejected a write. Fatal for the current cycle."""

    def __init__(self, message: str, report: Any = None):
        super().__init__(message)
        self.report = report


class ScoringPairFailure(PipelineError):
    """Aggregation for a single (type, region) pair failed."""

    def __init__(self, message: str, challenge_type: str, region_code: str):
        super().__init__(message)
        self.challenge_type = challenge_type
        self.region_code = region_code
