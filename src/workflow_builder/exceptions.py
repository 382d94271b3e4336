"""Custom exceptions for the workflow builder pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

from src.workflow_builder.models import ErrorKind

if TYPE_CHECKING:
    from src.workflow_builder.models import FieldIssue


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    retryable: bool = False


class InputValidationError(PipelineError):
    """Raised (or returned) when an inbound request fails normalisation."""

    kind = ErrorKind.VALIDATION

    def __init__(self, issues: list[FieldIssue]) -> None:
        self.issues = list(issues)
        summary = "; ".join(issue.message for issue in self.issues) or "invalid request"
        super().__init__(summary)

    @property
    def codes(self) -> list[str]:
        """Issue codes in the order they were detected."""
        return [issue.code for issue in self.issues]


class GenerationError(PipelineError):
    """The generator call failed (network, rate limit, server error)."""

    kind = ErrorKind.GENERATION
    retryable = True

    def __init__(self, message: str, stage: str = "") -> None:
        self.stage = stage
        super().__init__(message)


class GenerationTimeoutError(GenerationError):
    """Raised when a generator call exceeds its timeout."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, stage: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"Stage '{stage}' timed out after {timeout:g}s", stage=stage)


class GeneratorReportedError(GenerationError):
    """The generator answered but reported a failure (blocked, no output, 4xx)."""

    kind = ErrorKind.GENERATOR_FAILURE
    retryable = False


class PayloadParseError(PipelineError):
    """The generator returned an unparseable or malformed structured payload."""

    kind = ErrorKind.PARSE

    def __init__(self, reason: str, stage: str = "", preview: str = "") -> None:
        self.reason = reason
        self.stage = stage
        self.preview = preview
        prefix = f"Stage '{stage}': " if stage else ""
        super().__init__(f"{prefix}{reason}")


class CacheError(PipelineError):
    """Cache storage failure.  Never fatal; the cache degrades to a miss."""


class EnvelopeInvariantError(PipelineError):
    """An envelope change would remove or overwrite accumulated state."""


class ConfigurationError(PipelineError):
    """Raised for configuration issues (missing keys, bad config, etc.)."""


class DeliveryError(PipelineError):
    """Raised when the delivery collaborator rejects an outcome."""

    def __init__(self, request_id: str, message: str = "") -> None:
        self.request_id = request_id
        super().__init__(message or f"Delivery failed for request '{request_id}'")
