"""
Pipeline Errors

Error taxonomy for the batch pipeline and the mapping of raw inference
failures onto stable codes for observability.
"""
from enum import Enum


class PipelineError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""
    code = "INTERNAL_ERROR"


class InvalidRequestError(PipelineError):
    """Rejected synchronously at the orchestrator boundary, never enqueued."""
    code = "VALIDATION_ERROR"


class NotFoundError(PipelineError):
    code = "NOT_FOUND"


class UnauthorizedError(PipelineError):
    code = "UNAUTHORIZED"


class AnalysisErrorCode(str, Enum):
    """Stable inference error codes, persisted on the photo."""
    TIMEOUT = "TIMEOUT"
    PROVIDER_DOWN = "PROVIDER_DOWN"
    BAD_INPUT = "BAD_INPUT"
    RATE_LIMIT = "RATE_LIMIT"
    NETWORK = "NETWORK"
    INVALID_OUTPUT = "INVALID_OUTPUT"
    WORKER_FAILURE = "WORKER_FAILURE"
    UNKNOWN = "UNKNOWN"


class AnalysisError(Exception):
    """Terminal or retryable failure of the inference collaborator."""

    def __init__(self, code: AnalysisErrorCode, message: str, retryable: bool = True):
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable

    def __repr__(self) -> str:
        return f"AnalysisError({self.code.value}, {self.message!r}, retryable={self.retryable})"


_PATTERNS: list[tuple[AnalysisErrorCode, tuple[str, ...], str, bool]] = [
    (AnalysisErrorCode.TIMEOUT, ("timeout", "timed out"), "Inference call timed out", True),
    (AnalysisErrorCode.RATE_LIMIT, ("rate limit", "429", "too many requests"), "Inference quota exceeded", True),
    (
        AnalysisErrorCode.PROVIDER_DOWN,
        ("500", "502", "503", "provider error", "service unavailable", "overloaded"),
        "Inference provider temporarily unavailable",
        True,
    ),
    (
        AnalysisErrorCode.NETWORK,
        ("network", "econnrefused", "connection refused", "enotfound", "name or service not known", "fetch failed"),
        "Network error during inference call",
        True,
    ),
    (AnalysisErrorCode.BAD_INPUT, ("invalid", "bad request", "400", "validation"), "Invalid input for inference", False),
]


def map_error(error: BaseException) -> AnalysisError:
    """
    Map an arbitrary exception onto a stable AnalysisError.

    AnalysisError instances pass through unchanged. Anything else is
    classified by its message; unknown messages are truncated to 200 chars.
    """
    if isinstance(error, AnalysisError):
        return error

    message = str(error) or type(error).__name__
    lowered = message.lower()

    for code, needles, description, retryable in _PATTERNS:
        if any(needle in lowered for needle in needles):
            return AnalysisError(code, description, retryable=retryable)

    return AnalysisError(AnalysisErrorCode.UNKNOWN, message[:200], retryable=True)
