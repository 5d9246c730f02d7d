"""Error kinds raised across the ingestion and relevance pipeline."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class ConfigurationError(PipelineError):
    """Raised when a job cannot start (e.g. no credentials at all)."""


class UpstreamError(PipelineError):
    """Raised when an upstream provider cannot be read."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientUpstreamError(UpstreamError):
    """Network failure, 5xx/429 or malformed envelope; safe to retry."""


class FatalUpstreamError(UpstreamError):
    """Authentication or request errors that will not succeed on retry."""


class TransformError(PipelineError):
    """A single raw record could not be normalized into a canonical row."""

    def __init__(self, message: str, *, record_id: str | None = None) -> None:
        super().__init__(message)
        self.record_id = record_id


class PersistenceBatchError(PipelineError):
    """A batch write to the store failed."""

    def __init__(self, message: str, *, batch_number: int, size: int) -> None:
        super().__init__(message)
        self.batch_number = batch_number
        self.size = size


class ScoringInputError(PipelineError):
    """A signal or mandate has a shape the relevance engine cannot score."""


class ExposureLookupError(PipelineError):
    """The injected holdings lookup failed or returned an unusable result."""


def is_transient(error: BaseException) -> bool:
    """Retry predicate used by default for upstream calls."""

    return isinstance(error, TransientUpstreamError)


__all__ = [
    "PipelineError",
    "ConfigurationError",
    "UpstreamError",
    "TransientUpstreamError",
    "FatalUpstreamError",
    "TransformError",
    "PersistenceBatchError",
    "ScoringInputError",
    "ExposureLookupError",
    "is_transient",
]
