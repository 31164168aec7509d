"""Engine error taxonomy.

- ``AdmissionError``: a submit/publish was refused (bad key, or an exclusive
  operation is already in flight). Raised to the caller.
- ``CollaboratorError``: the analysis or publish collaborator failed. Recorded
  as the job's error, or returned from ``publish``; retryable.
- ``ConsistencyViolation``: an internal invariant breach. Logged, and the
  offending write is dropped.
"""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for analysis engine errors."""


class AdmissionError(EngineError):
    """Raised when an operation is refused for a key."""

    def __init__(self, message: str, *, key: object | None = None) -> None:
        super().__init__(message)
        self.key = key


class CollaboratorError(EngineError):
    """Raised when an external collaborator fails."""

    def __init__(
        self,
        message: str,
        *,
        key: object | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(message)
        self.key = key
        self.retryable = retryable


class AnalysisFailedError(CollaboratorError):
    """The analysis collaborator raised before producing a terminal event."""


class PublishTransportError(CollaboratorError):
    """The publish collaborator failed to create or update a comment."""


class ConsistencyViolation(EngineError):
    """Internal invariant breach detected before a write was committed."""


__all__ = [
    "AdmissionError",
    "AnalysisFailedError",
    "CollaboratorError",
    "ConsistencyViolation",
    "EngineError",
    "PublishTransportError",
]
