"""
Error taxonomy for the action queue and allocation lifecycle.

Validation and conflict errors surface synchronously to the caller of a
mutating operation. Execution-time errors (external, transient, build) are
captured per action by the executor and never abort a batch.
"""


class IndexerAgentError(Exception):
    """Base class for all domain errors."""

    status_code: int = 500

    def __init__(self, message: str, **details):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(IndexerAgentError):
    """Malformed or missing input; nothing was persisted."""

    status_code = 422


class ConflictError(IndexerAgentError):
    """Violates the in-flight invariant, or targets in-flight work."""

    status_code = 409


class NotFoundError(IndexerAgentError):
    """Unknown action id or rule identifier."""

    status_code = 404


class ExternalOperationError(IndexerAgentError):
    """The network rejected or reverted an operation."""

    status_code = 502


class OperationBuildError(ExternalOperationError):
    """Pre-flight validation failed while building an operation."""


class TransientNetworkError(IndexerAgentError):
    """A network call timed out or failed without a definitive result."""

    status_code = 503
