"""Base exception types shared across the engine."""


class TriageEngineError(Exception):
    """Base exception for all engine errors."""

    retryable: bool = False


class RetryableError(TriageEngineError):
    """Failure of an external collaborator that the caller may retry."""

    retryable = True


class StoreUnavailableError(RetryableError):
    """The persistent store rejected or failed a read/write."""

    pass


class TransportError(RetryableError):
    """The real-time transport could not accept an event."""

    pass


class ReportNotFound(TriageEngineError):
    """Raised when an incident report does not exist."""

    pass


class HospitalNotFound(TriageEngineError):
    """Raised when a hospital is not in the directory."""

    pass


class ConcurrentModification(RetryableError):
    """A row was changed by another transaction after it was read."""

    pass
