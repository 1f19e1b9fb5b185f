class TrackerError(Exception):
    """Base class for errors raised by the request tracer itself."""
    pass


class TrackerConfigurationError(TrackerError, ValueError):
    """A required argument or setting is missing or invalid."""
    pass


class CircuitOpenError(TrackerError):
    """The circuit breaker refused the call without attempting it."""

    def __init__(self, message: str = "circuit breaker is open"):
        super().__init__(message)


class RecordNotFoundError(TrackerError, LookupError):
    """No stored request record matches the given id."""
    pass
