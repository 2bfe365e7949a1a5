"""Error taxonomy for clustertop."""


class MetricsError(Exception):
    """Base class for errors raised by the metrics layer."""


class BadParameter(MetricsError, ValueError):
    """A caller-supplied argument violates a precondition.

    Raised before anything is sent to the backend.
    """


class BackendError(MetricsError):
    """The metrics backend could not be reached or answered with garbage.

    Covers connection failures, timeouts, malformed payloads and
    error responses from the query API. Retried on the next poll tick.
    """

    def __init__(self, message: str, error_type: str | None = None) -> None:
        super().__init__(message)
        self.error_type = error_type


class ShapeError(MetricsError):
    """The backend answered, but the result has the wrong shape.

    Carries the observed result type and the raw response text so the
    offending query can be diagnosed.
    """

    def __init__(self, message: str, result_type: str | None, raw: str) -> None:
        shown = raw if len(raw) <= 512 else raw[:509] + "..."
        super().__init__(f"{message}: {result_type} {shown}")
        self.result_type = result_type
        self.raw = raw


class UnsupportedError(MetricsError):
    """The backend does not provide this metric."""


class AlreadyStartedError(RuntimeError):
    """Profiling has already been started in this process."""
