"""Exceptions raised by the mirror monitor."""


class MirrorWatchError(Exception):
    """Base class for all mirror monitor errors."""


# ── Transient upstream failures ────────────────────────────────────


class BrowserError(MirrorWatchError):
    """Base class for headless-browser failures."""


class BrowserUnavailable(BrowserError):
    """Transport error, non-2xx response, or malformed script output."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class BrowserTimeout(BrowserError):
    """The search script did not finish within the request timeout."""


# ── Sweep-fatal failures ───────────────────────────────────────────


class RepositoryError(MirrorWatchError):
    """The record store could not be read or written."""


class ConfigError(MirrorWatchError):
    """A required configuration value is missing or invalid."""


# ── Caller errors surfaced by the service façade ───────────────────


class CallerError(MirrorWatchError):
    """Errors caused by the request rather than by the system."""

    kind = "Invalid"


class Invalid(CallerError):
    kind = "Invalid"


class NotFound(CallerError):
    kind = "NotFound"


class AlreadyExists(CallerError):
    kind = "AlreadyExists"


class Busy(CallerError):
    """A full sweep is already running."""

    kind = "Busy"


class Internal(MirrorWatchError):
    """Unexpected failure, reported with a diagnostic message."""

    kind = "Internal"
