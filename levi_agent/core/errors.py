"""Exception types raised by the context core.

Empty results are not errors: they come back as an empty list, an empty
string or None.
"""


class LeviError(Exception):
    """Base class for context-core errors."""


class ConfigError(LeviError):
    """A required credential or setting is missing. Never retried."""


class UpstreamError(LeviError):
    """An external service returned a non-success status or a malformed payload."""

    def __init__(self, service: str, message: str, status_code: int | None = None):
        self.service = service
        self.status_code = status_code
        if status_code is not None:
            super().__init__(f"{service} error ({status_code}): {message}")
        else:
            super().__init__(f"{service} error: {message}")


class ValidationError(LeviError):
    """A response violated an expected shape (e.g. wrong embedding dimension)."""
