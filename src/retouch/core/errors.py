"""Exception hierarchy for Retouch.

Every failure the core raises derives from :class:`RetouchError` so route
handlers can translate domain errors into HTTP responses in one place.

============================  ==============================================
Exception                     Raised when
============================  ==============================================
``ValidationError``           a required field is missing before any I/O
``ResolutionError``           an image reference could not be made fetchable
``ProviderError``             the provider call failed or returned no image
``PersistenceError``          the session store could not apply an update
``ObjectNotFoundError``       a stored object does not exist
``BatchCancelledError``       a batch was cancelled before a unit started
============================  ==============================================
"""

from __future__ import annotations


class RetouchError(Exception):
    """Base class for all Retouch errors."""


class ValidationError(RetouchError, ValueError):
    """A caller omitted a required field.

    Raised synchronously before any network call is made.  The message is
    safe to show to the user.
    """


class ResolutionError(RetouchError):
    """An image reference could not be converted into a fetchable URL.

    The resolver itself never raises this; it logs it and falls back to the
    original reference.  The dispatcher raises it when the fallback value is
    still an internal path the provider cannot fetch.
    """

    def __init__(self, reference: str, reason: str = "") -> None:
        self.reference = reference
        self.reason = reason
        message = f"Could not resolve image reference '{reference}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class ProviderError(RetouchError):
    """The external transformation provider call failed.

    Attributes:
        status_code: HTTP status returned by the provider, if any.
        body: Response body (truncated), if any.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        if status_code is not None:
            message = f"{message} (HTTP {status_code})"
        super().__init__(message)


class PersistenceError(RetouchError):
    """A session store operation failed."""


class ObjectNotFoundError(RetouchError, LookupError):
    """A stored object or record does not exist."""


class BatchCancelledError(RetouchError):
    """The batch was cancelled before this unit was dispatched."""
