"""Exception hierarchy for the GlucoSync acquisition pipeline.

Every failure a source client, the store, or the coordinator can surface is
a subclass of ``GlucoSyncError``.  Callers that only care about "the
pipeline failed" catch the base class; the coordinator and the HTTP layer
dispatch on the concrete type:

    AuthExpired         - credential rejected after the single refresh/retry
    RateLimited         - remote returned 429; caller owns the backoff
    NoDataAvailable     - internal only, always converted to an empty result
    NetworkFailure      - timeout, transport error, or 5xx
    UnexpectedResponse  - any other status or an undecodable body
    ValidationFailure   - a reading violates the stored-row invariants
    PersistenceFailure  - the durable store (or the vault) is unusable
"""

from __future__ import annotations


class GlucoSyncError(Exception):
    """Base class for all pipeline errors."""


class AuthExpired(GlucoSyncError):
    """The remote rejected the credential and re-authentication did not help.

    Surfaced to the user as a connection-lost state.
    """


class NotConnected(AuthExpired):
    """No credential has been stored for this source yet."""


class InvalidCredentials(AuthExpired):
    """Username/password (or authorization code) was refused by the remote."""


class RateLimited(GlucoSyncError):
    """Remote asked us to slow down (HTTP 429).

    Attributes:
        retry_after: Seconds suggested by the ``Retry-After`` header, if any.
    """

    def __init__(self, message: str = "Rate limit exceeded", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class NoDataAvailable(GlucoSyncError):
    """The feed has nothing for the requested range.  Never escapes a client."""


class NetworkFailure(GlucoSyncError):
    """Timeout, connection error, or server-side (5xx) failure."""


class UnexpectedResponse(GlucoSyncError):
    """Remote answered with a status or payload we do not understand.

    Attributes:
        status_code: HTTP status, or None when the body failed to decode.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ValidationFailure(GlucoSyncError):
    """A reading violates the value-range or timestamp invariants."""


class PersistenceFailure(GlucoSyncError):
    """The durable store or credential vault could not be read or written."""
