"""
Error taxonomy for the claim monitor.

Every error carries a ``retryable`` flag that the job orchestrator consults
before scheduling another attempt.
"""
from typing import Optional


class MonitorError(Exception):
    """Base class for all monitor errors."""
    retryable = True


class PlatformError(MonitorError):
    """A call to the video platform failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthExpired(PlatformError):
    """The access credential was rejected; refresh and retry once."""


# Name used by the platform for the same condition
Unauthorized = AuthExpired


class AccessForbidden(PlatformError):
    """The account lacks access to the resource, e.g. no partner (Content ID) access."""
    retryable = False


class RateLimited(PlatformError):
    """The platform quota or rate limit was hit."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 retry_after: Optional[float] = None):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class Unavailable(PlatformError):
    """Transient platform outage, timeout or transport failure."""


class NotFound(PlatformError):
    """The requested resource does not exist."""
    retryable = False


class TokenRefreshError(MonitorError):
    """The refresh token could not be exchanged; the user must reauthorize."""
    retryable = False


class PersistenceError(MonitorError):
    """A data-access operation failed. Always propagated."""


class ChannelNotFoundError(MonitorError):
    """The channel does not exist or is not owned by the user."""
    retryable = False


class ChannelStateError(MonitorError):
    """The requested action is not allowed in the channel's current status."""
    retryable = False
