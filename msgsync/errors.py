"""
Error taxonomy for message synchronization.

Every error raised by the sync core derives from MsgSyncError so callers can
separate sync failures from programming errors. How each error is handled:

- TransientUpstreamError: retried with backoff by the orchestrator
- UpstreamAuthError: aborts the affected account, other accounts continue
- IdentityResolutionExhausted: falls through to a placeholder identity
- DuplicateKeyConflict: the duplicate write is skipped
- DataShapeError: the malformed message is skipped
"""


class MsgSyncError(Exception):
    """Base class for all msgsync errors."""

    pass


class PlatformAPIError(MsgSyncError):
    """Raised when a platform API call fails for a non-retryable reason."""

    pass


class TransientUpstreamError(PlatformAPIError):
    """Raised for network failures, rate limits and upstream server errors."""

    pass


class UpstreamAuthError(PlatformAPIError):
    """Raised when the platform rejects the account's credentials."""

    pass


class DataShapeError(MsgSyncError):
    """Raised when an upstream message is missing required fields."""

    pass


class IdentityResolutionExhausted(MsgSyncError):
    """Raised when no resolution strategy produced a real identity."""

    pass


class DuplicateKeyConflict(MsgSyncError):
    """Raised when a persistence write collides with an existing key."""

    pass
