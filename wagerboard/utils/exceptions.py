"""Domain exceptions shared across services."""


class UpstreamError(RuntimeError):
    """Base class for failures talking to the affiliate stats API."""


class UpstreamTransientError(UpstreamError):
    """A single request attempt failed and may be retried.

    ``kind`` is one of ``timeout``, ``network``, ``http`` or ``other`` and is
    only used to make log lines readable.
    """

    def __init__(self, message: str, kind: str = "other", status: int | None = None):
        super().__init__(message)
        self.kind = kind
        self.status = status


class UpstreamUnavailable(UpstreamError):
    """All attempts failed and no previously good snapshot exists."""


class CachedFetchError(RuntimeError):
    """A recent fetch failure is still cached for this key."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key
        self.message = message


class ProfileServiceError(RuntimeError):
    """Base class for profile reconciliation errors."""


class ProfileError(ProfileServiceError):
    """Raised for profile lookups that cannot be satisfied, e.g. ``profile_not_found``."""


class ProfileLinkError(ProfileServiceError):
    """Raised for invalid link workflow requests."""


class ReconciliationConflictError(ProfileServiceError):
    """Insert kept conflicting but the conflicting row could not be read back."""
