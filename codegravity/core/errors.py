from __future__ import annotations


class GravityError(Exception):
    """Base error for CodeGravity."""


class UnknownProviderError(GravityError):
    """Provider name is not in the catalog."""


class NoCredentialError(GravityError):
    """The principal has no provider API key on file."""


class RateLimitedError(GravityError):
    """Fixed-window limit exhausted for the principal and category."""

    def __init__(
        self,
        message: str,
        *,
        retry_after_s: int,
        limit: int,
        remaining: int = 0,
        category: str = "default",
    ) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s
        self.limit = limit
        self.remaining = remaining
        self.category = category


class UpstreamError(GravityError):
    """Provider request failed or returned a non-2xx status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    """Provider exceeded the idle or total relay bound."""


class StoreUnavailableError(GravityError):
    """Shared counter store could not be reached."""


class HistoryWriteFailedError(GravityError):
    """Usage history could not be persisted."""


class ContextTooLargeError(GravityError):
    """Composed prompt exceeds the principal's context budget."""


class CredentialDecryptError(GravityError):
    """Stored provider key could not be decrypted."""


class DatabaseError(GravityError):
    """Database layer failure."""
