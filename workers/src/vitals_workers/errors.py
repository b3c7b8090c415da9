"""Error taxonomy for the ingestion pipeline.

Two kinds of outcome matter to the job queue: an empty result (valid no-op,
e.g. no eligible job or no observations extracted) and an error result. Errors
split further into retryable (anything not listed here) and non-retryable
validation failures.
"""

from __future__ import annotations


class JobValidationError(ValueError):
    """Job payload or type cannot be processed; retrying will not help."""

    def __init__(self, message: str, *, code: str = "validation_error", field: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.field = field


class TerraApiError(Exception):
    """Vendor API request failed after the client's own retries."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.status_code is None or self.status_code == 429 or self.status_code >= 500


class SignatureError(ValueError):
    """Inbound webhook signature is missing, malformed, or does not match."""


def is_retryable(exc: BaseException) -> bool:
    """Whether a handler failure should count toward retry instead of failing terminally."""
    if isinstance(exc, JobValidationError):
        return False
    if isinstance(exc, TerraApiError):
        return exc.retryable
    return True
