"""Referral pipeline exceptions. Mapped to HTTP status codes in app.main."""
from __future__ import annotations


class ReferralError(Exception):
    """Base class for referral pipeline errors."""


class NotFoundError(ReferralError):
    """Record missing or owned by another practice. The two cases are never distinguished."""

    def __init__(self, what: str = "Referral document"):
        super().__init__(f"{what} not found")
        self.what = what


class InvalidStateError(ReferralError):
    """Operation attempted against a record whose state does not permit it."""

    def __init__(self, operation: str, required: str, actual: str):
        super().__init__(f"Cannot {operation}: requires status {required}, document is {actual}")
        self.operation = operation
        self.required = required
        self.actual = actual


class ValidationError(ReferralError):
    """Malformed or missing input."""


class ExtractionFailure(ReferralError):
    """Collaborator error, timeout or unparseable output. Recorded on the document, never raised over HTTP."""

    def __init__(self, message: str, error_type: str = "llm_failure", details: dict | None = None):
        super().__init__(message)
        self.error_type = error_type
        self.details = details or {}


class TransactionFailure(ReferralError):
    """Apply commit aborted; every partial write has been rolled back."""


class RateLimitExceeded(ReferralError):
    def __init__(self, retry_after: int):
        super().__init__(f"Rate limit exceeded, retry in {retry_after}s")
        self.retry_after = retry_after
