"""Shared exception types for the rebalancing control loop."""

from enum import Enum
from typing import Optional


class FailureCategory(str, Enum):
    """How a failed submission should be treated by the retry policy."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class StateReadError(RuntimeError):
    """Raised when a vault or circuit-breaker read fails partially or fully."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class SubmissionError(RuntimeError):
    """
    Raised by a submitter; carries a structured failure category.

    key_spent is set when the signing service settled a transaction for the
    operation's idempotency key (e.g. FAILED/STUCK): resubmitting under the
    same key would only return that dead transaction again.
    """

    def __init__(self, message: str, category: FailureCategory = FailureCategory.UNKNOWN,
                 original: Optional[Exception] = None, key_spent: bool = False):
        super().__init__(message)
        self.category = category
        self.original = original
        self.key_spent = key_spent

    @property
    def is_permanent(self) -> bool:
        return self.category is FailureCategory.PERMANENT


class ConfigValidationError(ValueError):
    """Startup configuration is invalid; carries every problem found."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"Invalid configuration: {len(self.errors)} error(s) found")


def category_for_status(status_code: int) -> FailureCategory:
    """Failure category for an HTTP status returned by a remote service."""
    if status_code == 429 or status_code >= 500:
        return FailureCategory.TRANSIENT
    if status_code in (401, 403):
        return FailureCategory.PERMANENT
    return FailureCategory.UNKNOWN
