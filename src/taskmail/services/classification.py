"""Retryable vs. permanent classification of delivery failures.

Every failure raised by a delivery client goes through exactly one
classifier before the dispatcher decides between a retry and a permanent
failure. Classifiers are plain callables so each delivery integration can
supply the rules that match its provider's status codes and error names.

Default rules (HTTP email APIs):
- A named validation-type category is permanent whatever the status code
- No status code at all (network failure, timeout) is retryable
- 4xx is permanent, except the rate-limit status (429)
- 429 and 5xx are retryable
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum

# last_error is free text, but one provider response should not fill a page
MAX_ERROR_LENGTH = 2000

RATE_LIMIT_STATUS = 429

# Provider error names that signal a defect in the message itself
DEFAULT_PERMANENT_CATEGORIES = frozenset(
    {
        "validation_error",
        "missing_required_field",
        "invalid_parameter",
        "invalid_from_address",
        "invalid_to_address",
        "invalid_attachment",
    }
)


class ErrorClass(str, Enum):
    """Outcome class of a failed delivery attempt."""

    RETRYABLE = "retryable"
    PERMANENT = "permanent"


class DeliveryError(Exception):
    """Raised by delivery clients when a message could not be handed over.

    Attributes:
        message: Provider's description of the failure.
        status_code: Provider status/reply code, if one was returned.
        category: Provider's named error category, if one was returned.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        category: str | None = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.category = category
        super().__init__(message)

    def __str__(self) -> str:
        details = []
        if self.status_code is not None:
            details.append(str(self.status_code))
        if self.category:
            details.append(str(self.category))
        if details:
            return f"{self.message} ({', '.join(details)})"
        return self.message


class DeliveryConfigurationError(DeliveryError):
    """Raised when a delivery client is misconfigured."""

    pass


ErrorClassifier = Callable[[BaseException], ErrorClass]


def extract_status_code(error: BaseException) -> int | None:
    """Status code carried by an error, if any.

    Foreign exceptions are inspected for ``status_code`` or ``status``
    attributes, which most HTTP client libraries set.
    """
    for attribute in ("status_code", "status"):
        value = getattr(error, attribute, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


class StatusCodeClassifier:
    """Classifier for HTTP-style provider errors.

    Args:
        rate_limit_status: Status that means "slow down" and is retried.
        permanent_categories: Error names that are never retried.
    """

    def __init__(
        self,
        rate_limit_status: int = RATE_LIMIT_STATUS,
        permanent_categories: frozenset[str] = DEFAULT_PERMANENT_CATEGORIES,
    ) -> None:
        self.rate_limit_status = rate_limit_status
        self.permanent_categories = permanent_categories

    def __call__(self, error: BaseException) -> ErrorClass:
        category = getattr(error, "category", None)
        if isinstance(category, str) and category in self.permanent_categories:
            return ErrorClass.PERMANENT

        status_code = extract_status_code(error)
        if not status_code:
            return ErrorClass.RETRYABLE

        if 400 <= status_code < 500 and status_code != self.rate_limit_status:
            return ErrorClass.PERMANENT

        return ErrorClass.RETRYABLE


default_classifier = StatusCodeClassifier()


def describe_error(error: BaseException) -> str:
    """Text stored in last_error for an attempt that failed with ``error``."""
    text = str(error)
    if not text:
        text = type(error).__name__
    elif not isinstance(error, DeliveryError):
        text = f"{type(error).__name__}: {text}"
    if len(text) > MAX_ERROR_LENGTH:
        text = text[: MAX_ERROR_LENGTH - 3] + "..."
    return text
