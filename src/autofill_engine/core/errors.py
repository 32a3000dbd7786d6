"""Error taxonomy, exception hierarchy and retry dispositions."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ErrorKind(str, Enum):
    """Classified failure kinds for a single URL job."""
    NETWORK_ERROR = "network_error"
    FORM_NOT_FOUND = "form_not_found"
    FIELD_NOT_FOUND = "field_not_found"
    VALIDATION_FAILED = "validation_failed"
    CAPTCHA_FAILED = "captcha_failed"
    TIMEOUT_ERROR = "timeout_error"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTHENTICATION_FAILED = "authentication_failed"
    SYSTEM_RESOURCE_ERROR = "system_resource_error"
    UNKNOWN_ERROR = "unknown_error"


class Severity(str, Enum):
    """Error severity levels."""
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class ErrorDisposition:
    """How the engine treats a given error kind."""
    retryable: bool
    severity: Severity
    remediation: Tuple[str, ...]


DISPOSITIONS: Dict[ErrorKind, ErrorDisposition] = {
    ErrorKind.NETWORK_ERROR: ErrorDisposition(
        retryable=True,
        severity=Severity.MEDIUM,
        remediation=(
            "Check your internet connection",
            "Verify the website URL is correct",
            "Try again in a few minutes",
            "The website might be temporarily down",
        ),
    ),
    ErrorKind.FORM_NOT_FOUND: ErrorDisposition(
        retryable=False,
        severity=Severity.HIGH,
        remediation=(
            "Verify the URL contains a form",
            "The website structure might have changed",
            "Try training a new template for this site",
            "Check if the form selectors need updating",
        ),
    ),
    ErrorKind.FIELD_NOT_FOUND: ErrorDisposition(
        retryable=False,
        severity=Severity.MEDIUM,
        remediation=(
            "The form fields might have changed",
            "Update the template selectors",
            "Retrain the template for this website",
            "Verify field names and IDs are correct",
        ),
    ),
    ErrorKind.VALIDATION_FAILED: ErrorDisposition(
        retryable=False,
        severity=Severity.MEDIUM,
        remediation=(
            "Check your profile data format",
            "Verify required fields are filled",
            "Check the website's validation rules",
            "Update profile data to match form requirements",
        ),
    ),
    ErrorKind.CAPTCHA_FAILED: ErrorDisposition(
        retryable=False,
        severity=Severity.MEDIUM,
        remediation=(
            "Check the CAPTCHA solver configuration",
            "Verify solver API keys are valid",
            "Try an alternative CAPTCHA solver",
            "Consider handling the CAPTCHA manually",
        ),
    ),
    ErrorKind.TIMEOUT_ERROR: ErrorDisposition(
        retryable=True,
        severity=Severity.MEDIUM,
        remediation=(
            "Increase the timeout setting",
            "Check the website response time",
            "Reduce concurrent executions",
            "Verify system resources are sufficient",
        ),
    ),
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorDisposition(
        retryable=True,
        severity=Severity.HIGH,
        remediation=(
            "Reduce execution frequency",
            "Add delays between requests",
            "Use different IP addresses",
            "Contact the website administrator",
        ),
    ),
    ErrorKind.AUTHENTICATION_FAILED: ErrorDisposition(
        retryable=False,
        severity=Severity.HIGH,
        remediation=(
            "Verify the site does not require a login for this form",
            "Check stored credentials for the site",
        ),
    ),
    ErrorKind.SYSTEM_RESOURCE_ERROR: ErrorDisposition(
        retryable=False,
        severity=Severity.CRITICAL,
        remediation=(
            "Reduce concurrent executions",
            "Verify system resources are sufficient",
            "Check that the browser can be launched on this host",
        ),
    ),
    ErrorKind.UNKNOWN_ERROR: ErrorDisposition(
        retryable=False,
        severity=Severity.MEDIUM,
        remediation=(
            "Check the logs for more details",
            "Try the operation again",
            "Contact support if the problem persists",
            "Update to the latest version",
        ),
    ),
}

# Message fragments used to classify exceptions raised by third-party code
_MESSAGE_PATTERNS: List[Tuple[str, ErrorKind]] = [
    ("timeout", ErrorKind.TIMEOUT_ERROR),
    ("timed out", ErrorKind.TIMEOUT_ERROR),
    ("net::err", ErrorKind.NETWORK_ERROR),
    ("connection", ErrorKind.NETWORK_ERROR),
    ("network", ErrorKind.NETWORK_ERROR),
    ("dns", ErrorKind.NETWORK_ERROR),
    ("429", ErrorKind.RATE_LIMIT_EXCEEDED),
    ("too many requests", ErrorKind.RATE_LIMIT_EXCEEDED),
    ("rate limit", ErrorKind.RATE_LIMIT_EXCEEDED),
    ("captcha", ErrorKind.CAPTCHA_FAILED),
]


def is_retryable(kind: ErrorKind, captcha_solver: bool = False) -> bool:
    """Return whether a failure of ``kind`` should be retried."""
    if kind is ErrorKind.CAPTCHA_FAILED:
        return captcha_solver
    return DISPOSITIONS[kind].retryable


def severity_of(kind: ErrorKind) -> Severity:
    """Default severity for an error kind."""
    return DISPOSITIONS[kind].severity


def remediation_for(kind: ErrorKind) -> List[str]:
    """Human-readable recovery suggestions for an error kind."""
    return list(DISPOSITIONS[kind].remediation)


class AutofillError(Exception):
    """Base class for classified job failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN_ERROR

    def __init__(self, message: str = "", url: Optional[str] = None, kind: Optional[ErrorKind] = None):
        super().__init__(message or self.kind.value)
        if kind is not None:
            self.kind = kind
        self.message = message or self.kind.value
        self.url = url

    @property
    def severity(self) -> Severity:
        return severity_of(self.kind)


class NetworkError(AutofillError):
    kind = ErrorKind.NETWORK_ERROR


class FormNotFoundError(AutofillError):
    kind = ErrorKind.FORM_NOT_FOUND


class FieldNotFoundError(AutofillError):
    kind = ErrorKind.FIELD_NOT_FOUND


class ValidationFailedError(AutofillError):
    kind = ErrorKind.VALIDATION_FAILED


class CaptchaError(AutofillError):
    kind = ErrorKind.CAPTCHA_FAILED


class JobTimeoutError(AutofillError):
    kind = ErrorKind.TIMEOUT_ERROR


class RateLimitError(AutofillError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED


class AuthenticationError(AutofillError):
    kind = ErrorKind.AUTHENTICATION_FAILED


class SystemResourceError(AutofillError):
    """Resource failures that abort the whole session."""
    kind = ErrorKind.SYSTEM_RESOURCE_ERROR


class PoolAcquireTimeout(SystemResourceError):
    """No browser slot became available within the acquire ceiling."""


class PoolClosedError(SystemResourceError):
    """The browser pool has been closed."""


class JobCancelled(Exception):
    """Raised inside a job when its session is being cancelled."""


class InvalidTransitionError(Exception):
    """A session command is not legal in the session's current state."""

    def __init__(self, current, target):
        super().__init__(f"Invalid session transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class ProfileNotFoundError(LookupError):
    """The profile store has no profile with the requested identifier."""


class ConfigurationError(ValueError):
    """Invalid execution configuration."""


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Map an exception to an error kind.

    Classified engine errors keep their kind. Foreign exceptions are matched
    by type first and then by message fragments.

    Args:
        exc: Exception raised while running a job

    Returns:
        The error kind, ``UNKNOWN_ERROR`` when nothing matches
    """
    if isinstance(exc, AutofillError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ErrorKind.TIMEOUT_ERROR
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.NETWORK_ERROR

    message = str(exc).lower()
    for fragment, kind in _MESSAGE_PATTERNS:
        if fragment in message:
            return kind
    return ErrorKind.UNKNOWN_ERROR
