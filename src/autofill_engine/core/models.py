"""Core data models for the autofill engine."""

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from autofill_engine.core.errors import (
    ConfigurationError,
    ErrorKind,
    InvalidTransitionError,
    Severity,
    remediation_for,
    severity_of,
)


class FormType(str, Enum):
    """Form type classification."""
    REGISTRATION = "registration"
    LOGIN = "login"
    CONTACT = "contact"
    CHECKOUT = "checkout"
    PROFILE = "profile"
    SURVEY = "survey"
    UNKNOWN = "unknown"


class LabelSource(str, Enum):
    """Where a detected field's label came from."""
    LABEL_FOR = "label_for"
    PARENT_LABEL = "parent_label"
    NEARBY_TEXT = "nearby_text"
    PLACEHOLDER = "placeholder"
    ARIA = "aria"
    NONE = "none"


class SessionStatus(str, Enum):
    """Execution session status."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ResultStatus(str, Enum):
    """Outcome of a single URL job."""
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"
    SKIPPED = "skipped"


class BackoffStrategy(str, Enum):
    """Retry delay growth."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# Legal session status edges
ALLOWED_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.RUNNING}),
    SessionStatus.RUNNING: frozenset({
        SessionStatus.PAUSED,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CANCELLED,
    }),
    SessionStatus.PAUSED: frozenset({SessionStatus.RUNNING, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
})


class Address(BaseModel):
    """Postal address."""
    model_config = ConfigDict(frozen=True)

    street1: str = Field("", description="Street address line 1")
    street2: str = Field("", description="Street address line 2")
    city: str = Field("", description="City")
    state: str = Field("", description="State or province")
    postal_code: str = Field("", description="Postal or ZIP code")
    country: str = Field("", description="Country")


class Profile(BaseModel):
    """A named bundle of personal data used to fill forms."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid4()), description="Profile identifier")
    name: str = Field(..., description="Profile name")
    first_name: str = Field("", description="First name")
    last_name: str = Field("", description="Last name")
    email: str = Field("", description="Email address")
    phone: str = Field("", description="Phone number")
    address: Address = Field(default_factory=Address, description="Postal address")
    date_of_birth: str = Field("", description="Date of birth (YYYY-MM-DD)")
    custom_fields: Dict[str, str] = Field(default_factory=dict, description="Free-form fields")
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def full_name(self) -> str:
        return " ".join(part.strip() for part in (self.first_name, self.last_name) if part.strip())

    def validate_required(self) -> List[str]:
        """Return the names of required values that are missing."""
        missing = []
        for attr in ("name", "first_name", "last_name", "email"):
            if not getattr(self, attr).strip():
                missing.append(attr)
        return missing


class FormField(BaseModel):
    """A field descriptor, either detected or part of a template."""
    name: str = Field(..., description="Field name attribute (or synthesized key)")
    field_type: str = Field("text", description="Declared control type")
    label: str = Field("", description="Human-readable label")
    selector: str = Field("", description="CSS selector for the control")
    required: bool = Field(False, description="Whether the field is required")
    validation_pattern: Optional[str] = Field(None, description="HTML pattern attribute")
    placeholder: str = Field("", description="Placeholder text")
    options: List[str] = Field(default_factory=list, description="Option values for select controls")


class DetectedField(FormField):
    """A field found on a live page."""
    label_source: LabelSource = Field(LabelSource.NONE, description="Label classification")
    has_name: bool = Field(False, description="Whether the control carries a name attribute")


class SubmitControl(BaseModel):
    """A discoverable submit control."""
    text: str = Field("", description="Visible text or value")
    selector: str = Field(..., description="CSS selector for the control")
    control_type: str = Field("submit", description="Element tag and type")


class DetectedForm(BaseModel):
    """A form found on a page, with classification and confidence."""
    index: int = Field(..., description="Position of the container in document order")
    selector: str = Field(..., description="CSS selector for the container")
    fields: List[DetectedField] = Field(default_factory=list)
    submit_controls: List[SubmitControl] = Field(default_factory=list)
    form_type: FormType = Field(FormType.UNKNOWN)
    confidence: float = Field(0.0, ge=0, le=100)
    action: str = Field("", description="Form action attribute")
    method: str = Field("get", description="Form method attribute")

    @property
    def submit_selector(self) -> Optional[str]:
        return self.submit_controls[0].selector if self.submit_controls else None


class FormTemplate(BaseModel):
    """A learned, durable description of one site's form."""
    id: str = Field(..., description="Template identifier")
    url: str = Field(..., description="URL the template was learned from")
    domain: str = Field("", description="Host the template applies to")
    form_type: FormType = Field(FormType.UNKNOWN)
    fields: List[FormField] = Field(default_factory=list, description="Ordered field descriptors")
    selectors: Dict[str, str] = Field(default_factory=dict, description="Field name to selector")
    submit_selector: Optional[str] = Field(None)
    success_rate: float = Field(0.0, ge=0, le=100)
    use_count: int = Field(0, ge=0)
    version: int = Field(1, ge=1)
    updated_at: datetime = Field(default_factory=datetime.now)

    def model_post_init(self, __context: Any) -> None:
        if not self.domain:
            self.domain = urlparse(self.url).netloc.lower()

    def selector_for(self, form_field: FormField) -> str:
        return self.selectors.get(form_field.name) or form_field.selector


class FieldMapping(BaseModel):
    """A profile value bound to one field for one fill attempt."""
    field_name: str
    value: str
    category: str = Field(..., description="Semantic category or special-case name")
    source: str = Field(..., description="What matched: type, name, label, special, custom")
    confidence: float = Field(..., ge=0, le=100)


class MappingResult(BaseModel):
    """Mapper output for a list of fields."""
    mapping: Dict[str, str] = Field(default_factory=dict)
    unmapped: List[str] = Field(default_factory=list)
    bindings: List[FieldMapping] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0, le=100)


class ExecutionConfig(BaseModel):
    """Per-session execution configuration."""
    max_concurrency: int = Field(2, ge=1, description="Upper bound on simultaneous jobs")
    timeout: float = Field(30.0, gt=0, description="Per-attempt job deadline in seconds")
    retry_attempts: int = Field(3, ge=0, description="Extra attempts for retryable failures")
    retry_backoff: BackoffStrategy = Field(BackoffStrategy.FIXED)
    retry_base_delay: float = Field(1.0, ge=0)
    delay_between_jobs: float = Field(1.0, ge=0, description="Delay before each dispatch after the first")
    headless: bool = Field(True)
    take_screenshots: bool = Field(False)
    screenshot_dir: str = Field("./data/screenshots")
    settle_delay: float = Field(1.0, ge=0, description="Wait after submit before verifying")
    pool_acquire_timeout: float = Field(120.0, gt=0, description="Hard ceiling on waiting for a slot")
    cancel_grace_period: float = Field(5.0, ge=0)
    auto_adjust_limits: bool = Field(False)
    fail_on_url_failure: bool = Field(False)
    captcha_solver: bool = Field(False, description="Whether a CAPTCHA solver is available")

    @classmethod
    def from_settings(cls, app_settings, capability=None, **overrides: Any) -> "ExecutionConfig":
        """
        Build a config from application settings.

        The scanner recommendation is the concurrency default; an explicit
        setting or override wins over it.
        """
        if app_settings.retry_backoff not in {b.value for b in BackoffStrategy}:
            raise ConfigurationError(f"Unknown retry backoff: {app_settings.retry_backoff}")

        concurrency = app_settings.max_concurrency
        if concurrency is None:
            concurrency = capability.optimal_concurrency if capability else 2

        values = dict(
            max_concurrency=concurrency,
            timeout=app_settings.job_timeout,
            retry_attempts=app_settings.retry_attempts,
            retry_backoff=BackoffStrategy(app_settings.retry_backoff),
            retry_base_delay=app_settings.retry_base_delay,
            delay_between_jobs=app_settings.delay_between_jobs,
            headless=app_settings.browser_headless,
            take_screenshots=app_settings.take_screenshots,
            screenshot_dir=app_settings.screenshot_dir,
            settle_delay=app_settings.settle_delay,
            pool_acquire_timeout=app_settings.pool_acquire_timeout,
            cancel_grace_period=app_settings.cancel_grace_period,
            auto_adjust_limits=app_settings.auto_adjust_limits,
            fail_on_url_failure=app_settings.fail_on_url_failure,
            captcha_solver=app_settings.captcha_solver_enabled,
        )
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class Progress(BaseModel):
    """Point-in-time progress of a session."""
    total: int = Field(0, ge=0)
    completed: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)
    in_flight: int = Field(0, ge=0)
    current_url: Optional[str] = None
    percentage: float = Field(0.0, ge=0, le=100)
    success_rate: float = Field(0.0, ge=0, le=100)

    @property
    def finished(self) -> int:
        return self.completed + self.failed + self.skipped


class ExecutionResult(BaseModel):
    """Outcome of one URL job."""
    url: str
    status: ResultStatus
    filled_fields: int = Field(0, ge=0)
    total_fields: int = Field(0, ge=0)
    duration: float = Field(0.0, ge=0, description="Seconds spent on the job")
    attempts: int = Field(0, ge=0)
    error_message: Optional[str] = None
    screenshot_path: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now)


class ExecutionError(BaseModel):
    """A classified job failure."""
    timestamp: datetime = Field(default_factory=datetime.now)
    url: str
    kind: ErrorKind
    severity: Severity
    message: str
    attempt: int = Field(1, ge=1)
    remediation: List[str] = Field(default_factory=list)

    @classmethod
    def create(cls, url: str, kind: ErrorKind, message: str, attempt: int = 1) -> "ExecutionError":
        return cls(
            url=url,
            kind=kind,
            severity=severity_of(kind),
            message=message,
            attempt=attempt,
            remediation=remediation_for(kind),
        )


class SystemCapabilitySpec(BaseModel):
    """Host capability scan output."""
    cpu_cores: int = Field(..., ge=1)
    cpu_threads: int = Field(..., ge=1)
    memory_total_mb: int = Field(0, ge=0)
    memory_available_mb: int = Field(0, ge=0)
    optimal_concurrency: int = Field(..., ge=1)
    max_concurrency: int = Field(..., ge=1)
    operating_system: str = Field("")
    degraded: bool = Field(False, description="Host introspection failed; values are defaults")
    scanned_at: datetime = Field(default_factory=datetime.now)


class SubmissionResult(BaseModel):
    """Verifier output for one submission."""
    success: bool
    navigated: bool = False
    redirect_url: Optional[str] = None
    title_signal: Optional[str] = Field(None, description="'success', 'error' or None")
    success_indicators: List[str] = Field(default_factory=list)
    error_indicators: List[str] = Field(default_factory=list)

    @field_validator("title_signal")
    @classmethod
    def _check_title_signal(cls, value: Optional[str]) -> Optional[str]:
        if value not in (None, "success", "error"):
            raise ValueError("title_signal must be 'success', 'error' or None")
        return value


@dataclass
class ExecutionSession:
    """
    One scheduled run of a profile against a list of URLs.

    All mutation of status, progress, results and errors goes through the
    methods below, which hold the session lock. The runtime fields at the
    bottom are owned by the scheduler driving this session.
    """
    profile: Profile
    urls: List[str]
    config: ExecutionConfig
    templates: Dict[str, FormTemplate] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    status: SessionStatus = SessionStatus.PENDING
    progress: Progress = field(default_factory=Progress)
    results: List[ExecutionResult] = field(default_factory=list)
    errors: List[ExecutionError] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    # Runtime state
    next_index: int = 0
    tasks: Set[asyncio.Task] = field(default_factory=set, repr=False)
    dispatcher: Optional[asyncio.Task] = field(default=None, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _cancel_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _resume_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _done_event: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    _in_flight: Set[int] = field(default_factory=set, repr=False)
    _terminal: Set[int] = field(default_factory=set, repr=False)
    leases: Dict[int, Any] = field(default_factory=dict, repr=False)
    finalized: bool = field(default=False, repr=False)

    def __post_init__(self) -> None:
        self.urls = list(self.urls)
        self.progress = Progress(total=len(self.urls))

    # State machine

    def transition(self, target: SessionStatus) -> SessionStatus:
        """Move to ``target`` along a legal edge and return the previous status."""
        with self._lock:
            return self._transition_locked(target)

    def _transition_locked(self, target: SessionStatus) -> SessionStatus:
        current = self.status
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current, target)

        self.status = target
        if target is SessionStatus.RUNNING:
            if self.start_time is None:
                self.start_time = datetime.now()
            self._resume_event.set()
        elif target is SessionStatus.PAUSED:
            self._resume_event.clear()
        elif target in TERMINAL_STATUSES:
            self.end_time = datetime.now()
            if target is SessionStatus.CANCELLED:
                self._cancel_event.set()
            # Wake a dispatcher parked on pause
            self._resume_event.set()
        return current

    def try_finish(self) -> Optional[SessionStatus]:
        """
        Close a running session whose URLs all have terminal results.

        Returns:
            The terminal status entered, or None if the session is not done
        """
        with self._lock:
            if self.status is not SessionStatus.RUNNING:
                return None
            if len(self._terminal) < len(self.urls):
                return None
            if self.config.fail_on_url_failure and self.progress.failed:
                target = SessionStatus.FAILED
            else:
                target = SessionStatus.COMPLETED
            self._transition_locked(target)
            return target

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    @property
    def cancel_event(self) -> asyncio.Event:
        return self._cancel_event

    async def wait_until_resumed(self) -> None:
        await self._resume_event.wait()

    async def wait_done(self) -> None:
        await self._done_event.wait()

    def mark_done(self) -> None:
        self._done_event.set()

    # Progress accounting

    def claim_next(self) -> Optional[int]:
        """Claim the next undispatched URL index, or None when exhausted."""
        with self._lock:
            if self.next_index >= len(self.urls):
                return None
            index = self.next_index
            self.next_index += 1
            self._in_flight.add(index)
            self.progress.in_flight = len(self._in_flight)
            self.progress.current_url = self.urls[index]
            return index

    def record(
        self,
        index: int,
        result: ExecutionResult,
        error: Optional[ExecutionError] = None,
    ) -> bool:
        """
        Append a terminal result (and its error) for one URL.

        Results, errors and progress are updated in one critical section.
        A second result for the same URL index is ignored.

        Returns:
            True if the result was recorded
        """
        with self._lock:
            if index in self._terminal:
                return False
            self._terminal.add(index)
            self._in_flight.discard(index)

            self.results.append(result)
            if error is not None:
                self.errors.append(error)

            progress = self.progress
            if result.status in (ResultStatus.SUCCESS, ResultStatus.PARTIAL):
                progress.completed += 1
            elif result.status is ResultStatus.FAILURE:
                progress.failed += 1
            else:
                progress.skipped += 1

            progress.in_flight = len(self._in_flight)
            if progress.total:
                progress.percentage = round(progress.finished / progress.total * 100, 2)
            successes = sum(1 for r in self.results if r.status is ResultStatus.SUCCESS)
            progress.success_rate = round(successes / len(self.results) * 100, 2)
            return True

    def record_error(self, error: ExecutionError) -> None:
        """Append a session-level error that is not tied to a URL result."""
        with self._lock:
            self.errors.append(error)

    def skip_remaining(self, reason: str) -> int:
        """Record every undispatched URL as skipped and return how many."""
        with self._lock:
            remaining = list(range(self.next_index, len(self.urls)))
            self.next_index = len(self.urls)
        for index in remaining:
            self.record(
                index,
                ExecutionResult(url=self.urls[index], status=ResultStatus.SKIPPED, error_message=reason),
            )
        return len(remaining)

    def abandon_in_flight(self, reason: str) -> int:
        """Record dispatched URLs that never reported a result as skipped."""
        with self._lock:
            abandoned = sorted(self._in_flight - self._terminal)
        for index in abandoned:
            self.record(
                index,
                ExecutionResult(url=self.urls[index], status=ResultStatus.SKIPPED, error_message=reason),
            )
        return len(abandoned)

    @property
    def all_terminal(self) -> bool:
        with self._lock:
            return len(self._terminal) == len(self.urls)

    def snapshot(self) -> Progress:
        """Copy of the current progress, safe to call from any thread."""
        with self._lock:
            return self.progress.model_copy()

    @property
    def duration(self) -> float:
        if self.start_time is None:
            return 0.0
        end = self.end_time or datetime.now()
        return (end - self.start_time).total_seconds()

    @property
    def success_rate(self) -> float:
        with self._lock:
            return self.progress.success_rate
