"""A single URL form-fill job with per-attempt deadline and retry."""

import asyncio
import time
from pathlib import Path
from typing import List, Optional, Tuple

from autofill_engine.browser.driver import BrowserDriver, CaptchaSolver, PageSnapshot
from autofill_engine.core.errors import (
    AutofillError,
    CaptchaError,
    ErrorKind,
    FieldNotFoundError,
    FormNotFoundError,
    JobCancelled,
    ValidationFailedError,
    classify_exception,
)
from autofill_engine.core.models import (
    ExecutionError,
    ExecutionResult,
    ExecutionSession,
    FormField,
    FormTemplate,
)
from autofill_engine.execution.aggregator import ResultAggregator
from autofill_engine.execution.events import EventBus, EventType, SessionEvent
from autofill_engine.execution.retry import RetryPolicy
from autofill_engine.forms.detector import FormDetector, detect_captcha
from autofill_engine.forms.mapper import FieldMapper
from autofill_engine.forms.templates import TemplateStore, template_from_form, template_matches
from autofill_engine.forms.verifier import SubmissionVerifier
from autofill_engine.utils.logging import get_logger, session_context

logger = get_logger(__name__)

# Tried in order when neither the template nor detection found a submit control
SUBMIT_FALLBACK_SELECTORS = (
    "input[type='submit']",
    "button[type='submit']",
    "button:has-text('Submit')",
    "button:has-text('Send')",
    "button:has-text('Continue')",
    "input[value*='Submit']",
    "input[value*='Send']",
)

JobOutcome = Tuple[ExecutionResult, Optional[ExecutionError]]


class FormFillJob:
    """
    Fills and submits the form at one URL of a session.

    Steps per attempt: navigate, CAPTCHA check, template lookup or live
    detection, mapping, fill, submit, verify. Every attempt runs under the
    session's per-job timeout. Classified failures are retried according to
    the retry policy; whatever happens, ``run`` returns a terminal result
    instead of raising.
    """

    def __init__(
        self,
        session: ExecutionSession,
        index: int,
        driver: BrowserDriver,
        detector: FormDetector,
        mapper: FieldMapper,
        verifier: SubmissionVerifier,
        aggregator: ResultAggregator,
        retry_policy: RetryPolicy,
        template_store: Optional[TemplateStore] = None,
        captcha_solver: Optional[CaptchaSolver] = None,
        events: Optional[EventBus] = None,
        learn_templates: bool = True,
    ):
        self.session = session
        self.index = index
        self.url = session.urls[index]
        self.driver = driver
        self.detector = detector
        self.mapper = mapper
        self.verifier = verifier
        self.aggregator = aggregator
        self.retry_policy = retry_policy
        self.template_store = template_store
        self.captcha_solver = captcha_solver
        self.events = events
        self.learn_templates = learn_templates
        self.logger = logger.bind(component="form_fill_job", **session_context(session.id, url=self.url, index=index))

        self.attempts = 0
        self.filled_fields = 0
        self.total_fields = 0
        self.mapped_fields = 0
        self.warnings: List[str] = []

    @property
    def config(self):
        return self.session.config

    async def run(self) -> JobOutcome:
        """Run attempts until success, a terminal failure or cancellation."""
        started = time.monotonic()
        self._emit(EventType.JOB_STARTED)

        while True:
            if self.session.cancel_requested:
                return self._cancelled(started), None

            self.attempts += 1
            try:
                result = await asyncio.wait_for(self._attempt(started), timeout=self.config.timeout)
                self.logger.info(
                    "Job finished",
                    status=result.status.value,
                    filled_fields=result.filled_fields,
                    total_fields=result.total_fields,
                    attempts=self.attempts,
                )
                return result, None
            except JobCancelled:
                return self._cancelled(started), None
            except asyncio.TimeoutError:
                kind = ErrorKind.TIMEOUT_ERROR
                message = f"Job exceeded {self.config.timeout}s deadline"
            except AutofillError as e:
                kind = e.kind
                message = e.message
            except Exception as e:
                kind = classify_exception(e)
                message = f"{type(e).__name__}: {e}"

            if self.retry_policy.should_retry(kind, self.attempts):
                delay = self.retry_policy.delay(self.attempts, kind)
                self.logger.warning(
                    "Job attempt failed, retrying",
                    attempt=self.attempts,
                    error_kind=kind.value,
                    error=message,
                    delay=delay,
                )
                self._emit(EventType.JOB_RETRYING, attempt=self.attempts, error_kind=kind.value)
                if not await self.retry_policy.sleep(self.attempts, kind, self.session.cancel_event):
                    return self._cancelled(started), None
                continue

            self.logger.error("Job failed", attempt=self.attempts, error_kind=kind.value, error=message)
            screenshot = await self._screenshot("failed")
            result = self.aggregator.failure_result(
                self.url,
                message,
                duration=time.monotonic() - started,
                attempts=self.attempts,
                filled_fields=self.filled_fields,
                total_fields=self.total_fields,
                screenshot_path=screenshot,
            )
            return result, ExecutionError.create(self.url, kind, message, attempt=self.attempts)

    async def _attempt(self, started: float) -> ExecutionResult:
        self.filled_fields = 0
        self.total_fields = 0
        self.mapped_fields = 0

        before = await self.driver.navigate(self.url, timeout=self.config.timeout)
        before = await self._handle_captcha(before)
        self._check_cancel()

        template = self._find_template()
        form = None
        if template is None:
            form = self.detector.best_form(before)
            if form is None:
                template = self._site_template(before)
                if template is None:
                    raise FormNotFoundError(f"No form detected on {self.url}", url=self.url)
                self.logger.info("No form detected, using same-site template", template_id=template.id)

        if template is not None:
            fields = list(template.fields)
            submit_selector = template.submit_selector
            selector_for = template.selector_for
        else:
            fields = list(form.fields)
            submit_selector = form.submit_selector
            selector_for = _own_selector
            if self.learn_templates and self.template_store is not None:
                template = self.template_store.save(template_from_form(form, self.url))

        self.total_fields = len(fields)
        mapping = self.mapper.resolve(self.session.profile, fields)
        self.mapped_fields = len(mapping.mapping)
        self.warnings = self.mapper.validate(mapping.mapping, fields)
        if self.warnings:
            self.logger.info("Mapping warnings", warnings=self.warnings, confidence=mapping.confidence)

        for form_field in fields:
            value = mapping.mapping.get(form_field.name)
            if value is None:
                continue
            self._check_cancel()
            try:
                await self.driver.fill_field(selector_for(form_field), value, form_field.field_type)
            except FieldNotFoundError:
                if form_field.required:
                    raise FieldNotFoundError(f"Required field not found: {form_field.name}", url=self.url)
                self.logger.debug("Optional field not found", field=form_field.name)
                continue
            self.filled_fields += 1

        self._check_cancel()
        await self._submit(submit_selector)
        if self.config.settle_delay:
            await asyncio.sleep(self.config.settle_delay)

        after = await self.driver.snapshot()
        submission = self.verifier.verify(before, after)
        if template is not None and self.template_store is not None:
            self.template_store.record_outcome(template.id, submission.success)

        if not submission.success:
            reason = "; ".join(submission.error_indicators) or "No success signal after submission"
            raise ValidationFailedError(f"Submission not accepted: {reason}", url=self.url)

        return self.aggregator.to_result(
            self.url,
            submission,
            filled_fields=self.filled_fields,
            total_fields=self.total_fields,
            mapped_fields=self.mapped_fields,
            duration=time.monotonic() - started,
            attempts=self.attempts,
            screenshot_path=await self._screenshot("done"),
        )

    async def _handle_captcha(self, snapshot: PageSnapshot) -> PageSnapshot:
        provider = detect_captcha(snapshot)
        if provider is None:
            return snapshot
        if self.captcha_solver is None:
            raise CaptchaError(f"{provider} challenge present and no solver configured", url=self.url)

        self.logger.info("Solving CAPTCHA", provider=provider)
        if not await self.captcha_solver.solve(self.driver, snapshot):
            raise CaptchaError(f"{provider} challenge could not be solved", url=self.url)
        return await self.driver.snapshot()

    def _find_template(self) -> Optional[FormTemplate]:
        template = self.session.templates.get(self.url)
        if template is None and self.template_store is not None:
            template = self.template_store.find_for_url(self.url)
        return template

    def _site_template(self, snapshot: PageSnapshot) -> Optional[FormTemplate]:
        if self.template_store is None:
            return None
        template = self.template_store.find_best(self.url)
        if template is None or not template_matches(template, snapshot.html):
            return None
        return template

    async def _submit(self, selector: Optional[str]) -> None:
        candidates = ([selector] if selector else []) + list(SUBMIT_FALLBACK_SELECTORS)
        for candidate in candidates:
            try:
                await self.driver.click(candidate)
                return
            except FieldNotFoundError:
                continue
        raise FieldNotFoundError(f"No submit control found on {self.url}", url=self.url)

    async def _screenshot(self, suffix: str) -> Optional[str]:
        if not self.config.take_screenshots:
            return None
        path = Path(self.config.screenshot_dir) / self.session.id / f"{self.index:04d}_{suffix}.png"
        return await self.driver.screenshot(str(path))

    def _check_cancel(self) -> None:
        if self.session.cancel_requested:
            raise JobCancelled(self.url)

    def _cancelled(self, started: float) -> ExecutionResult:
        self.logger.info("Job cancelled", attempts=self.attempts)
        return self.aggregator.skipped_result(
            self.url,
            "cancelled",
            duration=time.monotonic() - started,
            attempts=self.attempts,
        )

    def _emit(self, event_type: EventType, **data) -> None:
        if self.events is not None:
            self.events.emit(SessionEvent(type=event_type, session_id=self.session.id, url=self.url, data=data))


def _own_selector(form_field: FormField) -> str:
    return form_field.selector
