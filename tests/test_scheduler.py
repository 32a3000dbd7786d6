"""Tests for the execution scheduler and form-fill jobs."""

import asyncio
from pathlib import Path

import pytest
from hypothesis import given, strategies as st, settings
from unittest.mock import AsyncMock, MagicMock

from autofill_engine.browser.pool import BrowserPool
from autofill_engine.core.errors import (
    ErrorKind,
    InvalidTransitionError,
    NetworkError,
    ProfileNotFoundError,
)
from autofill_engine.core.models import (
    ExecutionConfig,
    FormField,
    FormTemplate,
    Progress,
    ResultStatus,
    SessionStatus,
)
from autofill_engine.core.profiles import InMemoryProfileStore
from autofill_engine.execution.events import EventBus, EventType
from autofill_engine.execution.scheduler import ExecutionScheduler, SessionCommand
from autofill_engine.forms.detector import DetectorConfig, FormDetector
from autofill_engine.forms.templates import InMemoryTemplateStore
from tests.fakes import (
    ERROR_HTML,
    NO_FORM_HTML,
    SIGNUP_HTML,
    FakeDriverFactory,
    Gate,
    make_profile,
)

CAPTCHA_HTML = SIGNUP_HTML.replace("</form>", '<div class="g-recaptcha" data-sitekey="k"></div></form>')

CONTACT_HTML = """
<html><head><title>Contact us</title></head><body>
<form id="contact" action="/contact" method="post">
  <label for="your-email">Your email</label>
  <input id="your-email" name="your-email" type="email" required>
  <label for="subject">Subject</label>
  <input id="subject" name="subject" type="text">
  <button type="submit">Send</button>
</form>
</body></html>
"""

COMPANY_HTML = SIGNUP_HTML.replace(
    "<button",
    '<label for="company">Company</label>\n  <input id="company" name="company" type="text">\n  <button',
)


def _urls(count, domain="a.test"):
    return [f"https://{domain}/form/{i}" for i in range(count)]


def _config(**overrides):
    values = dict(
        max_concurrency=2,
        timeout=5.0,
        retry_attempts=0,
        retry_base_delay=0.0,
        delay_between_jobs=0.0,
        settle_delay=0.0,
        pool_acquire_timeout=5.0,
        cancel_grace_period=0.5,
    )
    values.update(overrides)
    return ExecutionConfig(**values)


def _scheduler(factory, size=2, **kwargs):
    pool = BrowserPool(factory, size=size)
    store = InMemoryProfileStore([make_profile()])
    return ExecutionScheduler(pool, store, **kwargs)


async def _until(predicate, timeout=2.0):
    """Poll until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


class RecordingSink:
    def __init__(self):
        self.events = []

    async def publish(self, event):
        self.events.append(event)


class TestSessionLifecycle:
    """Test cases for session creation and commands."""

    def test_profile_lookup_by_id_and_name(self):
        scheduler = _scheduler(FakeDriverFactory())

        assert scheduler.new_session("p-1", _urls(1), _config()).profile.name == "john"
        assert scheduler.new_session("john", _urls(1), _config()).profile.id == "p-1"
        with pytest.raises(ProfileNotFoundError):
            scheduler.new_session("nobody", _urls(1), _config())

    def test_new_session_defaults(self):
        scheduler = _scheduler(FakeDriverFactory(), size=3)
        template = FormTemplate(id="t", url="https://a.test/form/0")

        session = scheduler.new_session("john", _urls(2), templates=[template])

        assert session.status is SessionStatus.PENDING
        assert session.config.max_concurrency >= 1
        assert session.templates == {"https://a.test/form/0": template}
        assert session.snapshot().total == 2

    def test_captcha_solver_enables_captcha_retries(self):
        scheduler = _scheduler(FakeDriverFactory(), captcha_solver=AsyncMock())
        assert scheduler.new_session("john", _urls(1), _config()).config.captcha_solver is True

    @pytest.mark.asyncio
    async def test_run_to_completion(self):
        """Every URL gets a successful result and the session completes."""
        factory = FakeDriverFactory()
        scheduler = _scheduler(factory)
        urls = _urls(3)
        session = scheduler.new_session("john", urls, _config())

        await scheduler.run(session)

        assert session.status is SessionStatus.COMPLETED
        assert sorted(r.url for r in session.results) == urls
        assert all(r.status is ResultStatus.SUCCESS for r in session.results)
        assert all((r.filled_fields, r.total_fields) == (3, 3) for r in session.results)
        progress = scheduler.snapshot(session)
        assert (progress.completed, progress.failed, progress.skipped) == (3, 0, 0)
        assert progress.percentage == 100.0
        assert progress.success_rate == 100.0
        assert session.finalized
        assert scheduler.pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_empty_session_completes(self):
        scheduler = _scheduler(FakeDriverFactory())
        session = scheduler.new_session("john", [], _config())

        await scheduler.run(session)

        assert session.status is SessionStatus.COMPLETED
        assert session.results == []

    @pytest.mark.asyncio
    async def test_invalid_commands_rejected(self):
        scheduler = _scheduler(FakeDriverFactory())
        session = scheduler.new_session("john", _urls(1), _config())

        with pytest.raises(InvalidTransitionError):
            scheduler.pause(session)

        await scheduler.run(session)

        with pytest.raises(InvalidTransitionError):
            await scheduler.start(session)
        with pytest.raises(InvalidTransitionError):
            await scheduler.cancel(session)

    @pytest.mark.asyncio
    async def test_dispatch_commands(self):
        scheduler = _scheduler(FakeDriverFactory())
        session = scheduler.new_session("john", _urls(2), _config())

        snapshot = await scheduler.dispatch(session, SessionCommand.SNAPSHOT)
        assert isinstance(snapshot, Progress)
        assert snapshot.total == 2

        assert await scheduler.dispatch(session, SessionCommand.START) is None
        await scheduler.wait(session)
        assert session.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_lifecycle_events(self):
        sink = RecordingSink()
        events = EventBus([sink])
        scheduler = _scheduler(FakeDriverFactory(), events=events)
        session = scheduler.new_session("john", _urls(2), _config())

        await scheduler.run(session)
        await events.drain(timeout=1.0)

        types = [e.type for e in sink.events]
        assert types[0] is EventType.SESSION_STARTED
        assert types.count(EventType.JOB_STARTED) == 2
        assert types.count(EventType.JOB_FINISHED) == 2
        assert EventType.SESSION_COMPLETED in types


class TestBoundedConcurrency:
    """Test cases for the in-flight bound."""

    @pytest.mark.asyncio
    async def test_three_urls_two_slots(self):
        """Two jobs start, the third waits for a slot and starts after one finishes."""
        gate = Gate()
        factory = FakeDriverFactory(on_navigate=gate)
        scheduler = _scheduler(factory, size=2)
        urls = _urls(3)
        session = scheduler.new_session("john", urls, _config(max_concurrency=2))

        await scheduler.start(session)
        await _until(lambda: len(factory.navigations) == 2)
        await asyncio.sleep(0.02)

        assert factory.navigations == urls[:2]
        assert scheduler.snapshot(session).in_flight == 2
        assert scheduler.snapshot(session).finished == 0

        gate.release(urls[1])
        await _until(lambda: len(factory.navigations) == 3)
        assert factory.navigations[2] == urls[2]

        gate.release_all()
        await scheduler.wait(session)

        assert session.status is SessionStatus.COMPLETED
        assert scheduler.snapshot(session).completed == 3
        assert factory.peak_active <= 2
        assert scheduler.pool.peak_outstanding <= 2

    @pytest.mark.asyncio
    async def test_limit_is_min_of_config_and_pool(self):
        gate = Gate()
        factory = FakeDriverFactory(on_navigate=gate)
        scheduler = _scheduler(factory, size=4)
        session = scheduler.new_session("john", _urls(5), _config(max_concurrency=1))

        assert scheduler.concurrency_limit(session) == 1
        await scheduler.start(session)
        await _until(lambda: len(factory.navigations) == 1)
        await asyncio.sleep(0.02)
        assert len(factory.navigations) == 1

        gate.release_all()
        await scheduler.wait(session)
        assert factory.peak_active == 1

    @given(
        count=st.integers(min_value=0, max_value=8),
        limit=st.integers(min_value=1, max_value=4),
        size=st.integers(min_value=1, max_value=4),
        outcomes=st.lists(st.sampled_from(["ok", "no_form"]), min_size=8, max_size=8),
    )
    @settings(max_examples=25, deadline=None)
    def test_progress_conserved_and_bounded(self, count, limit, size, outcomes):
        """Every URL ends with exactly one result and in-flight never exceeds the limit."""

        async def run_test():
            urls = _urls(count)
            pages = {}
            for url, outcome in zip(urls, outcomes):
                if outcome == "no_form":
                    pages[url] = NO_FORM_HTML

            async def jitter(url):
                await asyncio.sleep(0.001)

            factory = FakeDriverFactory(pages=pages, on_navigate=jitter)
            scheduler = _scheduler(factory, size=size)
            session = scheduler.new_session("john", urls, _config(max_concurrency=limit))
            await scheduler.run(session)
            return urls, factory, scheduler, session

        urls, factory, scheduler, session = asyncio.run(run_test())

        bound = min(limit, size)
        progress = session.snapshot()
        assert progress.finished == progress.total == len(urls)
        assert progress.in_flight == 0
        assert sorted(r.url for r in session.results) == urls
        assert progress.failed == sum(1 for o in outcomes[: len(urls)] if o == "no_form")
        assert factory.peak_active <= bound
        assert scheduler.pool.peak_outstanding <= bound
        assert scheduler.pool.outstanding == 0
        assert session.status is SessionStatus.COMPLETED


class TestJobFailures:
    """Test cases for classified failures and retries."""

    @pytest.mark.asyncio
    async def test_retryable_error_retried_up_to_bound(self):
        async def unreachable(url):
            raise NetworkError("connection refused", url=url)

        factory = FakeDriverFactory(on_navigate=unreachable)
        scheduler = _scheduler(factory)
        session = scheduler.new_session("john", _urls(1), _config(retry_attempts=2))

        await scheduler.run(session)

        assert len(factory.navigations) == 3
        result = session.results[0]
        assert result.status is ResultStatus.FAILURE
        assert result.attempts == 3
        assert session.errors[0].kind is ErrorKind.NETWORK_ERROR
        assert session.errors[0].attempt == 3
        assert session.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_retry_recovers(self):
        failures = {"left": 1}

        async def flaky(url):
            if failures["left"]:
                failures["left"] -= 1
                raise ConnectionResetError("reset by peer")

        factory = FakeDriverFactory(on_navigate=flaky)
        scheduler = _scheduler(factory)
        session = scheduler.new_session("john", _urls(1), _config(retry_attempts=3))

        await scheduler.run(session)

        assert session.results[0].status is ResultStatus.SUCCESS
        assert session.results[0].attempts == 2
        assert session.errors == []

    @pytest.mark.asyncio
    async def test_form_not_found_not_retried(self):
        url = _urls(1)[0]
        factory = FakeDriverFactory(pages={url: NO_FORM_HTML})
        scheduler = _scheduler(factory)
        session = scheduler.new_session("john", [url], _config(retry_attempts=3))

        await scheduler.run(session)

        assert factory.navigations == [url]
        assert session.errors[0].kind is ErrorKind.FORM_NOT_FOUND
        assert session.results[0].attempts == 1

    @pytest.mark.asyncio
    async def test_job_timeout(self):
        async def slow(url):
            await asyncio.sleep(1.0)

        factory = FakeDriverFactory(on_navigate=slow)
        scheduler = _scheduler(factory)
        session = scheduler.new_session("john", _urls(1), _config(timeout=0.05, retry_attempts=1))

        await scheduler.run(session)

        assert len(factory.navigations) == 2
        assert session.results[0].status is ResultStatus.FAILURE
        assert session.errors[0].kind is ErrorKind.TIMEOUT_ERROR
        assert scheduler.pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_rejected_submission(self):
        factory = FakeDriverFactory(after_submit=ERROR_HTML)
        scheduler = _scheduler(factory)
        session = scheduler.new_session("john", _urls(1), _config(retry_attempts=2))

        await scheduler.run(session)

        assert len(factory.navigations) == 1
        assert session.results[0].status is ResultStatus.FAILURE
        assert session.errors[0].kind is ErrorKind.VALIDATION_FAILED
        assert "Email address is invalid" in session.errors[0].message

    @pytest.mark.asyncio
    async def test_captcha_without_solver(self):
        url = _urls(1)[0]
        scheduler = _scheduler(FakeDriverFactory(pages={url: CAPTCHA_HTML}))
        session = scheduler.new_session("john", [url], _config(retry_attempts=2))

        await scheduler.run(session)

        assert session.errors[0].kind is ErrorKind.CAPTCHA_FAILED
        assert session.results[0].attempts == 1

    @pytest.mark.asyncio
    async def test_captcha_with_solver(self):
        url = _urls(1)[0]
        solver = AsyncMock()
        solver.solve.return_value = True
        scheduler = _scheduler(FakeDriverFactory(pages={url: CAPTCHA_HTML}), captcha_solver=solver)
        session = scheduler.new_session("john", [url], _config())

        await scheduler.run(session)

        solver.solve.assert_awaited_once()
        assert session.results[0].status is ResultStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_url_failure_does_not_fail_session_by_default(self):
        urls = _urls(2)
        factory = FakeDriverFactory(pages={urls[0]: NO_FORM_HTML})
        scheduler = _scheduler(factory)

        lenient = scheduler.new_session("john", urls, _config())
        await scheduler.run(lenient)
        strict = scheduler.new_session("john", urls, _config(fail_on_url_failure=True))
        await scheduler.run(strict)

        assert lenient.status is SessionStatus.COMPLETED
        assert strict.status is SessionStatus.FAILED
        assert scheduler.snapshot(lenient).failed == 1
        assert scheduler.snapshot(lenient).completed == 1

    @pytest.mark.asyncio
    async def test_browser_launch_failure_fails_session(self):
        """A pool-level resource failure fails the session and skips every URL."""
        factory = FakeDriverFactory(fail_launch=RuntimeError("chromium missing"))
        scheduler = _scheduler(factory)
        urls = _urls(3)
        session = scheduler.new_session("john", urls, _config())

        await scheduler.run(session)

        assert session.status is SessionStatus.FAILED
        assert all(r.status is ResultStatus.SKIPPED for r in session.results)
        assert sorted(r.url for r in session.results) == urls
        assert session.errors[-1].kind is ErrorKind.SYSTEM_RESOURCE_ERROR
        assert scheduler.snapshot(session).finished == 3
        assert scheduler.pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_dispatcher_error_fails_session(self):
        """An unexpected dispatcher error still finalizes the session instead of hanging waiters."""
        monitor = MagicMock()
        monitor.recommended_limit.side_effect = RuntimeError("sensor unavailable")
        scheduler = _scheduler(FakeDriverFactory(), monitor=monitor)
        urls = _urls(2)
        session = scheduler.new_session("john", urls, _config(auto_adjust_limits=True))

        await asyncio.wait_for(scheduler.run(session), timeout=2.0)

        assert session.status is SessionStatus.FAILED
        assert session.finalized
        assert sorted(r.url for r in session.results) == urls
        assert "sensor unavailable" in session.errors[-1].message
        assert scheduler.pool.outstanding == 0

    @pytest.mark.asyncio
    async def test_screenshots(self, tmp_path):
        scheduler = _scheduler(FakeDriverFactory())
        session = scheduler.new_session("john", _urls(1), _config(take_screenshots=True, screenshot_dir=str(tmp_path)))

        await scheduler.run(session)

        path = Path(session.results[0].screenshot_path)
        assert path.name == "0000_done.png"
        assert path.parent.name == session.id


class TestTemplates:
    """Test cases for template-driven filling."""

    @pytest.mark.asyncio
    async def test_template_learned_and_reused(self):
        """A template learned on a URL is reused by later sessions on that URL."""
        store = InMemoryTemplateStore()
        scheduler = _scheduler(FakeDriverFactory(), size=1, template_store=store)
        urls = _urls(1)

        await scheduler.run(scheduler.new_session("john", urls, _config(max_concurrency=1)))
        await scheduler.run(scheduler.new_session("john", urls, _config(max_concurrency=1)))

        template = store.get("a_test_form_0_registration")
        assert template is not None
        assert template.use_count == 2
        assert template.success_rate == 100.0
        assert template.version == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_pages_on_one_host_keep_their_own_forms(self):
        """A second page on the same host is detected live, not filled from the first page's template."""
        signup, contact = "https://a.test/signup", "https://a.test/contact"
        store = InMemoryTemplateStore()
        factory = FakeDriverFactory(pages={signup: SIGNUP_HTML, contact: CONTACT_HTML})
        scheduler = _scheduler(factory, size=1, template_store=store)
        session = scheduler.new_session("john", [signup, contact], _config(max_concurrency=1))

        await scheduler.run(session)

        results = {r.url: r for r in session.results}
        assert results[signup].status is ResultStatus.SUCCESS
        assert results[contact].status is ResultStatus.SUCCESS
        assert (results[contact].filled_fields, results[contact].total_fields) == (1, 2)
        assert session.errors == []
        assert store.find_for_url(contact).url == contact
        assert store.find_for_url(signup).url == signup
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_same_site_template_used_when_detection_finds_nothing(self):
        """Without a detectable form, a same-host template is used if its fields are on the page."""
        url = "https://a.test/legacy"
        learned = FormTemplate(
            id="legacy",
            url="https://a.test/signup",
            fields=[FormField(name="email", field_type="email", selector="#email", required=True)],
            submit_selector="#go",
        )
        page = '<html><body><div><input id="email" name="email" type="email"><a id="go">Go</a></div></body></html>'
        store = InMemoryTemplateStore([learned])
        detector = FormDetector(DetectorConfig(include_orphan_controls=False))
        scheduler = _scheduler(FakeDriverFactory(pages={url: page}), template_store=store, detector=detector)
        session = scheduler.new_session("john", [url], _config())

        await scheduler.run(session)

        assert session.results[0].status is ResultStatus.SUCCESS
        assert store.get("legacy").use_count == 1

    @pytest.mark.asyncio
    async def test_same_site_template_ignored_when_fields_absent(self):
        url = "https://a.test/about"
        store = InMemoryTemplateStore([FormTemplate(
            id="signup",
            url="https://a.test/signup",
            fields=[FormField(name="email", field_type="email", selector="#email", required=True)],
        )])
        scheduler = _scheduler(FakeDriverFactory(pages={url: NO_FORM_HTML}), template_store=store)
        session = scheduler.new_session("john", [url], _config())

        await scheduler.run(session)

        assert session.errors[0].kind is ErrorKind.FORM_NOT_FOUND
        assert store.get("signup").use_count == 0

    @pytest.mark.asyncio
    async def test_unmapped_optional_field_still_succeeds(self):
        """A field the profile has no value for does not turn a success into partial."""
        url = _urls(1)[0]
        scheduler = _scheduler(FakeDriverFactory(pages={url: COMPANY_HTML}))
        session = scheduler.new_session("john", [url], _config())

        await scheduler.run(session)

        result = session.results[0]
        assert result.status is ResultStatus.SUCCESS
        assert (result.filled_fields, result.total_fields) == (3, 4)
        assert session.snapshot().success_rate == 100.0

    @pytest.mark.asyncio
    async def test_template_submit_falls_back(self):
        """A stale submit selector falls back to generic submit controls."""
        url = _urls(1)[0]
        template = FormTemplate(
            id="t",
            url=url,
            fields=[FormField(name="email", field_type="email", selector="#email", required=True)],
            submit_selector="#gone",
        )
        factory = FakeDriverFactory()
        scheduler = _scheduler(factory)
        session = scheduler.new_session("john", [url], _config(), templates=[template])

        await scheduler.run(session)

        result = session.results[0]
        assert result.status is ResultStatus.SUCCESS
        assert (result.filled_fields, result.total_fields) == (1, 1)

    @pytest.mark.asyncio
    async def test_missing_required_template_field(self):
        url = _urls(1)[0]
        template = FormTemplate(
            id="t",
            url=url,
            fields=[
                FormField(name="email", field_type="email", selector="#email"),
                FormField(name="fname", selector="#first-name", required=True),
            ],
        )
        scheduler = _scheduler(FakeDriverFactory())
        session = scheduler.new_session("john", [url], _config(), templates=[template])

        await scheduler.run(session)

        assert session.results[0].status is ResultStatus.FAILURE
        assert session.errors[0].kind is ErrorKind.FIELD_NOT_FOUND

    @pytest.mark.asyncio
    async def test_missing_optional_template_field_is_partial(self):
        """A mapped optional field missing from the page leaves the result partial."""
        url = _urls(1)[0]
        template = FormTemplate(
            id="t",
            url=url,
            fields=[
                FormField(name="email", field_type="email", selector="#email", required=True),
                FormField(name="lname", selector="#surname"),
            ],
        )
        scheduler = _scheduler(FakeDriverFactory())
        session = scheduler.new_session("john", [url], _config(), templates=[template])

        await scheduler.run(session)

        result = session.results[0]
        assert result.status is ResultStatus.PARTIAL
        assert (result.filled_fields, result.total_fields) == (1, 2)
        assert result.error_message == "Filled 1 of 2 mapped fields"


class TestPauseAndCancel:
    """Test cases for pause, resume and cancel."""

    @pytest.mark.asyncio
    async def test_pause_stops_dispatch_until_resumed(self):
        gate = Gate()
        factory = FakeDriverFactory(on_navigate=gate)
        scheduler = _scheduler(factory, size=1)
        urls = _urls(3)
        session = scheduler.new_session("john", urls, _config(max_concurrency=1))

        await scheduler.start(session)
        await _until(lambda: len(factory.navigations) == 1)
        scheduler.pause(session)
        gate.release(urls[0])
        await _until(lambda: scheduler.snapshot(session).finished == 1)
        await asyncio.sleep(0.02)

        assert session.status is SessionStatus.PAUSED
        assert factory.navigations == urls[:1]

        gate.release_all()
        await scheduler.start(session)
        await scheduler.wait(session)

        assert session.status is SessionStatus.COMPLETED
        assert factory.navigations == urls
        assert scheduler.snapshot(session).completed == 3

    @pytest.mark.asyncio
    async def test_paused_session_waits_for_resume_when_all_dispatched(self):
        gate = Gate()
        factory = FakeDriverFactory(on_navigate=gate)
        scheduler = _scheduler(factory, size=1)
        urls = _urls(1)
        session = scheduler.new_session("john", urls, _config(max_concurrency=1))

        await scheduler.start(session)
        await _until(lambda: len(factory.navigations) == 1)
        scheduler.pause(session)
        gate.release_all()
        await _until(lambda: scheduler.snapshot(session).finished == 1)
        await asyncio.sleep(0.02)

        assert session.status is SessionStatus.PAUSED
        assert not session.finalized

        await scheduler.start(session)
        await scheduler.wait(session)
        assert session.status is SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_cancel_drains_in_flight_jobs(self):
        """Cancel skips the rest, cancels stuck jobs after the grace period and frees every slot."""
        gate = Gate()
        factory = FakeDriverFactory(on_navigate=gate)
        scheduler = _scheduler(factory, size=2)
        urls = _urls(5)
        session = scheduler.new_session("john", urls, _config(max_concurrency=2, cancel_grace_period=0.05))

        await scheduler.start(session)
        await _until(lambda: len(factory.navigations) == 2)

        await scheduler.cancel(session)
        await scheduler.wait(session)

        assert session.status is SessionStatus.CANCELLED
        assert scheduler.pool.outstanding == 0
        progress = scheduler.snapshot(session)
        assert progress.finished == progress.total == 5
        assert progress.skipped == 5
        assert progress.in_flight == 0
        assert sorted(r.url for r in session.results) == urls
        assert len(factory.navigations) == 2

    @pytest.mark.asyncio
    async def test_cancel_paused_session(self):
        gate = Gate()
        factory = FakeDriverFactory(on_navigate=gate)
        scheduler = _scheduler(factory, size=1)
        urls = _urls(3)
        session = scheduler.new_session("john", urls, _config(max_concurrency=1, cancel_grace_period=1.0))

        await scheduler.start(session)
        await _until(lambda: len(factory.navigations) == 1)
        scheduler.pause(session)

        gate.release_all()
        await scheduler.dispatch(session, SessionCommand.CANCEL)
        await scheduler.wait(session)

        assert session.status is SessionStatus.CANCELLED
        assert scheduler.snapshot(session).finished == 3
        assert len(factory.navigations) == 1
        assert scheduler.pool.outstanding == 0
