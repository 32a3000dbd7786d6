"""Session controller: bounded-concurrency dispatch over a browser pool."""

import asyncio
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from autofill_engine.browser.driver import CaptchaSolver
from autofill_engine.browser.pool import BrowserPool, PooledBrowser
from autofill_engine.config import settings
from autofill_engine.core.errors import (
    ErrorKind,
    InvalidTransitionError,
    ProfileNotFoundError,
    SystemResourceError,
    classify_exception,
)
from autofill_engine.core.models import (
    ExecutionConfig,
    ExecutionError,
    ExecutionSession,
    FormTemplate,
    Progress,
    SessionStatus,
)
from autofill_engine.core.profiles import ProfileStore
from autofill_engine.execution.aggregator import ResultAggregator
from autofill_engine.execution.events import EventBus, EventType, SessionEvent
from autofill_engine.execution.job import FormFillJob
from autofill_engine.execution.retry import RetryPolicy
from autofill_engine.forms.detector import FormDetector
from autofill_engine.forms.mapper import FieldMapper
from autofill_engine.forms.templates import TemplateStore
from autofill_engine.forms.verifier import SubmissionVerifier
from autofill_engine.system.scanner import ResourceMonitor
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

TERMINAL_EVENTS = {
    SessionStatus.COMPLETED: EventType.SESSION_COMPLETED,
    SessionStatus.FAILED: EventType.SESSION_FAILED,
    SessionStatus.CANCELLED: EventType.SESSION_CANCELLED,
}


class SessionCommand(str, Enum):
    """Closed set of operations a caller can issue against a session."""
    START = "start"
    PAUSE = "pause"
    CANCEL = "cancel"
    SNAPSHOT = "snapshot"


class ExecutionScheduler:
    """
    Runs sessions of URL jobs against a shared browser pool.

    A session's dispatcher walks the URL list in order and keeps at most
    ``min(config.max_concurrency, pool.size)`` jobs in flight. Jobs finish
    in any order; each records its result, error and progress update in a
    single locked section on the session. Only a pool-level resource failure
    fails the session; individual URL failures are recorded as results.
    """

    def __init__(
        self,
        pool: BrowserPool,
        profile_store: ProfileStore,
        detector: Optional[FormDetector] = None,
        mapper: Optional[FieldMapper] = None,
        verifier: Optional[SubmissionVerifier] = None,
        aggregator: Optional[ResultAggregator] = None,
        template_store: Optional[TemplateStore] = None,
        captcha_solver: Optional[CaptchaSolver] = None,
        events: Optional[EventBus] = None,
        monitor: Optional[ResourceMonitor] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            pool: Browser pool shared by all sessions of this scheduler
            profile_store: Source of profiles for new sessions
            detector: Form detector (default configuration when omitted)
            mapper: Field mapper (default configuration when omitted)
            verifier: Submission verifier (default configuration when omitted)
            aggregator: Result aggregator
            template_store: Optional durable template store
            captcha_solver: Optional external CAPTCHA solver
            events: Optional event bus for lifecycle notifications
            monitor: Resource monitor used when a session enables adaptive limits
        """
        self.pool = pool
        self.profile_store = profile_store
        self.detector = detector or FormDetector()
        self.mapper = mapper or FieldMapper()
        self.verifier = verifier or SubmissionVerifier()
        self.aggregator = aggregator or ResultAggregator()
        self.template_store = template_store
        self.captcha_solver = captcha_solver
        self.events = events or EventBus()
        self.monitor = monitor
        self.logger = logger.bind(component="execution_scheduler")

    # Session creation

    def new_session(
        self,
        profile_id: str,
        urls: Iterable[str],
        config: Optional[ExecutionConfig] = None,
        templates: Optional[Union[Dict[str, FormTemplate], List[FormTemplate]]] = None,
    ) -> ExecutionSession:
        """
        Create a pending session.

        Args:
            profile_id: Profile id or name in the profile store
            urls: Target URLs in dispatch order
            config: Execution config; defaults come from settings with the
                pool size as the concurrency default
            templates: Pre-learned templates, keyed by URL or as a list

        Returns:
            The new session in ``pending`` state

        Raises:
            ProfileNotFoundError: No profile matches ``profile_id``
        """
        profile = self._resolve_profile(profile_id)
        if config is None:
            config = ExecutionConfig.from_settings(settings, max_concurrency=settings.max_concurrency or self.pool.size)
        if config.captcha_solver is False and self.captcha_solver is not None:
            config = config.model_copy(update={"captcha_solver": True})

        if isinstance(templates, list):
            templates = {template.url: template for template in templates}

        session = ExecutionSession(
            profile=profile,
            urls=list(urls),
            config=config,
            templates=dict(templates or {}),
        )
        self.logger.info(
            "Session created",
            session_id=session.id,
            profile=profile.name,
            urls=len(session.urls),
            max_concurrency=config.max_concurrency,
            pool_size=self.pool.size,
        )
        return session

    def _resolve_profile(self, profile_id: str):
        try:
            return self.profile_store.get_profile(profile_id)
        except ProfileNotFoundError:
            return self.profile_store.get_profile_by_name(profile_id)

    # Commands

    async def start(self, session: ExecutionSession) -> None:
        """Start a pending session or resume a paused one."""
        previous = session.transition(SessionStatus.RUNNING)
        if previous is SessionStatus.PENDING:
            session.dispatcher = asyncio.get_running_loop().create_task(self._run_dispatcher(session))
            self.logger.info("Session started", session_id=session.id, urls=len(session.urls))
            self._emit(session, EventType.SESSION_STARTED, urls=len(session.urls))
        else:
            self.logger.info("Session resumed", session_id=session.id, next_index=session.next_index)
            self._emit(session, EventType.SESSION_RESUMED, next_index=session.next_index)

    def pause(self, session: ExecutionSession) -> None:
        """Stop dispatching new jobs; in-flight jobs finish normally."""
        session.transition(SessionStatus.PAUSED)
        self.logger.info("Session paused", session_id=session.id, next_index=session.next_index)
        self._emit(session, EventType.SESSION_PAUSED, next_index=session.next_index)

    async def cancel(self, session: ExecutionSession) -> None:
        """
        Cancel a running or paused session.

        Undispatched URLs are recorded as skipped. In-flight jobs get the
        configured grace period to finish, then their tasks are cancelled;
        every job releases its pool slot either way.
        """
        session.transition(SessionStatus.CANCELLED)
        skipped = session.skip_remaining("cancelled")
        self.logger.info("Session cancelling", session_id=session.id, skipped=skipped, in_flight=len(session.tasks))

        dispatcher = session.dispatcher
        if dispatcher is not None and not dispatcher.done():
            dispatcher.cancel()
            await asyncio.wait({dispatcher})

        await self._drain(session, grace=session.config.cancel_grace_period)
        await self._finalize(session)

    def snapshot(self, session: ExecutionSession) -> Progress:
        """Progress copy, safe to call concurrently from any observer."""
        return session.snapshot()

    async def wait(self, session: ExecutionSession) -> ExecutionSession:
        """Wait until the session reaches a terminal state and is finalized."""
        await session.wait_done()
        return session

    async def run(self, session: ExecutionSession) -> ExecutionSession:
        """Start a session and wait for it to finish."""
        await self.start(session)
        return await self.wait(session)

    async def dispatch(self, session: ExecutionSession, command: SessionCommand) -> Optional[Progress]:
        """Apply a command to a session; SNAPSHOT returns the progress copy."""
        if command is SessionCommand.START:
            await self.start(session)
        elif command is SessionCommand.PAUSE:
            self.pause(session)
        elif command is SessionCommand.CANCEL:
            await self.cancel(session)
        elif command is SessionCommand.SNAPSHOT:
            return self.snapshot(session)
        else:
            raise ValueError(f"Unknown session command: {command}")
        return None

    # Dispatch

    def concurrency_limit(self, session: ExecutionSession) -> int:
        limit = min(session.config.max_concurrency, self.pool.size)
        if session.config.auto_adjust_limits and self.monitor is not None:
            limit = self.monitor.recommended_limit(limit)
        return max(1, limit)

    async def _run_dispatcher(self, session: ExecutionSession) -> None:
        # Cancellation is finalized by cancel() after the drain
        try:
            await self._dispatch(session)
        except SystemResourceError as e:
            await self._fail(session, e.message)
        except Exception as e:
            self.logger.error("Dispatcher crashed", session_id=session.id, error=str(e), error_type=type(e).__name__)
            await self._fail(session, f"Dispatcher error: {type(e).__name__}: {e}", classify_exception(e))
        await self._finalize(session)

    async def _dispatch(self, session: ExecutionSession) -> None:
        config = session.config
        while True:
            if session.is_terminal:
                return
            if session.status is SessionStatus.PAUSED:
                await session.wait_until_resumed()
                continue
            if session.next_index >= len(session.urls):
                return

            await self._wait_for_capacity(session)
            if session.status is not SessionStatus.RUNNING:
                continue

            if session.next_index > 0 and config.delay_between_jobs > 0:
                await asyncio.sleep(config.delay_between_jobs)
                if session.status is not SessionStatus.RUNNING:
                    continue

            try:
                handle = await self.pool.acquire(timeout=config.pool_acquire_timeout)
            except SystemResourceError as e:
                await self._fail(session, e.message)
                return

            if session.status is not SessionStatus.RUNNING:
                await self.pool.release(handle)
                continue

            index = session.claim_next()
            if index is None:
                await self.pool.release(handle)
                return

            session.leases[index] = handle
            task = asyncio.get_running_loop().create_task(self._run_job(session, index, handle))
            session.tasks.add(task)
            task.add_done_callback(session.tasks.discard)

    async def _wait_for_capacity(self, session: ExecutionSession) -> None:
        while session.status is SessionStatus.RUNNING:
            pending = {task for task in session.tasks if not task.done()}
            if len(pending) < self.concurrency_limit(session):
                return
            await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)

    async def _run_job(self, session: ExecutionSession, index: int, handle: PooledBrowser) -> None:
        url = session.urls[index]
        job = FormFillJob(
            session=session,
            index=index,
            driver=handle.driver,
            detector=self.detector,
            mapper=self.mapper,
            verifier=self.verifier,
            aggregator=self.aggregator,
            retry_policy=RetryPolicy.from_config(session.config),
            template_store=self.template_store,
            captcha_solver=self.captcha_solver,
            events=self.events,
        )
        error = None
        try:
            result, error = await job.run()
        except asyncio.CancelledError:
            session.record(index, self.aggregator.skipped_result(url, "cancelled", attempts=job.attempts))
            raise
        except Exception as e:
            kind = classify_exception(e)
            message = f"{type(e).__name__}: {e}"
            self.logger.error("Unexpected job error", session_id=session.id, url=url, error=message)
            result = self.aggregator.failure_result(url, message, duration=0.0, attempts=job.attempts)
            error = ExecutionError.create(url, kind, message, attempt=max(job.attempts, 1))
        finally:
            if session.leases.pop(index, None) is not None:
                await self.pool.release(handle)

        session.record(index, result, error)
        self._emit(
            session,
            EventType.JOB_FINISHED,
            url=url,
            status=result.status.value,
            error_kind=error.kind.value if error else None,
        )

    # Termination

    async def _fail(
        self,
        session: ExecutionSession,
        message: str,
        kind: ErrorKind = ErrorKind.SYSTEM_RESOURCE_ERROR,
    ) -> None:
        """Escalate a pool-level or dispatcher failure to session failure."""
        try:
            session.transition(SessionStatus.FAILED)
        except InvalidTransitionError:
            return

        url = session.urls[session.next_index] if session.next_index < len(session.urls) else ""
        self.logger.error("Session failed", session_id=session.id, error=message)
        session.record_error(ExecutionError.create(url, kind, message))
        session.skip_remaining("session failed")
        await self._drain(session, grace=0)

    async def _drain(self, session: ExecutionSession, grace: float) -> None:
        """Give in-flight jobs ``grace`` seconds, then cancel them."""
        pending = {task for task in session.tasks if not task.done()}
        if pending and grace > 0:
            _, pending = await asyncio.wait(pending, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)

        # Tasks cancelled before their first step never ran their cleanup
        for index, handle in list(session.leases.items()):
            session.leases.pop(index, None)
            await self.pool.release(handle)
        session.abandon_in_flight("cancelled")

    async def _finalize(self, session: ExecutionSession) -> None:
        if session.finalized:
            return

        while True:
            pending = {task for task in session.tasks if not task.done()}
            if pending:
                await asyncio.wait(pending)
                continue
            if session.status is SessionStatus.PAUSED:
                await session.wait_until_resumed()
                continue
            break

        session.try_finish()
        session.finalized = True

        progress = session.snapshot()
        self.logger.info(
            "Session finished",
            session_id=session.id,
            status=session.status.value,
            completed=progress.completed,
            failed=progress.failed,
            skipped=progress.skipped,
            success_rate=progress.success_rate,
            duration=session.duration,
            pool=self.pool.get_stats(),
        )
        event_type = TERMINAL_EVENTS.get(session.status)
        if event_type is not None:
            self._emit(
                session,
                event_type,
                completed=progress.completed,
                failed=progress.failed,
                skipped=progress.skipped,
            )
        session.mark_done()

    def _emit(self, session: ExecutionSession, event_type: EventType, url: Optional[str] = None, **data) -> None:
        self.events.emit(SessionEvent(type=event_type, session_id=session.id, url=url, data=data))
