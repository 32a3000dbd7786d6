"""Command-line interface for the autofill engine."""

import asyncio
from typing import List, Optional

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from autofill_engine.config import settings
from autofill_engine.core.errors import ProfileNotFoundError
from autofill_engine.core.models import ExecutionConfig, ExecutionSession, ResultStatus, SessionStatus
from autofill_engine.core.profiles import JsonProfileStore
from autofill_engine.utils.logging import configure_logging

app = typer.Typer(
    name="autofill",
    help="Autofill Engine - parallel form filling driven by stored profiles",
    add_completion=False,
)
console = Console()

STATUS_STYLES = {
    ResultStatus.SUCCESS: "green",
    ResultStatus.PARTIAL: "yellow",
    ResultStatus.FAILURE: "red",
    ResultStatus.SKIPPED: "dim",
}


@app.callback()
def setup(
    log_level: Optional[str] = typer.Option(None, help="Override the log level"),
) -> None:
    """Configure logging before any command runs."""
    configure_logging(level=log_level)


@app.command()
def scan() -> None:
    """Scan host capabilities and show the recommended concurrency."""
    from autofill_engine.system.scanner import CapabilityScanner

    capabilities = CapabilityScanner().scan()

    table = Table(title="System Capabilities")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Operating System", capabilities.operating_system or "unknown")
    table.add_row("CPU Cores", str(capabilities.cpu_cores))
    table.add_row("CPU Threads", str(capabilities.cpu_threads))
    table.add_row("Total Memory", f"{capabilities.memory_total_mb} MB")
    table.add_row("Available Memory", f"{capabilities.memory_available_mb} MB")
    table.add_row("Optimal Concurrency", str(capabilities.optimal_concurrency))
    table.add_row("Max Concurrency", str(capabilities.max_concurrency))

    console.print(table)
    if capabilities.degraded:
        console.print("⚠️  Host introspection failed; showing conservative defaults")


@app.command()
def execute(
    profile: str = typer.Argument(..., help="Profile id or name"),
    urls: List[str] = typer.Option(..., "--url", "-u", help="Target URL (repeatable)"),
    profiles_path: str = typer.Option(settings.profiles_path, "--profiles", help="Profiles JSON file"),
    concurrency: Optional[int] = typer.Option(None, help="Maximum simultaneous jobs"),
    timeout: Optional[float] = typer.Option(None, help="Per-job timeout in seconds"),
    retries: Optional[int] = typer.Option(None, help="Retry attempts for retryable failures"),
    delay: Optional[float] = typer.Option(None, help="Delay between job dispatches in seconds"),
    headless: bool = typer.Option(settings.browser_headless, help="Run browsers headless"),
    screenshots: bool = typer.Option(settings.take_screenshots, help="Capture screenshots"),
) -> None:
    """Fill the form at each URL with a stored profile."""
    try:
        store = JsonProfileStore(profiles_path)
    except ProfileNotFoundError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(code=1)

    session = asyncio.run(
        _execute(store, profile, urls, concurrency, timeout, retries, delay, headless, screenshots)
    )
    if session is None:
        raise typer.Exit(code=1)

    _print_results(session)
    if session.status is not SessionStatus.COMPLETED:
        raise typer.Exit(code=2)


async def _execute(
    store: JsonProfileStore,
    profile: str,
    urls: List[str],
    concurrency: Optional[int],
    timeout: Optional[float],
    retries: Optional[int],
    delay: Optional[float],
    headless: bool,
    screenshots: bool,
) -> Optional[ExecutionSession]:
    from autofill_engine.browser.playwright_driver import playwright_factory
    from autofill_engine.browser.pool import BrowserPool
    from autofill_engine.execution.events import EventBus, LoggingEventSink, WebhookEventSink
    from autofill_engine.execution.scheduler import ExecutionScheduler
    from autofill_engine.forms.templates import InMemoryTemplateStore
    from autofill_engine.system.scanner import CapabilityScanner, ResourceMonitor

    capability = CapabilityScanner().scan()
    config = ExecutionConfig.from_settings(
        settings,
        capability,
        max_concurrency=concurrency,
        timeout=timeout,
        retry_attempts=retries,
        delay_between_jobs=delay,
        headless=headless,
        take_screenshots=screenshots,
    )

    sinks = [LoggingEventSink()]
    if settings.webhook_url:
        sinks.append(WebhookEventSink(settings.webhook_url, timeout=settings.webhook_timeout))
    events = EventBus(sinks)

    pool = BrowserPool(playwright_factory(headless=config.headless), size=config.max_concurrency)
    scheduler = ExecutionScheduler(
        pool,
        store,
        template_store=InMemoryTemplateStore(),
        events=events,
        monitor=ResourceMonitor(),
    )

    try:
        try:
            session = scheduler.new_session(profile, urls, config)
        except ProfileNotFoundError as e:
            console.print(f"❌ {e}")
            return None

        console.print(
            f"🚀 Running {len(urls)} URL(s) with profile '{session.profile.name}' "
            f"(concurrency {config.max_concurrency})"
        )
        await scheduler.start(session)
        with Progress(TextColumn("{task.description}"), BarColumn(), TextColumn("{task.completed}/{task.total}")) as bar:
            task_id = bar.add_task("Filling forms", total=len(urls))
            while not session.finalized:
                snapshot = scheduler.snapshot(session)
                bar.update(task_id, completed=snapshot.finished, description=snapshot.current_url or "Filling forms")
                await asyncio.sleep(0.5)
            bar.update(task_id, completed=scheduler.snapshot(session).finished)
        await scheduler.wait(session)
        await events.drain(timeout=settings.webhook_timeout)
        return session
    finally:
        await pool.close()
        for sink in sinks:
            if isinstance(sink, WebhookEventSink):
                await sink.close()


def _print_results(session: ExecutionSession) -> None:
    table = Table(title=f"Session {session.id[:8]} - {session.status.value}")
    table.add_column("URL", style="cyan")
    table.add_column("Status")
    table.add_column("Fields", justify="right")
    table.add_column("Duration", justify="right")
    table.add_column("Message")

    for result in session.results:
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.url,
            f"[{style}]{result.status.value}[/{style}]",
            f"{result.filled_fields}/{result.total_fields}",
            f"{result.duration:.1f}s",
            result.error_message or "",
        )
    console.print(table)

    if session.errors:
        errors = Table(title="Errors")
        errors.add_column("URL", style="cyan")
        errors.add_column("Kind", style="red")
        errors.add_column("Severity")
        errors.add_column("Suggestion")
        for error in session.errors:
            errors.add_row(
                error.url,
                error.kind.value,
                error.severity.value,
                error.remediation[0] if error.remediation else "",
            )
        console.print(errors)

    progress = session.snapshot()
    console.print(
        f"✅ {progress.completed} completed  ❌ {progress.failed} failed  "
        f"⏭️  {progress.skipped} skipped  ({progress.success_rate:.1f}% success)"
    )


@app.command()
def detect(
    url: str = typer.Argument(..., help="Page to analyze"),
    headless: bool = typer.Option(settings.browser_headless, help="Run browser headless"),
) -> None:
    """Detect forms on a page and show their fields."""
    forms = asyncio.run(_detect(url, headless))
    if not forms:
        console.print(f"❌ No forms detected on {url}")
        raise typer.Exit(code=1)

    for form in forms:
        table = Table(title=f"Form {form.index} ({form.form_type.value}, confidence {form.confidence:.0f})")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Label")
        table.add_column("Required")
        table.add_column("Selector", style="green")
        for form_field in form.fields:
            table.add_row(
                form_field.name,
                form_field.field_type,
                form_field.label,
                "yes" if form_field.required else "",
                form_field.selector,
            )
        console.print(table)
        if form.submit_selector:
            console.print(f"Submit: {form.submit_selector}")


async def _detect(url: str, headless: bool):
    from autofill_engine.browser.playwright_driver import PlaywrightDriver
    from autofill_engine.forms.detector import FormDetector

    driver = await PlaywrightDriver.launch(headless=headless)
    try:
        snapshot = await driver.navigate(url, timeout=settings.job_timeout)
        return FormDetector().analyze(snapshot)
    finally:
        await driver.close()


@app.command()
def config() -> None:
    """Show current configuration."""
    table = Table(title="Autofill Engine Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")

    table.add_row("Debug Mode", str(settings.debug))
    table.add_row("Log Level", settings.log_level)
    table.add_row("Max Concurrency", str(settings.max_concurrency or "auto"))
    table.add_row("Job Timeout", f"{settings.job_timeout}s")
    table.add_row("Retry Attempts", str(settings.retry_attempts))
    table.add_row("Retry Backoff", settings.retry_backoff)
    table.add_row("Delay Between Jobs", f"{settings.delay_between_jobs}s")
    table.add_row("Browser Headless", str(settings.browser_headless))
    table.add_row("Adaptive Limits", str(settings.auto_adjust_limits))
    table.add_row("Webhook", "configured" if settings.webhook_url else "not configured")

    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from autofill_engine import __version__
    console.print(f"Autofill Engine v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
