"""Playwright-backed browser driver."""

from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from autofill_engine.browser.driver import PageSnapshot
from autofill_engine.config import settings
from autofill_engine.core.errors import (
    AuthenticationError,
    FieldNotFoundError,
    JobTimeoutError,
    NetworkError,
    RateLimitError,
    SystemResourceError,
)
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

TRUTHY_VALUES = {"true", "1", "yes", "on", "checked"}

# Hides the most common automation fingerprints from page scripts
STEALTH_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {
    get: () => undefined,
});
Object.defineProperty(navigator, 'languages', {
    get: () => ['en-US', 'en'],
});
window.chrome = {
    runtime: {},
};
"""


class PlaywrightDriver:
    """
    One Chromium instance driven through Playwright.

    Each driver owns its own browser process. ``reset`` swaps in a fresh
    context so cookies and storage never leak between jobs that reuse the
    same pooled instance.
    """

    def __init__(
        self,
        headless: bool = True,
        viewport_size: Tuple[int, int] = (1920, 1080),
        user_agent: Optional[str] = None,
        wait_until: Optional[str] = None,
        element_timeout: float = 5.0,
    ):
        """
        Initialize the driver.

        Args:
            headless: Run browser in headless mode
            viewport_size: Browser viewport size (width, height)
            user_agent: User agent for browser contexts
            wait_until: Playwright navigation wait state
            element_timeout: Seconds to wait for an element before failing
        """
        self.headless = headless
        self.viewport_size = viewport_size
        self.user_agent = user_agent or settings.browser_user_agent
        self.wait_until = wait_until or settings.browser_wait_until
        self.element_timeout = element_timeout
        self.logger = logger.bind(component="playwright_driver")

        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self.last_status: Optional[int] = None

    @classmethod
    async def launch(cls, **kwargs: Any) -> "PlaywrightDriver":
        """Create and start a driver; used as the pool factory."""
        driver = cls(**kwargs)
        await driver.start()
        return driver

    async def start(self) -> None:
        try:
            self.playwright = await async_playwright().start()
            self.browser = await self.playwright.chromium.launch(
                headless=self.headless,
                args=[
                    "--no-first-run",
                    "--no-default-browser-check",
                    "--disable-blink-features=AutomationControlled",
                ],
            )
            await self._new_context()
        except PlaywrightError as e:
            self.logger.error("Failed to launch browser", error=str(e), error_type=type(e).__name__)
            await self.close()
            raise SystemResourceError(f"Browser launch failed: {e}") from e

        self.logger.info(
            "Browser launched",
            headless=self.headless,
            viewport_size=self.viewport_size,
        )

    async def _new_context(self) -> None:
        self.context = await self.browser.new_context(
            viewport={"width": self.viewport_size[0], "height": self.viewport_size[1]},
            user_agent=self.user_agent,
        )
        await self.context.add_init_script(STEALTH_SCRIPT)
        self.page = await self.context.new_page()

    async def navigate(self, url: str, timeout: float) -> PageSnapshot:
        try:
            response = await self.page.goto(url, wait_until=self.wait_until, timeout=timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise JobTimeoutError(f"Navigation timed out: {url}", url=url) from e
        except PlaywrightError as e:
            if "net::ERR" in str(e):
                raise NetworkError(str(e), url=url) from e
            raise

        self.last_status = response.status if response else None
        if self.last_status == 429:
            raise RateLimitError(f"HTTP 429 from {url}", url=url)
        if self.last_status in (401, 403):
            raise AuthenticationError(f"HTTP {self.last_status} from {url}", url=url)
        if self.last_status is not None and self.last_status >= 500:
            raise NetworkError(f"HTTP {self.last_status} from {url}", url=url)

        self.logger.debug("Navigated to URL", url=url, status=self.last_status)
        return await self.snapshot()

    async def fill_field(self, selector: str, value: str, field_type: str = "text") -> None:
        try:
            locator = self.page.locator(selector).first
            await locator.wait_for(state="attached", timeout=self.element_timeout * 1000)

            if field_type == "select":
                await locator.select_option(value)
            elif field_type == "checkbox":
                if value.strip().lower() in TRUTHY_VALUES:
                    await locator.check()
                else:
                    await locator.uncheck()
            elif field_type == "radio":
                await locator.check()
            else:
                await locator.fill(value)
        except PlaywrightTimeoutError as e:
            raise FieldNotFoundError(f"Field not found: {selector}") from e

        self.logger.debug("Form field filled", selector=selector, value_length=len(value))

    async def click(self, selector: str) -> None:
        try:
            await self.page.locator(selector).first.click(timeout=self.element_timeout * 1000)
        except PlaywrightTimeoutError as e:
            raise FieldNotFoundError(f"Control not found: {selector}") from e
        self.logger.debug("Element clicked", selector=selector)

    async def snapshot(self) -> PageSnapshot:
        return PageSnapshot(
            url=self.page.url,
            title=await self.page.title(),
            html=await self.page.content(),
            status_code=self.last_status,
        )

    async def screenshot(self, path: str) -> Optional[str]:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            await self.page.screenshot(path=path, full_page=True)
        except PlaywrightError as e:
            self.logger.warning("Screenshot failed", path=path, error=str(e))
            return None
        return path

    async def reset(self) -> None:
        if self.context is not None:
            await self.context.close()
        self.last_status = None
        await self._new_context()

    async def close(self) -> None:
        """Close the browser and cleanup resources."""
        try:
            if self.context:
                await self.context.close()
            if self.browser:
                await self.browser.close()
            if self.playwright:
                await self.playwright.stop()
        except PlaywrightError as e:
            self.logger.error("Error closing browser", error=str(e))
        finally:
            self.page = None
            self.context = None
            self.browser = None
            self.playwright = None


def playwright_factory(headless: bool = True, **kwargs: Any):
    """Return a pool factory that launches Playwright drivers."""
    options: Dict[str, Any] = {
        "headless": headless,
        "viewport_size": (settings.browser_viewport_width, settings.browser_viewport_height),
    }
    options.update(kwargs)

    async def factory() -> PlaywrightDriver:
        return await PlaywrightDriver.launch(**options)

    return factory
