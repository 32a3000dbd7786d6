"""Tests for the Playwright driver with a mocked page."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from playwright.async_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from autofill_engine.browser.driver import BrowserDriver
from autofill_engine.browser.playwright_driver import STEALTH_SCRIPT, PlaywrightDriver, playwright_factory
from autofill_engine.core.errors import (
    AuthenticationError,
    FieldNotFoundError,
    JobTimeoutError,
    NetworkError,
    RateLimitError,
)


def _mock_page(status=200):
    page = MagicMock()
    page.url = "https://a.test/signup"
    page.goto = AsyncMock(return_value=MagicMock(status=status))
    page.title = AsyncMock(return_value="Create your account")
    page.content = AsyncMock(return_value="<html><body><form></form></body></html>")
    page.screenshot = AsyncMock()
    locator = AsyncMock()
    page.locator.return_value.first = locator
    return page, locator


class TestPlaywrightDriver:
    """Test cases for PlaywrightDriver."""

    @pytest.fixture
    def driver(self):
        driver = PlaywrightDriver(headless=True, viewport_size=(1366, 768), element_timeout=1.0)
        driver.page, driver.locator = _mock_page()
        return driver

    def test_initialization(self):
        driver = PlaywrightDriver()

        assert driver.headless is True
        assert driver.viewport_size == (1920, 1080)
        assert driver.page is None
        assert isinstance(driver, BrowserDriver)

    @pytest.mark.asyncio
    async def test_navigate_returns_snapshot(self, driver):
        snapshot = await driver.navigate("https://a.test/signup", timeout=10)

        driver.page.goto.assert_awaited_once_with("https://a.test/signup", wait_until=driver.wait_until, timeout=10000)
        assert snapshot.url == "https://a.test/signup"
        assert snapshot.title == "Create your account"
        assert snapshot.status_code == 200
        assert "<form>" in snapshot.html

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error", [
        (429, RateLimitError),
        (401, AuthenticationError),
        (403, AuthenticationError),
        (502, NetworkError),
    ])
    async def test_navigate_classifies_http_status(self, status, error):
        driver = PlaywrightDriver()
        driver.page, _ = _mock_page(status=status)

        with pytest.raises(error):
            await driver.navigate("https://a.test/signup", timeout=10)

    @pytest.mark.asyncio
    async def test_navigate_classifies_playwright_errors(self, driver):
        driver.page.goto.side_effect = PlaywrightTimeoutError("Timeout 10000ms exceeded")
        with pytest.raises(JobTimeoutError):
            await driver.navigate("https://a.test/signup", timeout=10)

        driver.page.goto.side_effect = PlaywrightError("net::ERR_CONNECTION_REFUSED at https://a.test/signup")
        with pytest.raises(NetworkError):
            await driver.navigate("https://a.test/signup", timeout=10)

    @pytest.mark.asyncio
    async def test_fill_field_by_type(self, driver):
        await driver.fill_field("#email", "john@x.com", "email")
        driver.locator.fill.assert_awaited_once_with("john@x.com")

        await driver.fill_field("#country", "US", "select")
        driver.locator.select_option.assert_awaited_once_with("US")

        await driver.fill_field("#terms", "yes", "checkbox")
        driver.locator.check.assert_awaited_once()

        await driver.fill_field("#newsletter", "no", "checkbox")
        driver.locator.uncheck.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_missing_element_raises_field_not_found(self, driver):
        driver.locator.wait_for.side_effect = PlaywrightTimeoutError("Timeout 1000ms exceeded")
        with pytest.raises(FieldNotFoundError):
            await driver.fill_field("#gone", "x")

        driver.locator.click.side_effect = PlaywrightTimeoutError("Timeout 1000ms exceeded")
        with pytest.raises(FieldNotFoundError):
            await driver.click("#gone")

    @pytest.mark.asyncio
    async def test_screenshot_failure_returns_none(self, driver, tmp_path):
        path = str(tmp_path / "shots" / "0001_done.png")
        assert await driver.screenshot(path) == path

        driver.page.screenshot.side_effect = PlaywrightError("Target closed")
        assert await driver.screenshot(path) is None

    @pytest.mark.asyncio
    async def test_reset_swaps_context(self, driver):
        old_context = AsyncMock()
        new_context = AsyncMock()
        new_page, _ = _mock_page()
        new_context.new_page.return_value = new_page
        driver.context = old_context
        driver.browser = AsyncMock()
        driver.browser.new_context.return_value = new_context
        driver.last_status = 200

        await driver.reset()

        old_context.close.assert_awaited_once()
        new_context.add_init_script.assert_awaited_once_with(STEALTH_SCRIPT)
        assert driver.page is new_page
        assert driver.last_status is None

    @pytest.mark.asyncio
    async def test_close_releases_everything(self, driver):
        context, browser, playwright = AsyncMock(), AsyncMock(), AsyncMock()
        driver.context, driver.browser, driver.playwright = context, browser, playwright

        await driver.close()

        context.close.assert_awaited_once()
        browser.close.assert_awaited_once()
        playwright.stop.assert_awaited_once()
        assert driver.page is None
        assert driver.browser is None

    def test_factory_is_coroutine_function(self):
        factory = playwright_factory(headless=False, element_timeout=2.0)
        assert callable(factory)
