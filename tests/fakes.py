"""Scripted browser driver used by the engine tests."""

import asyncio
from typing import Awaitable, Callable, Dict, List, Optional

from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from autofill_engine.browser.driver import PageSnapshot
from autofill_engine.core.errors import FieldNotFoundError
from autofill_engine.core.models import Address, Profile

SIGNUP_HTML = """
<html><head><title>Create your account</title></head><body>
<form id="signup" action="/register" method="post">
  <label for="fname">First name *</label>
  <input id="fname" name="fname" type="text" required>
  <label for="lname">Last name</label>
  <input id="lname" name="lname" type="text">
  <label for="email">Email</label>
  <input id="email" name="email" type="email" required>
  <button type="submit">Sign up</button>
</form>
</body></html>
"""

SUCCESS_HTML = """
<html><head><title>Thank you</title></head><body>
<div class="alert-success">Thanks for signing up!</div>
</body></html>
"""

ERROR_HTML = """
<html><head><title>Create your account</title></head><body>
<form id="signup" action="/register" method="post">
  <input id="email" name="email" type="email">
  <div class="error">Email address is invalid</div>
  <button type="submit">Sign up</button>
</form>
</body></html>
"""

NO_FORM_HTML = "<html><head><title>About</title></head><body><p>Nothing to fill here.</p></body></html>"

NavigateHook = Callable[[str], Awaitable[None]]


def make_profile(**overrides) -> Profile:
    values = dict(
        id="p-1",
        name="john",
        first_name="John",
        last_name="Doe",
        email="john@x.com",
        phone="+1 555 0100",
        address=Address(street1="1 Main St", city="Springfield", state="IL", postal_code="62701", country="US"),
        date_of_birth="1990-04-15",
    )
    values.update(overrides)
    return Profile(**values)


class FakeDriver:
    """
    In-memory driver serving canned HTML.

    ``pages`` maps URLs to HTML (``SIGNUP_HTML`` by default). Clicking a
    submit control swaps in ``after_submit`` at ``<url>/done``. ``on_navigate``
    runs before every navigation and may block or raise.
    """

    def __init__(
        self,
        factory: "FakeDriverFactory",
        pages: Optional[Dict[str, str]] = None,
        after_submit: str = SUCCESS_HTML,
        on_navigate: Optional[NavigateHook] = None,
    ):
        self.factory = factory
        self.pages = pages or {}
        self.after_submit = after_submit
        self.on_navigate = on_navigate
        self.current = PageSnapshot(url="about:blank")
        self.filled: Dict[str, str] = {}
        self.clicks: List[str] = []
        self.resets = 0
        self.closed = False

    async def navigate(self, url: str, timeout: float) -> PageSnapshot:
        self.factory.navigations.append(url)
        self.factory.active += 1
        self.factory.peak_active = max(self.factory.peak_active, self.factory.active)
        try:
            if self.on_navigate is not None:
                await self.on_navigate(url)
        finally:
            self.factory.active -= 1

        html = self.pages.get(url, SIGNUP_HTML)
        title = BeautifulSoup(html, "html.parser").title
        self.current = PageSnapshot(url=url, title=title.get_text() if title else "", html=html, status_code=200)
        return self.current

    async def fill_field(self, selector: str, value: str, field_type: str = "text") -> None:
        if not self._exists(selector):
            raise FieldNotFoundError(f"Field not found: {selector}")
        self.filled[selector] = value

    async def click(self, selector: str) -> None:
        if not self._exists(selector):
            raise FieldNotFoundError(f"Control not found: {selector}")
        self.clicks.append(selector)
        if self.after_submit is not None:
            html = self.after_submit
            title = BeautifulSoup(html, "html.parser").title
            url = self.current.url if html is ERROR_HTML else self.current.url.rstrip("/") + "/done"
            self.current = PageSnapshot(url=url, title=title.get_text() if title else "", html=html, status_code=200)

    async def snapshot(self) -> PageSnapshot:
        return self.current

    async def screenshot(self, path: str) -> Optional[str]:
        return path

    async def reset(self) -> None:
        self.resets += 1
        self.filled = {}
        self.clicks = []
        self.current = PageSnapshot(url="about:blank")

    async def close(self) -> None:
        self.closed = True

    def _exists(self, selector: str) -> bool:
        soup = BeautifulSoup(self.current.html or "", "html.parser")
        try:
            return bool(soup.select(selector))
        except SelectorSyntaxError:
            return False


class FakeDriverFactory:
    """Pool factory producing ``FakeDriver`` instances that share counters."""

    def __init__(
        self,
        pages: Optional[Dict[str, str]] = None,
        after_submit: str = SUCCESS_HTML,
        on_navigate: Optional[NavigateHook] = None,
        fail_launch: Optional[Exception] = None,
    ):
        self.pages = pages or {}
        self.after_submit = after_submit
        self.on_navigate = on_navigate
        self.fail_launch = fail_launch
        self.drivers: List[FakeDriver] = []
        self.navigations: List[str] = []
        self.active = 0
        self.peak_active = 0

    async def __call__(self) -> FakeDriver:
        await asyncio.sleep(0)
        if self.fail_launch is not None:
            raise self.fail_launch
        driver = FakeDriver(self, self.pages, self.after_submit, self.on_navigate)
        self.drivers.append(driver)
        return driver


class Gate:
    """Per-URL events that hold a navigation until the test releases it."""

    def __init__(self):
        self.events: Dict[str, asyncio.Event] = {}
        self.opened = False

    def event(self, url: str) -> asyncio.Event:
        if url not in self.events:
            self.events[url] = asyncio.Event()
        return self.events[url]

    def release(self, url: str) -> None:
        self.event(url).set()

    def release_all(self) -> None:
        """Release every held navigation and let later ones through."""
        self.opened = True
        for event in self.events.values():
            event.set()

    async def __call__(self, url: str) -> None:
        if self.opened:
            return
        await self.event(url).wait()
