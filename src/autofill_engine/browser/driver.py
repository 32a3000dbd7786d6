"""Browser driver capability consumed by the execution core."""

from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class PageSnapshot:
    """Immutable view of a page at one instant."""
    url: str
    title: str = ""
    html: str = ""
    status_code: Optional[int] = None


@runtime_checkable
class BrowserDriver(Protocol):
    """Narrow interface the core uses to drive one browser instance."""

    async def navigate(self, url: str, timeout: float) -> PageSnapshot:
        ...

    async def fill_field(self, selector: str, value: str, field_type: str = "text") -> None:
        ...

    async def click(self, selector: str) -> None:
        ...

    async def snapshot(self) -> PageSnapshot:
        ...

    async def screenshot(self, path: str) -> Optional[str]:
        ...

    async def reset(self) -> None:
        ...

    async def close(self) -> None:
        ...


class CaptchaSolver(Protocol):
    """External CAPTCHA solving service."""

    async def solve(self, driver: BrowserDriver, snapshot: PageSnapshot) -> bool:
        ...
