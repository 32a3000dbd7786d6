"""Bounded pool of reusable browser instances."""

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from autofill_engine.browser.driver import BrowserDriver
from autofill_engine.core.errors import PoolAcquireTimeout, PoolClosedError, SystemResourceError
from autofill_engine.utils.logging import get_logger

logger = get_logger(__name__)

DriverFactory = Callable[[], Awaitable[BrowserDriver]]


@dataclass(eq=False)
class PooledBrowser:
    """Exclusive right to one browser instance until released."""
    id: int
    driver: BrowserDriver
    acquired_at: datetime = field(default_factory=datetime.now)
    jobs_served: int = 0


class BrowserPool:
    """
    Fixed-size pool of browser instances.

    Instances are launched lazily by ``factory`` and reused across jobs.
    ``acquire`` waits for a free slot and only fails when its timeout
    elapses or the pool is closed.
    """

    def __init__(self, factory: DriverFactory, size: int):
        """
        Initialize the pool.

        Args:
            factory: Coroutine function returning a started driver
            size: Maximum number of simultaneously acquired instances
        """
        if size < 1:
            raise ValueError("Pool size must be at least 1")

        self.factory = factory
        self.size = size
        self.logger = logger.bind(component="browser_pool")

        self._slots = asyncio.Semaphore(size)
        self._idle: List[PooledBrowser] = []
        self._outstanding: Dict[int, PooledBrowser] = {}
        self._ids = itertools.count(1)
        self._closed = False

        self.launched = 0
        self.peak_outstanding = 0

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    @property
    def idle(self) -> int:
        return len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    async def acquire(self, timeout: Optional[float] = None) -> PooledBrowser:
        """
        Acquire an instance, waiting for a free slot.

        Args:
            timeout: Seconds to wait for a slot; None waits indefinitely

        Returns:
            PooledBrowser handle that must be passed back to ``release``

        Raises:
            PoolAcquireTimeout: No slot was freed within ``timeout``
            PoolClosedError: The pool is closed
            SystemResourceError: A new instance could not be launched
        """
        if self._closed:
            raise PoolClosedError("Browser pool is closed")

        try:
            await asyncio.wait_for(self._slots.acquire(), timeout)
        except asyncio.TimeoutError:
            self.logger.warning("Timed out waiting for a browser slot", timeout=timeout, size=self.size)
            raise PoolAcquireTimeout(f"No browser slot available after {timeout}s") from None

        try:
            if self._closed:
                raise PoolClosedError("Browser pool is closed")
            handle = self._idle.pop() if self._idle else await self._launch()
        except BaseException:
            self._slots.release()
            raise

        handle.acquired_at = datetime.now()
        self._outstanding[handle.id] = handle
        self.peak_outstanding = max(self.peak_outstanding, len(self._outstanding))
        self.logger.debug("Browser acquired", handle=handle.id, outstanding=self.outstanding)
        return handle

    async def _launch(self) -> PooledBrowser:
        try:
            driver = await self.factory()
        except SystemResourceError:
            raise
        except Exception as e:
            self.logger.error("Browser launch failed", error=str(e), error_type=type(e).__name__)
            raise SystemResourceError(f"Browser launch failed: {e}") from e

        self.launched += 1
        handle = PooledBrowser(id=next(self._ids), driver=driver)
        self.logger.info("Browser instance launched", handle=handle.id, launched=self.launched)
        return handle

    async def release(self, handle: PooledBrowser) -> None:
        """Return an instance to the pool, resetting it for the next job."""
        if self._outstanding.pop(handle.id, None) is None:
            raise ValueError(f"Browser handle {handle.id} is not outstanding")

        handle.jobs_served += 1
        try:
            if self._closed:
                await self._dispose(handle)
            else:
                try:
                    await handle.driver.reset()
                except Exception as e:
                    self.logger.warning("Browser reset failed, discarding instance", handle=handle.id, error=str(e))
                    await self._dispose(handle)
                except BaseException:
                    # Interrupted mid-reset; the instance is in an unknown state
                    self.logger.warning("Browser reset interrupted, discarding instance", handle=handle.id)
                    await self._dispose(handle)
                    raise
                else:
                    self._idle.append(handle)
        finally:
            self._slots.release()
            self.logger.debug("Browser released", handle=handle.id, outstanding=self.outstanding)

    async def _dispose(self, handle: PooledBrowser) -> None:
        try:
            await handle.driver.close()
        except Exception as e:
            self.logger.warning("Error closing browser instance", handle=handle.id, error=str(e))

    @asynccontextmanager
    async def slot(self, timeout: Optional[float] = None) -> AsyncIterator[BrowserDriver]:
        """Acquire an instance for the duration of a ``async with`` block."""
        handle = await self.acquire(timeout)
        try:
            yield handle.driver
        finally:
            await self.release(handle)

    async def close(self) -> None:
        """Close idle instances; outstanding ones are closed on release."""
        if self._closed:
            return
        self._closed = True

        idle, self._idle = self._idle, []
        for handle in idle:
            await self._dispose(handle)

        self.logger.info(
            "Browser pool closed",
            closed_instances=len(idle),
            outstanding=self.outstanding,
            peak_outstanding=self.peak_outstanding,
        )

    def get_stats(self) -> Dict[str, int]:
        return {
            "size": self.size,
            "outstanding": self.outstanding,
            "idle": self.idle,
            "launched": self.launched,
            "peak_outstanding": self.peak_outstanding,
        }
