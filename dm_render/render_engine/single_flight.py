"""
Shareable completion token for one in-flight creation.

The first caller starts the factory and publishes its future; every
concurrent caller awaits that same future instead of starting its own
creation. A failed creation clears the token so a later caller may retry.
"""

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """
    At most one creation in flight, result shared by all callers.

    Usage:
        browser_token = SingleFlight(launch_browser)
        browser = await browser_token.get()   # safe under concurrent entry
    """

    def __init__(self, factory: Callable[[], Awaitable[T]]):
        self._factory = factory
        self._future: Optional[asyncio.Future] = None
        self.started_count = 0

    @property
    def in_flight(self) -> bool:
        return self._future is not None and not self._future.done()

    @property
    def ready(self) -> bool:
        future = self._future
        return (
            future is not None
            and future.done()
            and not future.cancelled()
            and future.exception() is None
        )

    async def get(self) -> T:
        future = self._future
        if future is None:
            self.started_count += 1
            future = asyncio.ensure_future(self._factory())
            future.add_done_callback(self._on_done)
            self._future = future
        # A single caller timing out must not cancel the shared creation
        return await asyncio.shield(future)

    def peek(self) -> Optional[T]:
        """Created value, or None when nothing has been created yet."""
        return self._future.result() if self.ready else None

    def reset(self) -> Optional[T]:
        """Forget the created value so the next get() creates a new one."""
        value = self.peek()
        if not self.in_flight:
            self._future = None
        return value

    def _on_done(self, future: asyncio.Future) -> None:
        if future.cancelled() or future.exception() is not None:
            if self._future is future:
                self._future = None
