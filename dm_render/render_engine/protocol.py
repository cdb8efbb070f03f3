"""
RenderEngine / EnginePage protocols - the contract every rendering backend
must satisfy.

Usage:
    engine = PlaywrightEngine()
    await engine.start()
    page = await engine.new_page()
    await page.load_harness(html, width, height, timeout=60)
    await page.personalize(values, token)
    await page.wait_for_render(token, timeout=30)
    png = await page.capture()

Implementations raise EngineFault for crashes / navigation errors and
RenderTimeout when a bounded wait expires.
"""

from __future__ import annotations

from typing import Mapping, Protocol, runtime_checkable


@runtime_checkable
class EnginePage(Protocol):
    """One page/context of the rendering engine."""

    @property
    def is_alive(self) -> bool: ...

    async def load_harness(self, html: str, width: int, height: int, timeout: float) -> None: ...

    async def personalize(self, values: Mapping[str, str], token: str) -> None: ...

    async def wait_for_render(self, token: str, timeout: float) -> None: ...

    async def capture(self) -> bytes: ...

    async def close(self) -> None: ...


@runtime_checkable
class RenderEngine(Protocol):
    """A rendering engine process able to open pages."""

    @property
    def is_connected(self) -> bool: ...

    async def start(self) -> None: ...

    async def new_page(self) -> EnginePage: ...

    async def close(self) -> None: ...
