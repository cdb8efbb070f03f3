"""
Playwright-backed render engine (headless Chromium).

One browser process per engine; every surface is an isolated browser
context with a single page. Playwright errors are translated into the
engine's own taxonomy at this boundary:

    playwright TimeoutError -> RenderTimeout
    playwright Error        -> EngineFault
"""

import logging
from contextlib import asynccontextmanager
from typing import List, Mapping, Optional

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config.settings import settings
from ..errors import EngineFault, RenderTimeout

logger = logging.getLogger(__name__)

HARNESS_READY_CHECK = "() => window.harnessReady === true || !!window.harnessError"
RENDER_DONE_CHECK = "(token) => window.renderToken === token || window.renderErrorToken === token"
RENDER_ERROR_FOR = "(token) => window.renderErrorToken === token ? window.renderError : null"
# Fire and forget: completion is reported through window.renderToken
START_PERSONALIZATION = "([values, token]) => { window.applyPersonalization(values, token); }"


@asynccontextmanager
async def _translate_errors(stage: str, timeout: float):
    try:
        yield
    except PlaywrightTimeoutError as e:
        raise RenderTimeout(timeout, stage=stage) from e
    except PlaywrightError as e:
        raise EngineFault(f"{stage} failed: {e}") from e


class PlaywrightPage:
    """EnginePage over one Playwright browser context."""

    def __init__(self, context: BrowserContext, page: Page):
        self._context = context
        self._page = page
        self._crashed = False
        page.on("crash", self._on_crash)
        page.on("console", self._on_console)

    def _on_crash(self, page: Page) -> None:
        self._crashed = True
        logger.error("Render page crashed")

    def _on_console(self, message) -> None:
        if message.type == "error":
            logger.warning(f"Harness console error: {message.text}")

    @property
    def is_alive(self) -> bool:
        return not self._crashed and not self._page.is_closed()

    async def load_harness(self, html: str, width: int, height: int, timeout: float) -> None:
        timeout_ms = timeout * 1000
        async with _translate_errors("Harness load", timeout):
            await self._page.set_viewport_size({"width": width, "height": height})
            await self._page.set_content(html, wait_until="load", timeout=timeout_ms)
            await self._page.wait_for_function(HARNESS_READY_CHECK, timeout=timeout_ms)
            error = await self._page.evaluate("() => window.harnessError")
        if error:
            raise EngineFault(f"Harness initialization failed: {error}")

    async def personalize(self, values: Mapping[str, str], token: str) -> None:
        async with _translate_errors("Personalization", 0):
            await self._page.evaluate(START_PERSONALIZATION, [dict(values), token])

    async def wait_for_render(self, token: str, timeout: float) -> None:
        async with _translate_errors("Render", timeout):
            await self._page.wait_for_function(RENDER_DONE_CHECK, arg=token, timeout=timeout * 1000)
            error = await self._page.evaluate(RENDER_ERROR_FOR, token)
        if error:
            raise EngineFault(f"Harness reported render error: {error}")

    async def capture(self) -> bytes:
        async with _translate_errors("Capture", 0):
            canvas = await self._page.query_selector("#canvas")
            if canvas is None:
                raise EngineFault("Harness canvas element not found")
            return await canvas.screenshot(type="png")

    async def close(self) -> None:
        try:
            await self._context.close()
        except PlaywrightError as e:
            logger.debug(f"Context already gone: {e}")


class PlaywrightEngine:
    """RenderEngine running a single headless Chromium process."""

    def __init__(
        self,
        headless: Optional[bool] = None,
        args: Optional[List[str]] = None,
        executable_path: Optional[str] = None,
        device_scale_factor: Optional[float] = None,
    ):
        self.headless = settings.browser_headless if headless is None else headless
        self.args = list(args if args is not None else settings.browser_args)
        self.executable_path = executable_path or settings.browser_executable_path
        self.device_scale_factor = device_scale_factor or settings.device_scale_factor
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    @property
    def is_connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def start(self) -> None:
        if self.is_connected:
            return

        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=self.args,
                executable_path=self.executable_path,
            )
        except PlaywrightError as e:
            await self._playwright.stop()
            self._playwright = None
            raise EngineFault(f"Failed to launch Chromium: {e}") from e

        self._browser.on("disconnected", self._on_disconnected)
        logger.info(f"Chromium {self._browser.version} launched (headless={self.headless})")

    def _on_disconnected(self, browser: Browser) -> None:
        logger.error("Chromium disconnected")

    async def new_page(self) -> PlaywrightPage:
        if not self.is_connected:
            raise EngineFault("Render engine is not running")
        try:
            context = await self._browser.new_context(
                viewport={"width": 800, "height": 600},
                device_scale_factor=self.device_scale_factor,
            )
            page = await context.new_page()
        except PlaywrightError as e:
            raise EngineFault(f"Failed to open render page: {e}") from e
        return PlaywrightPage(context, page)

    async def close(self) -> None:
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.warning(f"Error closing Chromium: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
