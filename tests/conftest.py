"""
Pytest Configuration and Fixtures

FakeEngine stands in for Chromium: pages record what was injected and
capture real PNGs (Pillow) sized to the loaded template.
"""

import asyncio
import io
from typing import Dict, List, Optional

import pytest
from PIL import Image

from dm_render.batch import BatchOrchestrator, InMemoryBatchStore, LocalOutputStore
from dm_render.errors import EngineFault, RenderTimeout
from dm_render.models import Template, TemplateField
from dm_render.page_assembly import PageAssembler
from dm_render.personalization import PersonalizationRenderer
from dm_render.print_formats import DEFAULT_FORMATS, PrintFormat, PrintFormatRegistry
from dm_render.render_engine import RenderSurfacePool


def make_png(width: int, height: int, color=(255, 255, 255)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakePage:
    """In-memory EnginePage"""

    def __init__(self, engine: "FakeEngine", page_id: int):
        self.engine = engine
        self.id = page_id
        self.alive = True
        self.closed = False
        self.size = (0, 0)
        self.load_count = 0
        self.current_values: Dict[str, str] = {}
        self.values_history: List[Dict[str, str]] = []
        self._token: Optional[str] = None

    @property
    def is_alive(self) -> bool:
        return self.alive and not self.closed

    async def load_harness(self, html, width, height, timeout):
        if self.engine.fail_load:
            raise EngineFault("harness navigation failed")
        self.load_count += 1
        self.engine.harness_loads += 1
        self.size = (width, height)
        self.current_values = {}

    async def personalize(self, values, token):
        name = values.get("name", "")
        if self.engine.crashes.get(name, 0) > 0:
            self.engine.crashes[name] -= 1
            self.alive = False
            raise EngineFault(f"page crashed rendering {name}")
        # The harness resets every object before injecting
        self.current_values = dict(values)
        self.values_history.append(dict(values))
        self._token = token

    async def wait_for_render(self, token, timeout):
        delay = self.engine.delays.get(self.current_values.get("name", ""), self.engine.default_delay)
        self.engine.in_flight += 1
        self.engine.max_in_flight = max(self.engine.max_in_flight, self.engine.in_flight)
        try:
            if delay > timeout:
                await asyncio.sleep(timeout)
                raise RenderTimeout(timeout)
            await asyncio.sleep(delay)
        finally:
            self.engine.in_flight -= 1
        if token != self._token:
            raise EngineFault("render token mismatch")

    async def capture(self):
        if self.engine.garbage_capture:
            return b"not a png"
        width, height = self.size
        scale = self.engine.capture_scale
        return make_png(int(width * scale), int(height * scale))

    async def close(self):
        self.closed = True


class FakeEngine:
    """In-memory RenderEngine"""

    def __init__(
        self,
        start_delay: float = 0.0,
        fail_start: bool = False,
        default_delay: float = 0.0,
        capture_scale: float = 1.0,
    ):
        self.start_delay = start_delay
        self.fail_start = fail_start
        self.fail_new_page = False
        self.fail_load = False
        self.garbage_capture = False
        self.default_delay = default_delay
        self.capture_scale = capture_scale
        self.delays: Dict[str, float] = {}
        self.crashes: Dict[str, int] = {}
        self.start_calls = 0
        self.harness_loads = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.pages: List[FakePage] = []
        self.connected = False
        self.closed = False

    @property
    def is_connected(self) -> bool:
        return self.connected

    async def start(self):
        self.start_calls += 1
        await asyncio.sleep(self.start_delay)
        if self.fail_start:
            raise EngineFault("browser failed to launch")
        self.connected = True

    async def new_page(self):
        if self.fail_new_page:
            raise EngineFault("could not open page")
        page = FakePage(self, len(self.pages) + 1)
        self.pages.append(page)
        return page

    async def close(self):
        self.closed = True
        self.connected = False


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def test_format():
    """200 x 100 px page: 2in x 1in at 100 dpi, no bleed"""
    return PrintFormat("test_card", width=2.0, height=1.0, bleed=0.0, dpi=100)


@pytest.fixture
def registry(test_format):
    return PrintFormatRegistry([test_format, *DEFAULT_FORMATS])


@pytest.fixture
def template():
    return Template(
        id="tpl-spring",
        width=200,
        height=100,
        scene={
            "objects": [
                {"type": "textbox", "text": "Hello {name}"},
                {"type": "textbox", "text": "Use code {{coupon}}"},
            ]
        },
        fields=(
            TemplateField("name", required=True),
            TemplateField("coupon"),
        ),
    )


@pytest.fixture
def make_recipients():
    def _make(count: int) -> List[dict]:
        return [{"name": f"R{i}", "coupon": f"C{i}"} for i in range(count)]

    return _make


@pytest.fixture
def pool(fake_engine):
    return RenderSurfacePool(fake_engine, max_size=2, surface_create_timeout=5)


@pytest.fixture
def make_orchestrator(registry, tmp_path):
    """Factory: orchestrator over the given pool with test-friendly timeouts"""

    def _make(pool, **overrides):
        options = dict(
            renderer=PersonalizationRenderer(render_timeout=5, harness_load_timeout=5),
            assembler=PageAssembler(max_upscale=2.0, allow_upscale=False),
            registry=registry,
            store=InMemoryBatchStore(),
            output_store=LocalOutputStore(output_dir=tmp_path / "out", write_timeout=5),
            retry_attempts=1,
            retry_backoff_seconds=0,
            acquire_timeout=5,
            render_timeout=5,
            write_timeout=5,
            zip_outputs=False,
        )
        options.update(overrides)
        return BatchOrchestrator(pool, **options)

    return _make


@pytest.fixture
def engine_cls():
    """FakeEngine class, for tests that need several engines"""
    return FakeEngine
