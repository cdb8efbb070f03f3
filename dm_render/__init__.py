"""
dm-render - Batch personalization rendering engine

Renders one shared direct-mail template per recipient through a pool of
reusable headless-browser surfaces and assembles the rendered rasters into
print-ready PDF pages.

Usage:
    from dm_render import BatchOrchestrator, Template, OutputMode

    async with build_surface_provider() as pool:
        orchestrator = BatchOrchestrator(pool)
        handle = await orchestrator.start_batch(
            template, recipients, format_name="postcard_4x6",
            mode=OutputMode.MERGED, concurrency=4,
        )
        job = await handle.wait()
"""

from .errors import ErrorKind, RenderEngineError
from .models import OutputMode, RecipientRecord, RenderResult, RenderStatus, Template, TemplateField
from .print_formats import PrintFormat, PrintFormatRegistry, lookup
from .render_engine import RenderSurfacePool, SingleSurfacePool, build_surface_provider
from .batch import BatchHandle, BatchJob, BatchOrchestrator, BatchState

__version__ = "1.0.0"
__all__ = [
    # Models
    "Template",
    "TemplateField",
    "RecipientRecord",
    "RenderResult",
    "RenderStatus",
    "OutputMode",
    # Formats
    "PrintFormat",
    "PrintFormatRegistry",
    "lookup",
    # Engine
    "RenderSurfacePool",
    "SingleSurfacePool",
    "build_surface_provider",
    # Batch
    "BatchOrchestrator",
    "BatchHandle",
    "BatchJob",
    "BatchState",
    # Errors
    "ErrorKind",
    "RenderEngineError",
]
