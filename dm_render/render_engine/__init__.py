"""
Render engine - surfaces, pooling and the browser backend.

Usage:
    from dm_render.render_engine import build_surface_provider

    pool = build_surface_provider()
    async with pool:
        lease = await pool.acquire()
        ...
        await pool.release(lease)
"""

import logging
from typing import Callable, Optional, Union

from ..config.settings import Settings, settings as default_settings
from .harness import TemplateHarness
from .pool import PoolStats, RenderSurfacePool
from .protocol import EnginePage, RenderEngine
from .single_flight import SingleFlight
from .single_surface import SingleSurfacePool
from .surface import RenderSurface, StaleLease, SurfaceLease, SurfaceState

logger = logging.getLogger(__name__)

SurfaceProvider = Union[RenderSurfacePool, SingleSurfacePool]


def _default_engine_factory() -> RenderEngine:
    from .playwright_engine import PlaywrightEngine

    return PlaywrightEngine()


def build_surface_provider(
    config: Optional[Settings] = None,
    engine_factory: Optional[Callable[[], RenderEngine]] = None,
) -> SurfaceProvider:
    """
    Pick the surface provider for this execution environment.

    Serverless / single-surface mode gets a SingleSurfacePool; everything
    else gets a RenderSurfacePool sized from settings.
    """
    config = config or default_settings
    engine_factory = engine_factory or _default_engine_factory

    if config.use_single_surface:
        logger.info("Using single-surface provider")
        return SingleSurfacePool(
            engine_factory,
            surface_create_timeout=config.surface_create_timeout,
        )

    logger.info(f"Using render surface pool (max_size={config.pool_max_size})")
    return RenderSurfacePool(
        engine_factory(),
        max_size=config.pool_max_size,
        surface_create_timeout=config.surface_create_timeout,
        retry_surface_policy=config.retry_surface_policy,
    )


__all__ = [
    "EnginePage",
    "PoolStats",
    "RenderEngine",
    "RenderSurface",
    "RenderSurfacePool",
    "SingleFlight",
    "SingleSurfacePool",
    "StaleLease",
    "SurfaceLease",
    "SurfaceProvider",
    "SurfaceState",
    "TemplateHarness",
    "build_surface_provider",
]
