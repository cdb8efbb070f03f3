"""
Single-surface provider for constrained environments.

Serverless invocations cannot keep a pool alive between requests, so this
provider creates exactly one engine and one surface per process, guarded by
a shared completion token so concurrent cold starts never launch a second
engine. Leases are exclusive: callers queue on a lock.
"""

import asyncio
import itertools
import logging
from typing import Callable, Optional

from ..config.settings import settings
from ..errors import AcquisitionTimeout, EngineFault, PoolClosed, SystemicPoolFailure
from .pool import PAGE_CLOSE_TIMEOUT, PoolStats
from .protocol import RenderEngine
from .single_flight import SingleFlight
from .surface import RenderSurface, SurfaceLease, SurfaceState

logger = logging.getLogger(__name__)


class SingleSurfacePool:
    """Same lease interface as RenderSurfacePool, capacity fixed at one."""

    max_size = 1

    def __init__(
        self,
        engine_factory: Callable[[], RenderEngine],
        surface_create_timeout: Optional[float] = None,
    ):
        self._engine_factory = engine_factory
        self.surface_create_timeout = (
            surface_create_timeout
            if surface_create_timeout is not None
            else settings.surface_create_timeout
        )
        self._engine_token = SingleFlight(self._launch_engine)
        self._surface_token = SingleFlight(self._open_surface)
        self._lease_lock = asyncio.Lock()
        self._generations = itertools.count(1)
        self._closed = False

        self.engines_created = 0
        self.surfaces_created = 0
        self.destroyed_total = 0
        self.creation_failures = 0
        self.max_leased_observed = 0

    async def _launch_engine(self) -> RenderEngine:
        engine = self._engine_factory()
        self.engines_created += 1
        logger.info("Starting render engine (single-surface mode)")
        await engine.start()
        return engine

    async def _open_surface(self) -> RenderSurface:
        engine = await self._engine_token.get()
        page = await engine.new_page()
        self.surfaces_created += 1
        return RenderSurface(f"single-{self.surfaces_created}", page)

    async def ensure_surface(self) -> RenderSurface:
        """Return the one surface, creating engine and page on first use."""
        try:
            return await asyncio.wait_for(
                self._surface_token.get(), self.surface_create_timeout
            )
        except asyncio.TimeoutError as e:
            error: Exception = EngineFault(
                f"Surface creation exceeded {self.surface_create_timeout:.1f}s"
            )
            cause: Exception = e
        except Exception as e:
            error = e
            cause = e

        self.creation_failures += 1
        if self.surfaces_created == 0:
            raise SystemicPoolFailure(f"Could not create the render surface: {error}") from cause
        raise EngineFault(f"Could not recreate the render surface: {error}") from cause

    async def acquire(
        self,
        timeout: Optional[float] = None,
        avoid_surface_id: Optional[str] = None,
        recipient_index: Optional[int] = None,
    ) -> SurfaceLease:
        if self._closed:
            raise PoolClosed("Single-surface provider is shut down")

        timeout = settings.acquire_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._lease_lock.acquire(), timeout)
        except asyncio.TimeoutError:
            raise AcquisitionTimeout(timeout) from None

        try:
            if self._closed:
                raise PoolClosed("Single-surface provider is shut down")
            surface = await self.ensure_surface()
        except BaseException:
            self._lease_lock.release()
            raise

        surface.state = SurfaceState.LEASED
        surface.generation = next(self._generations)
        surface.lease_count += 1
        self.max_leased_observed = 1
        return SurfaceLease(
            surface=surface,
            generation=surface.generation,
            recipient_index=recipient_index,
        )

    async def release(self, lease: SurfaceLease, healthy: Optional[bool] = None) -> None:
        if healthy is None:
            healthy = lease.healthy
        if not lease.is_current:
            logger.warning(
                f"Ignoring stale release of surface {lease.surface_id} "
                f"(lease generation {lease.generation})"
            )
            return

        surface = lease.surface
        try:
            if healthy and surface.page.is_alive:
                surface.state = SurfaceState.FREE
            else:
                logger.info(f"Recreating surface {surface.id}: {lease.fault or 'released unhealthy'}")
                surface.state = SurfaceState.DEAD
                surface.healthy = False
                self._surface_token.reset()
                await self._close_page(surface)
        finally:
            self._lease_lock.release()

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        drain_timeout = (
            settings.shutdown_drain_timeout if drain_timeout is None else drain_timeout
        )
        self._closed = True
        drained = True
        try:
            await asyncio.wait_for(self._lease_lock.acquire(), drain_timeout)
        except asyncio.TimeoutError:
            drained = False
            logger.warning(f"Shutting down with the surface still leased after {drain_timeout:.1f}s")

        try:
            surface = self._surface_token.reset()
            if surface is not None:
                surface.state = SurfaceState.DEAD
                await self._close_page(surface)
            engine = self._engine_token.reset()
            if engine is not None:
                await engine.close()
                logger.info("Render engine closed")
        finally:
            if drained:
                self._lease_lock.release()

    def stats(self) -> PoolStats:
        surface = self._surface_token.peek()
        leased = 1 if surface is not None and surface.state == SurfaceState.LEASED else 0
        return PoolStats(
            max_size=1,
            total=1 if surface is not None else 0,
            free=1 if surface is not None and not leased else 0,
            leased=leased,
            creating=1 if self._surface_token.in_flight else 0,
            created_total=self.surfaces_created,
            destroyed_total=self.destroyed_total,
            creation_failures=self.creation_failures,
            max_leased_observed=self.max_leased_observed,
            engine_started=self._engine_token.ready,
            closed=self._closed,
        )

    @property
    def engine_launches(self) -> int:
        return self._engine_token.started_count

    async def __aenter__(self) -> "SingleSurfacePool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def _close_page(self, surface: RenderSurface) -> None:
        self.destroyed_total += 1
        try:
            await asyncio.wait_for(surface.page.close(), PAGE_CLOSE_TIMEOUT)
        except Exception as e:
            logger.warning(f"Error closing surface {surface.id}: {e}")
