"""
Render Surface Pool - bounded set of reusable engine pages.

The engine process is started lazily by the first acquire; surfaces are
created on demand up to ``max_size`` and recycled when released unhealthy.
All pool state is mutated under a single asyncio.Condition.

Usage:
    pool = RenderSurfacePool(PlaywrightEngine(), max_size=4)
    lease = await pool.acquire(timeout=30)
    try:
        ...  # render through lease.page
    finally:
        await pool.release(lease)
    await pool.shutdown()
"""

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import asdict, dataclass
from typing import Deque, Dict, List, Optional

from ..config.settings import settings
from ..errors import (
    AcquisitionTimeout,
    EngineFault,
    PoolClosed,
    SystemicPoolFailure,
)
from .protocol import EnginePage, RenderEngine
from .single_flight import SingleFlight
from .surface import RenderSurface, SurfaceLease, SurfaceState

logger = logging.getLogger(__name__)

PAGE_CLOSE_TIMEOUT = 10.0


@dataclass
class PoolStats:
    """Point-in-time pool counters"""
    max_size: int
    total: int
    free: int
    leased: int
    creating: int
    created_total: int
    destroyed_total: int
    creation_failures: int
    max_leased_observed: int
    engine_started: bool
    closed: bool

    def to_dict(self) -> dict:
        return asdict(self)


class RenderSurfacePool:
    """
    Lease/return interface over up to ``max_size`` render surfaces.

    Guarantees:
    - never more than ``max_size`` surfaces exist or are leased at once
    - a surface is leased to at most one holder at a time
    - every lease gets a generation strictly greater than any issued before
    - the engine process is launched at most once, however many callers race
    """

    def __init__(
        self,
        engine: RenderEngine,
        max_size: Optional[int] = None,
        surface_create_timeout: Optional[float] = None,
        retry_surface_policy: Optional[str] = None,
    ):
        self.engine = engine
        self.max_size = max_size if max_size is not None else settings.pool_max_size
        if self.max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        self.surface_create_timeout = (
            surface_create_timeout
            if surface_create_timeout is not None
            else settings.surface_create_timeout
        )
        self.retry_surface_policy = retry_surface_policy or settings.retry_surface_policy

        self._engine_start = SingleFlight(self._start_engine)
        self._cond = asyncio.Condition()
        self._surfaces: Dict[str, RenderSurface] = {}
        self._free: Deque[RenderSurface] = deque()
        self._index_owner: Dict[int, str] = {}
        self._creating = 0
        self._leased = 0
        self._closed = False
        self._surface_ids = itertools.count(1)
        self._generations = itertools.count(1)

        self.created_total = 0
        self.destroyed_total = 0
        self.creation_failures = 0
        self.max_leased_observed = 0

    # ========== Lease / Return ==========

    async def acquire(
        self,
        timeout: Optional[float] = None,
        avoid_surface_id: Optional[str] = None,
        recipient_index: Optional[int] = None,
    ) -> SurfaceLease:
        """
        Lease a free surface, creating one if below capacity.

        Args:
            timeout: Seconds to wait for capacity (default: settings.acquire_timeout)
            avoid_surface_id: Surface to pass over when another free one exists
            recipient_index: Work item the lease will service

        Raises:
            AcquisitionTimeout: Nothing became available in time
            SystemicPoolFailure: No surface could ever be created
            EngineFault: Creating a replacement surface failed
            PoolClosed: The pool is shutting down
        """
        timeout = settings.acquire_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        async with self._cond:
            while True:
                if self._closed:
                    raise PoolClosed("Render surface pool is shut down")

                surface = self._take_free(avoid_surface_id)
                if surface is not None:
                    return self._lease(surface, recipient_index)

                if len(self._surfaces) + self._creating < self.max_size:
                    self._creating += 1
                    break

                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise AcquisitionTimeout(timeout)
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    raise AcquisitionTimeout(timeout) from None

        # Creation runs outside the lock so other holders can release meanwhile
        try:
            surface = await self._create_surface()
        except BaseException:
            async with self._cond:
                self._creating -= 1
                self._cond.notify_all()
            raise

        async with self._cond:
            self._creating -= 1
            if not self._closed:
                self._surfaces[surface.id] = surface
                return self._lease(surface, recipient_index)

        await self._destroy(surface)
        raise PoolClosed("Render surface pool shut down during surface creation")

    async def release(self, lease: SurfaceLease, healthy: Optional[bool] = None) -> None:
        """
        Return a leased surface.

        Healthy surfaces go back to the free list; unhealthy ones are
        destroyed and their slot freed for a fresh surface. Releasing a
        lease twice, or after the surface moved on, is a logged no-op.
        """
        if healthy is None:
            healthy = lease.healthy
        surface = lease.surface
        destroy = False

        async with self._cond:
            if not lease.is_current:
                logger.warning(
                    f"Ignoring stale release of surface {surface.id} "
                    f"(lease generation {lease.generation}, current {surface.generation}, "
                    f"state {surface.state.value})"
                )
                return

            self._leased -= 1
            if lease.recipient_index is not None:
                self._index_owner.pop(lease.recipient_index, None)

            if healthy and surface.page.is_alive and not self._closed:
                surface.state = SurfaceState.FREE
                self._free.append(surface)
            else:
                if not healthy:
                    logger.info(
                        f"Recycling surface {surface.id} after generation {surface.generation}: "
                        f"{lease.fault or 'released unhealthy'}"
                    )
                surface.state = SurfaceState.RECYCLING
                surface.healthy = False
                self._surfaces.pop(surface.id, None)
                destroy = True

            self._cond.notify_all()

        if destroy:
            await self._destroy(surface)

    async def shutdown(self, drain_timeout: Optional[float] = None) -> None:
        """
        Stop leasing, wait (bounded) for in-flight leases, then destroy every
        surface and close the engine. Safe to call more than once.
        """
        drain_timeout = (
            settings.shutdown_drain_timeout if drain_timeout is None else drain_timeout
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + drain_timeout

        async with self._cond:
            self._closed = True
            self._cond.notify_all()

            while self._leased > 0:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(self._cond.wait(), remaining)
                except asyncio.TimeoutError:
                    break

            if self._leased > 0:
                logger.warning(
                    f"Shutting down with {self._leased} surface(s) still leased "
                    f"after {drain_timeout:.1f}s drain"
                )

            surfaces: List[RenderSurface] = list(self._surfaces.values())
            self._surfaces.clear()
            self._free.clear()
            self._index_owner.clear()
            self._leased = 0

        for surface in surfaces:
            await self._destroy(surface)

        if self._engine_start.ready:
            self._engine_start.reset()
            await self.engine.close()
            logger.info("Render engine closed")

    def stats(self) -> PoolStats:
        return PoolStats(
            max_size=self.max_size,
            total=len(self._surfaces),
            free=len(self._free),
            leased=self._leased,
            creating=self._creating,
            created_total=self.created_total,
            destroyed_total=self.destroyed_total,
            creation_failures=self.creation_failures,
            max_leased_observed=self.max_leased_observed,
            engine_started=self._engine_start.ready,
            closed=self._closed,
        )

    @property
    def engine_launches(self) -> int:
        return self._engine_start.started_count

    async def __aenter__(self) -> "RenderSurfacePool":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ========== Internals ==========

    def _take_free(self, avoid_surface_id: Optional[str]) -> Optional[RenderSurface]:
        if not self._free:
            return None

        chosen = None
        if avoid_surface_id and self.retry_surface_policy == "prefer_different":
            for candidate in self._free:
                if candidate.id != avoid_surface_id:
                    chosen = candidate
                    break
        if chosen is None:
            chosen = self._free[0]

        self._free.remove(chosen)
        return chosen

    def _lease(self, surface: RenderSurface, recipient_index: Optional[int]) -> SurfaceLease:
        if recipient_index is not None:
            owner = self._index_owner.get(recipient_index)
            if owner is not None:
                # Put it back before failing so capacity is not lost
                self._free.appendleft(surface)
                raise RuntimeError(
                    f"Recipient {recipient_index} is already being rendered on surface {owner}"
                )
            self._index_owner[recipient_index] = surface.id

        surface.state = SurfaceState.LEASED
        surface.generation = next(self._generations)
        surface.lease_count += 1
        self._leased += 1
        self.max_leased_observed = max(self.max_leased_observed, self._leased)

        return SurfaceLease(
            surface=surface,
            generation=surface.generation,
            recipient_index=recipient_index,
        )

    async def _start_engine(self) -> RenderEngine:
        logger.info("Starting render engine")
        await self.engine.start()
        return self.engine

    async def _open_page(self) -> EnginePage:
        await self._engine_start.get()
        return await self.engine.new_page()

    async def _create_surface(self) -> RenderSurface:
        try:
            page = await asyncio.wait_for(self._open_page(), self.surface_create_timeout)
        except asyncio.TimeoutError as e:
            error: Exception = EngineFault(
                f"Surface creation exceeded {self.surface_create_timeout:.1f}s"
            )
            cause: Exception = e
        except Exception as e:
            error = e
            cause = e
        else:
            self.created_total += 1
            surface = RenderSurface(f"surface-{next(self._surface_ids)}", page)
            logger.debug(f"Created {surface.id} ({self.created_total} total)")
            return surface

        self.creation_failures += 1
        if self.created_total == 0:
            logger.error(f"Render surface pool could not create any surface: {error}")
            raise SystemicPoolFailure(f"Could not create any render surface: {error}") from cause
        logger.warning(f"Replacement surface creation failed: {error}")
        raise EngineFault(f"Could not create render surface: {error}") from cause

    async def _destroy(self, surface: RenderSurface) -> None:
        surface.state = SurfaceState.DEAD
        self.destroyed_total += 1
        try:
            await asyncio.wait_for(surface.page.close(), PAGE_CLOSE_TIMEOUT)
        except Exception as e:
            logger.warning(f"Error closing surface {surface.id}: {e}")
