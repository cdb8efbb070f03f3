"""
Render surfaces and leases.

A RenderSurface wraps one engine page. Lease state, generation and health
are only mutated by the owning pool; everything else reaches the surface
through a SurfaceLease, which stops working once its generation is stale.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..errors import EngineFault
from .protocol import EnginePage


class SurfaceState(str, Enum):
    """Lease state of a render surface"""
    FREE = "free"
    LEASED = "leased"
    RECYCLING = "recycling"
    DEAD = "dead"


class StaleLease(EngineFault):
    """Operation attempted through a lease whose surface was recycled"""
    pass


class RenderSurface:
    """One reusable engine page plus its pool bookkeeping."""

    def __init__(self, surface_id: str, page: EnginePage):
        self.id = surface_id
        self.page = page
        self.state = SurfaceState.FREE
        self.generation = 0
        self.healthy = True
        self.template_id: Optional[str] = None
        self.lease_count = 0
        self.created_at = time.time()

    def __repr__(self) -> str:
        return (
            f"RenderSurface(id={self.id!r}, state={self.state.value}, "
            f"generation={self.generation}, healthy={self.healthy})"
        )


@dataclass(eq=False)
class SurfaceLease:
    """
    A borrowed surface at a fixed generation.

    Attributes:
        surface: The leased surface
        generation: Surface generation at lease time
        recipient_index: Work item this lease services (if any)
        healthy: Outcome reported back to the pool on release
        fault: Reason the lease was marked unhealthy
    """
    surface: RenderSurface
    generation: int
    recipient_index: Optional[int] = None
    healthy: bool = True
    fault: Optional[str] = None

    @property
    def surface_id(self) -> str:
        return self.surface.id

    @property
    def is_current(self) -> bool:
        return (
            self.surface.state == SurfaceState.LEASED
            and self.surface.generation == self.generation
        )

    @property
    def page(self) -> EnginePage:
        if not self.is_current:
            raise StaleLease(
                f"Surface {self.surface.id} moved on from generation {self.generation} "
                f"to {self.surface.generation}"
            )
        return self.surface.page

    @property
    def template_id(self) -> Optional[str]:
        return self.surface.template_id

    def note_template(self, template_id: Optional[str]) -> None:
        """Record which template harness is loaded on the surface."""
        if self.is_current:
            self.surface.template_id = template_id

    def mark_unhealthy(self, reason: str) -> None:
        self.healthy = False
        self.fault = reason
