"""
Personalization Renderer - drives one leased surface through one recipient.

The renderer never retries and never releases the lease; it reports the
outcome as a RenderResult and marks the lease unhealthy when the surface
can no longer be trusted. Retry and release belong to the orchestrator.

Usage:
    renderer = PersonalizationRenderer()
    result = await renderer.render(lease, template, recipient, recipient_index=3)
    await pool.release(lease)   # lease.healthy carries the outcome
"""

import logging
import time
from typing import Optional

from ..config.settings import settings
from ..errors import EngineFault, MissingRequiredField, RenderEngineError
from ..models import RecipientRecord, RenderResult, RenderStatus, Template
from ..render_engine.harness import TemplateHarness
from ..render_engine.surface import StaleLease, SurfaceLease
from .fields import resolve_field_values

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def render_token(lease: SurfaceLease) -> str:
    """Completion token unique to this surface generation."""
    return f"{lease.surface_id}:{lease.generation}"


class PersonalizationRenderer:
    """Renders one recipient on a leased surface."""

    def __init__(
        self,
        harness: Optional[TemplateHarness] = None,
        render_timeout: Optional[float] = None,
        harness_load_timeout: Optional[float] = None,
    ):
        self.harness = harness or TemplateHarness()
        self.render_timeout = render_timeout if render_timeout is not None else settings.render_timeout
        self.harness_load_timeout = (
            harness_load_timeout
            if harness_load_timeout is not None
            else settings.harness_load_timeout
        )
        self.harness_loads = 0

    async def render(
        self,
        lease: SurfaceLease,
        template: Template,
        recipient: RecipientRecord,
        recipient_index: int,
        timeout: Optional[float] = None,
    ) -> RenderResult:
        """
        Produce the personalized raster for one recipient.

        Failures come back as a failed RenderResult, never as an exception.
        """
        timeout = self.render_timeout if timeout is None else timeout
        recipient = RecipientRecord.coerce(recipient)
        start = time.perf_counter()

        try:
            values = resolve_field_values(template, recipient)
        except MissingRequiredField as e:
            # Surface untouched, stays healthy
            return self._failed(lease, recipient_index, e, start)

        try:
            image = await self._render_on_surface(lease, template, values, timeout)
        except RenderEngineError as e:
            lease.mark_unhealthy(str(e))
            logger.warning(f"Recipient {recipient_index} failed on {lease.surface_id}: {e}")
            return self._failed(lease, recipient_index, e, start)
        except Exception as e:
            lease.mark_unhealthy(str(e))
            logger.exception(f"Unexpected engine error for recipient {recipient_index}")
            return self._failed(lease, recipient_index, EngineFault(str(e)), start)

        return RenderResult(
            recipient_index=recipient_index,
            status=RenderStatus.SUCCESS,
            image=image,
            timing_ms=(time.perf_counter() - start) * 1000,
            surface_id=lease.surface_id,
            generation=lease.generation,
        )

    async def _render_on_surface(self, lease, template: Template, values, timeout: float) -> bytes:
        page = lease.page

        if lease.template_id != template.id:
            lease.note_template(None)
            html = self.harness.render(template)
            await page.load_harness(html, template.width, template.height, self.harness_load_timeout)
            lease.note_template(template.id)
            self.harness_loads += 1
            logger.debug(f"Loaded template {template.id} on {lease.surface_id}")

        token = render_token(lease)
        await page.personalize(values, token)
        await page.wait_for_render(token, timeout)
        image = await page.capture()

        if not image or not image.startswith(PNG_SIGNATURE):
            raise EngineFault("Capture did not produce a PNG image")
        if not lease.is_current:
            raise StaleLease(
                f"Discarding render from {lease.surface_id}: generation {lease.generation} is stale"
            )
        return image

    def _failed(
        self,
        lease: SurfaceLease,
        recipient_index: int,
        error: RenderEngineError,
        start: float,
    ) -> RenderResult:
        return RenderResult(
            recipient_index=recipient_index,
            status=RenderStatus.FAILED,
            error_kind=error.kind,
            error_message=str(error),
            timing_ms=(time.perf_counter() - start) * 1000,
            surface_id=lease.surface_id,
            generation=lease.generation,
        )
