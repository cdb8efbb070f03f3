"""
Template harness - the HTML page a render surface loads once per template.

The harness hosts Fabric.js, loads the template scene, and exposes
``window.applyPersonalization(values, token)``. Each call resets every
personalizable object to its template original before injecting values,
then publishes ``token`` on ``window.renderToken`` (or
``window.renderErrorToken``) when the canvas is painted.
"""

import logging
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader

from ..config.settings import settings
from ..models import PLACEHOLDER_PATTERN, TEXT_OBJECT_TYPES, Template

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"


class TemplateHarness:
    """Builds harness HTML for a template."""

    def __init__(self, fabric_js_url: Optional[str] = None):
        self.fabric_js_url = fabric_js_url or settings.fabric_js_url
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=True,
        )

    def render(self, template: Template) -> str:
        page = self.jinja_env.get_template("harness.html.j2")
        html = page.render(
            template_id=template.id,
            width=template.width,
            height=template.height,
            scene=dict(template.scene),
            background_url=template.background_url,
            text_types=sorted(TEXT_OBJECT_TYPES),
            placeholder_pattern=PLACEHOLDER_PATTERN.pattern,
            fabric_js_url=self.fabric_js_url,
        )
        logger.debug(f"Built harness for template {template.id} ({len(html)} bytes)")
        return html
