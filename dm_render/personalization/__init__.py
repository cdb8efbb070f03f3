from .fields import field_names, resolve_field_values
from .renderer import PNG_SIGNATURE, PersonalizationRenderer, render_token

__all__ = [
    "PNG_SIGNATURE",
    "PersonalizationRenderer",
    "field_names",
    "render_token",
    "resolve_field_values",
]
