"""
Field resolution - recipient record -> harness value map.
"""

from typing import Any, Dict, List

from ..errors import MissingRequiredField
from ..models import RecipientRecord, Template, is_blank, detect_template_fields


def field_names(template: Template) -> List[str]:
    """Declared fields plus any placeholders found in the scene."""
    names = [f.name for f in template.fields]
    for detected in detect_template_fields(template.scene):
        if detected.name not in names:
            names.append(detected.name)
    return names


def resolve_field_values(template: Template, recipient: RecipientRecord) -> Dict[str, str]:
    """
    Resolve every template field for one recipient.

    Missing optional fields resolve to "" so nothing from a previous
    recipient can survive on a reused surface.

    Raises:
        MissingRequiredField: A required field is absent or blank
    """
    missing = [
        name for name in template.required_fields
        if is_blank(recipient.get(name))
    ]
    if missing:
        raise MissingRequiredField(missing)

    return {name: _as_text(recipient.get(name)) for name in field_names(template)}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)
