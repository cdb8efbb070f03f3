"""
Core data models shared by the renderer, assembler and orchestrator.
"""

import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .errors import ErrorKind

TEXT_OBJECT_TYPES = {"textbox", "i-text", "itext", "text"}

# {firstName} or {{firstName}}
PLACEHOLDER_PATTERN = re.compile(r"\{\{?\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}?\}")

# Upstream recipient sources use more than one naming scheme
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "name": ("first_name", "firstName"),
    "firstName": ("name", "first_name"),
    "first_name": ("name", "firstName"),
    "lastname": ("last_name", "lastName"),
    "lastName": ("lastname", "last_name"),
    "last_name": ("lastname", "lastName"),
    "address": ("address_line1",),
    "address_line1": ("address",),
    "zip": ("zip_code",),
    "zip_code": ("zip",),
    "phone": ("phoneNumber", "phone_number"),
    "phoneNumber": ("phone", "phone_number"),
}


class OutputMode(str, Enum):
    """How rendered pages are serialized"""
    ONE_FILE_PER_RECIPIENT = "one_file_per_recipient"
    MERGED = "merged"


class RenderStatus(str, Enum):
    """Outcome of one recipient render attempt"""
    SUCCESS = "success"
    FAILED = "failed"


class FieldKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"


@dataclass(frozen=True)
class TemplateField:
    """A named, personalizable slot in a template."""
    name: str
    required: bool = False
    kind: FieldKind = FieldKind.TEXT


@dataclass(frozen=True)
class Template:
    """
    Immutable design description produced by the design tool.

    Attributes:
        id: Stable template identifier
        width: Canvas width in design units (CSS pixels)
        height: Canvas height in design units
        scene: Fabric.js scene graph JSON ({"objects": [...]})
        background_url: Optional background image reference
        fields: Personalizable fields
    """
    id: str
    width: int
    height: int
    scene: Mapping[str, Any] = field(default_factory=dict)
    background_url: Optional[str] = None
    fields: Tuple[TemplateField, ...] = ()

    @property
    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Template":
        """Build a template from the template store's JSON shape."""
        scene = data.get("scene") or data.get("canvasJSON") or {}
        if isinstance(scene, str):
            scene = json.loads(scene)

        declared = data.get("fields")
        if declared:
            fields = tuple(
                TemplateField(
                    name=f["name"],
                    required=bool(f.get("required", False)),
                    kind=FieldKind(f.get("kind", "text")),
                )
                for f in declared
            )
        else:
            fields = detect_template_fields(scene)

        return cls(
            id=str(data["id"]),
            width=int(data.get("width") or data.get("canvasWidth")),
            height=int(data.get("height") or data.get("canvasHeight")),
            scene=scene,
            background_url=data.get("background_url") or data.get("backgroundUrl"),
            fields=fields,
        )


def detect_template_fields(scene: Mapping[str, Any]) -> Tuple[TemplateField, ...]:
    """
    Scan a scene graph for personalizable fields.

    Text objects contribute their {placeholder} names; objects carrying a
    variableType / fieldName marker contribute that name (images become
    image fields). Result is sorted by name.
    """
    found: Dict[str, TemplateField] = {}

    for obj in scene.get("objects", []) or []:
        obj_type = str(obj.get("type", "")).lower()
        if obj_type in TEXT_OBJECT_TYPES:
            for name in PLACEHOLDER_PATTERN.findall(obj.get("text") or ""):
                found.setdefault(name, TemplateField(name=name))

        marker = obj.get("fieldName") or obj.get("variableType")
        if marker and not obj.get("isReusable", False):
            kind = FieldKind.IMAGE if obj_type == "image" else FieldKind.TEXT
            found.setdefault(marker, TemplateField(name=marker, kind=kind))

    return tuple(found[name] for name in sorted(found))


@dataclass(frozen=True)
class RecipientRecord:
    """One recipient's field values, in the caller's list order."""
    values: Mapping[str, Any] = field(default_factory=dict)

    def get(self, name: str) -> Optional[Any]:
        """Field value by name, falling back to common upstream aliases."""
        value = self.values.get(name)
        if is_blank(value):
            for alias in FIELD_ALIASES.get(name, ()):
                alias_value = self.values.get(alias)
                if not is_blank(alias_value):
                    return alias_value
        return value

    @classmethod
    def coerce(cls, data: Any) -> "RecipientRecord":
        if isinstance(data, RecipientRecord):
            return data
        return cls(values=dict(data))


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


@dataclass(frozen=True)
class RenderResult:
    """Outcome of rendering one recipient. Immutable once produced."""
    recipient_index: int
    status: RenderStatus
    image: Optional[bytes] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    timing_ms: float = 0.0
    attempts: int = 1
    surface_id: Optional[str] = None
    generation: Optional[int] = None

    @property
    def success(self) -> bool:
        return self.status == RenderStatus.SUCCESS

    def to_dict(self) -> dict:
        """Serializable outcome (without image bytes)."""
        return {
            "recipient_index": self.recipient_index,
            "status": self.status.value,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "error_message": self.error_message,
            "timing_ms": round(self.timing_ms, 1),
            "attempts": self.attempts,
            "surface_id": self.surface_id,
        }
