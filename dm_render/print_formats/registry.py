# dm_render/print_formats/registry.py

"""
Print Format Registry - named physical page geometry.

Formats are loaded once at process start (built-in table plus an optional
JSON file) and never mutated afterwards. Unknown names are an error, never a
silent default.

Usage:
    fmt = lookup("postcard_4x6")
    fmt.pixel_size        # (1875, 1275) at 300 dpi incl. bleed
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from ..errors import UnknownFormat

logger = logging.getLogger(__name__)

POINTS_PER_INCH = 72.0


@dataclass(frozen=True)
class PrintFormat:
    """
    Physical page geometry. Units are inches.

    width/height are the trim size; the printed sheet adds ``bleed`` on
    every edge.
    """
    name: str
    width: float
    height: float
    bleed: float
    dpi: int

    @property
    def page_width(self) -> float:
        return self.width + 2 * self.bleed

    @property
    def page_height(self) -> float:
        return self.height + 2 * self.bleed

    @property
    def pixel_size(self) -> Tuple[int, int]:
        """Full-bleed page size in pixels at the format's DPI."""
        return (round(self.page_width * self.dpi), round(self.page_height * self.dpi))

    @property
    def page_size_points(self) -> Tuple[float, float]:
        return (self.page_width * POINTS_PER_INCH, self.page_height * POINTS_PER_INCH)

    @property
    def is_landscape(self) -> bool:
        return self.width > self.height


class PrintFormatSpec(BaseModel):
    """Validated row of an external format table."""
    name: str = Field(..., min_length=1)
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    bleed: float = Field(default=0.125, ge=0)
    dpi: int = Field(default=300, gt=0)

    def to_format(self) -> PrintFormat:
        return PrintFormat(
            name=self.name,
            width=self.width,
            height=self.height,
            bleed=self.bleed,
            dpi=self.dpi,
        )


DEFAULT_FORMATS: Tuple[PrintFormat, ...] = (
    PrintFormat("postcard_4x6", width=6.0, height=4.0, bleed=0.125, dpi=300),
    PrintFormat("postcard_6x9", width=9.0, height=6.0, bleed=0.125, dpi=300),
    PrintFormat("postcard_6x11", width=11.0, height=6.0, bleed=0.125, dpi=300),
    PrintFormat("letter_8.5x11", width=8.5, height=11.0, bleed=0.125, dpi=300),
    PrintFormat("a4", width=8.27, height=11.69, bleed=0.125, dpi=300),
)


class PrintFormatRegistry:
    """Immutable name -> PrintFormat lookup."""

    def __init__(self, formats: Iterable[PrintFormat] = DEFAULT_FORMATS):
        table: Dict[str, PrintFormat] = {}
        for fmt in formats:
            table[fmt.name] = fmt
        self._formats: Mapping[str, PrintFormat] = MappingProxyType(table)

    def lookup(self, name: str) -> PrintFormat:
        """Return the format registered under ``name``; raise UnknownFormat otherwise."""
        try:
            return self._formats[name]
        except KeyError:
            raise UnknownFormat(name, self._formats.keys()) from None

    def names(self) -> List[str]:
        return sorted(self._formats)

    def __contains__(self, name: str) -> bool:
        return name in self._formats

    def __len__(self) -> int:
        return len(self._formats)

    @classmethod
    def from_file(
        cls,
        path: Path,
        base: Iterable[PrintFormat] = DEFAULT_FORMATS,
    ) -> "PrintFormatRegistry":
        """
        Load a JSON format table and merge it over ``base``.

        The file holds either a list of format objects or a mapping of
        name -> {width, height, bleed, dpi}.
        """
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if isinstance(raw, dict):
            raw = [{"name": name, **spec} for name, spec in raw.items()]

        loaded = [PrintFormatSpec(**row).to_format() for row in raw]
        logger.info(f"Loaded {len(loaded)} print formats from {path}")

        merged = {fmt.name: fmt for fmt in base}
        merged.update({fmt.name: fmt for fmt in loaded})
        return cls(merged.values())


_default_registry: Optional[PrintFormatRegistry] = None


def default_registry() -> PrintFormatRegistry:
    """Process-wide registry built once from settings."""
    global _default_registry
    if _default_registry is None:
        from ..config.settings import settings

        if settings.print_formats_file:
            _default_registry = PrintFormatRegistry.from_file(settings.print_formats_file)
        else:
            _default_registry = PrintFormatRegistry()
    return _default_registry


def lookup(name: str) -> PrintFormat:
    return default_registry().lookup(name)
