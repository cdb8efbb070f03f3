from .registry import (
    DEFAULT_FORMATS,
    PrintFormat,
    PrintFormatRegistry,
    default_registry,
    lookup,
)

__all__ = ["DEFAULT_FORMATS", "PrintFormat", "PrintFormatRegistry", "default_registry", "lookup"]
