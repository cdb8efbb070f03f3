"""
Error taxonomy for the batch rendering engine.

Every error carries a machine-readable ``ErrorKind`` so batch status can tell
retryable-looking classes (timeouts) apart from data problems.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable error kinds reported per recipient"""
    ACQUISITION_TIMEOUT = "acquisition_timeout"
    ENGINE_FAULT = "engine_fault"
    RENDER_TIMEOUT = "render_timeout"
    WRITE_TIMEOUT = "write_timeout"
    MISSING_REQUIRED_FIELD = "missing_required_field"
    IMAGE_TOO_SMALL = "image_too_small"
    EMPTY_BATCH = "empty_batch"
    UNKNOWN_FORMAT = "unknown_format"
    CANCELLED = "cancelled"
    SYSTEMIC_POOL_FAILURE = "systemic_pool_failure"


# Failures that say nothing about the surface that produced them
SURFACE_SAFE_KINDS = frozenset({
    ErrorKind.MISSING_REQUIRED_FIELD,
    ErrorKind.IMAGE_TOO_SMALL,
    ErrorKind.WRITE_TIMEOUT,
})


class RenderEngineError(Exception):
    """Base exception for the rendering engine"""
    kind: ErrorKind = ErrorKind.ENGINE_FAULT
    retryable: bool = True


class AcquisitionTimeout(RenderEngineError):
    """No surface became available within the deadline"""
    kind = ErrorKind.ACQUISITION_TIMEOUT

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"No render surface available within {timeout:.1f}s")


class EngineFault(RenderEngineError):
    """Rendering engine crashed, became unresponsive or produced garbage"""
    kind = ErrorKind.ENGINE_FAULT


class RenderTimeout(RenderEngineError):
    """No render-complete signal within the deadline"""
    kind = ErrorKind.RENDER_TIMEOUT

    def __init__(self, timeout: float, stage: str = "render"):
        self.timeout = timeout
        self.stage = stage
        super().__init__(f"{stage} did not complete within {timeout:.1f}s")


class WriteTimeout(RenderEngineError):
    """Document write to storage did not finish in time"""
    kind = ErrorKind.WRITE_TIMEOUT

    def __init__(self, timeout: float, path: str = ""):
        self.timeout = timeout
        self.path = path
        super().__init__(f"Write of {path or 'document'} exceeded {timeout:.1f}s")


class MissingRequiredField(RenderEngineError):
    """Recipient lacks a field the template declares required"""
    kind = ErrorKind.MISSING_REQUIRED_FIELD

    def __init__(self, field_names):
        self.field_names = list(field_names)
        super().__init__(f"Missing required field(s): {', '.join(self.field_names)}")


class ImageTooSmall(RenderEngineError):
    """Rendered image cannot meet the target DPI within the upscale floor"""
    kind = ErrorKind.IMAGE_TOO_SMALL

    def __init__(self, effective_dpi: float, required_dpi: float, format_name: str):
        self.effective_dpi = effective_dpi
        self.required_dpi = required_dpi
        self.format_name = format_name
        super().__init__(
            f"Image resolves to {effective_dpi:.0f} dpi on {format_name}; "
            f"at least {required_dpi:.0f} dpi required"
        )


class EmptyBatch(RenderEngineError):
    """Nothing to render or assemble"""
    kind = ErrorKind.EMPTY_BATCH
    retryable = False


class UnknownFormat(RenderEngineError):
    """Print format name not in the registry"""
    kind = ErrorKind.UNKNOWN_FORMAT
    retryable = False

    def __init__(self, name: str, available=None):
        self.name = name
        self.available = sorted(available or [])
        message = f"Unknown print format: {name}"
        if self.available:
            message += f". Available: {', '.join(self.available)}"
        super().__init__(message)


class Cancelled(RenderEngineError):
    """Work item dropped because the batch was cancelled"""
    kind = ErrorKind.CANCELLED
    retryable = False


class SystemicPoolFailure(RenderEngineError):
    """The pool cannot create any surface at all - the batch cannot proceed"""
    kind = ErrorKind.SYSTEMIC_POOL_FAILURE
    retryable = False


class PoolClosed(RenderEngineError):
    """Acquire attempted on a pool that is shutting down"""
    kind = ErrorKind.ENGINE_FAULT
    retryable = False
