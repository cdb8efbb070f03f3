"""
Batch job state.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from ..models import OutputMode, RenderResult


class BatchState(str, Enum):
    """Batch lifecycle: pending -> running -> one of the terminal states"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (
            BatchState.COMPLETED,
            BatchState.COMPLETED_WITH_ERRORS,
            BatchState.FAILED,
        )


@dataclass(frozen=True)
class DocumentOutput:
    """A written output document."""
    path: str
    recipient_indices: Tuple[int, ...]
    page_count: int
    size_bytes: int


@dataclass
class BatchJob:
    """
    One batch run.

    Mutated only by the orchestrator under its per-batch lock. Everyone else
    works from ``snapshot()`` copies. ``results`` holds one slot per
    recipient, in input order; image bytes are dropped once the page is
    assembled.
    """
    id: str
    template_id: str
    format_name: str
    mode: OutputMode
    total_recipients: int
    completed_count: int = 0
    failed_count: int = 0
    results: List[Optional[RenderResult]] = field(default_factory=list)
    state: BatchState = BatchState.PENDING
    cancelled: bool = False
    error_message: Optional[str] = None
    documents: List[DocumentOutput] = field(default_factory=list)
    archive_path: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.results:
            self.results = [None] * self.total_recipients

    @property
    def processed_count(self) -> int:
        return self.completed_count + self.failed_count

    @property
    def progress(self) -> float:
        if self.total_recipients == 0:
            return 100.0
        return round(self.processed_count / self.total_recipients * 100, 1)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def snapshot(self) -> "BatchJob":
        clone = copy.copy(self)
        clone.results = list(self.results)
        clone.documents = list(self.documents)
        return clone

    def to_dict(self, include_results: bool = False) -> dict:
        data = {
            "id": self.id,
            "template_id": self.template_id,
            "format_name": self.format_name,
            "mode": self.mode.value,
            "state": self.state.value,
            "total_recipients": self.total_recipients,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "progress": self.progress,
            "cancelled": self.cancelled,
            "error_message": self.error_message,
            "documents": [doc.path for doc in self.documents],
            "archive_path": self.archive_path,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
        if include_results:
            data["results"] = [r.to_dict() if r else None for r in self.results]
        return data
