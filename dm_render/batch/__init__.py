"""
Batch processing - orchestration, persistence, output and notifications.
"""

from .models import BatchJob, BatchState, DocumentOutput
from .orchestrator import BatchHandle, BatchOrchestrator
from .output_store import LocalOutputStore, OutputStore
from .progress import ProgressTracker, ProgressUpdate
from .repository import BatchPersistence, InMemoryBatchStore, SQLiteBatchRepository
from .webhook import send_webhook

__all__ = [
    "BatchHandle",
    "BatchJob",
    "BatchOrchestrator",
    "BatchPersistence",
    "BatchState",
    "DocumentOutput",
    "InMemoryBatchStore",
    "LocalOutputStore",
    "OutputStore",
    "ProgressTracker",
    "ProgressUpdate",
    "SQLiteBatchRepository",
    "send_webhook",
]
