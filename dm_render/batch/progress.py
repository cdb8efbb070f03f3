"""
Progress Tracking

Per-batch progress updates delivered to registered callbacks and kept as
history for status queries.
"""

import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional


@dataclass
class ProgressUpdate:
    """A single progress update"""
    batch_id: str
    state: str
    completed: int
    failed: int
    total: int
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def percentage(self) -> float:
        if self.total == 0:
            return 100.0
        return round((self.completed + self.failed) / self.total * 100, 1)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "state": self.state,
            "completed": self.completed,
            "failed": self.failed,
            "total": self.total,
            "percentage": self.percentage,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class ProgressTracker:
    """
    Track and broadcast batch progress.

    Callbacks may be plain functions or coroutines; a failing callback is
    logged and never interrupts the batch.
    """

    def __init__(self, history_limit: int = 1000):
        self.logger = logging.getLogger("dm_render.batch.progress")
        self.callbacks: Dict[str, List[Callable]] = {}
        self.history: Dict[str, List[ProgressUpdate]] = {}
        self.history_limit = history_limit

    def register_callback(self, batch_id: str, callback: Callable[[ProgressUpdate], Any]):
        """Register a callback for a batch's progress updates"""
        self.callbacks.setdefault(batch_id, []).append(callback)

    def unregister_callback(self, batch_id: str):
        self.callbacks.pop(batch_id, None)

    async def update(
        self,
        batch_id: str,
        state: str,
        completed: int,
        failed: int,
        total: int,
        message: str = "",
        details: Dict[str, Any] = None,
    ) -> ProgressUpdate:
        """Record and broadcast a progress update."""
        update = ProgressUpdate(
            batch_id=batch_id,
            state=state,
            completed=completed,
            failed=failed,
            total=total,
            message=message,
            details=details or {},
        )

        history = self.history.setdefault(batch_id, [])
        history.append(update)
        if len(history) > self.history_limit:
            del history[: len(history) - self.history_limit]

        for callback in list(self.callbacks.get(batch_id, [])):
            try:
                if inspect.iscoroutinefunction(callback):
                    await callback(update)
                else:
                    callback(update)
            except Exception as e:
                self.logger.warning(f"Progress callback error for {batch_id}: {e}")

        return update

    def get_history(self, batch_id: str) -> list:
        """Progress history for a batch, oldest first"""
        return [u.to_dict() for u in self.history.get(batch_id, [])]

    def get_latest(self, batch_id: str) -> Optional[dict]:
        history = self.history.get(batch_id, [])
        if history:
            return history[-1].to_dict()
        return None

    def clear_history(self, batch_id: str):
        self.history.pop(batch_id, None)
