"""
In-Memory Run Storage.

Keeps the latest snapshot, log and result of each run so the API can serve
status polling. Fed through the executor's persist hook; can be replaced
with a database implementation.
"""

from typing import Any, Callable, Awaitable, Dict, List, Optional
from datetime import datetime
import asyncio
from dataclasses import dataclass, field

from nodeflow.engine.state_machine import ExecutionSnapshot


@dataclass
class StoredRun:
    """A stored execution run."""
    run_id: str
    workflow_id: Optional[str]
    status: str
    snapshot: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    logs: List[Dict[str, Any]] = field(default_factory=list)
    snapshot_count: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "status": self.status,
            "snapshot": self.snapshot,
            "result": self.result,
            "logs": self.logs,
            "snapshot_count": self.snapshot_count,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


class RunStorage:
    """
    In-memory storage for execution runs.

    Stores the most recent snapshot of each run, allowing real-time
    polling of ongoing runs and retrieval of finished ones.
    """

    def __init__(self):
        self._runs: Dict[str, StoredRun] = {}
        self._lock = asyncio.Lock()

    async def create(self, run_id: str, workflow_id: Optional[str] = None) -> StoredRun:
        """
        Create a new pending run.

        Args:
            run_id: Unique run identifier
            workflow_id: Optional workflow identifier

        Returns:
            The stored run
        """
        async with self._lock:
            stored = StoredRun(run_id=run_id, workflow_id=workflow_id, status="pending")
            self._runs[run_id] = stored
            return stored

    async def get(self, run_id: str) -> Optional[StoredRun]:
        """Get a run by ID."""
        async with self._lock:
            return self._runs.get(run_id)

    async def update_snapshot(self, run_id: str, snapshot: ExecutionSnapshot) -> Optional[StoredRun]:
        """Record the latest snapshot of a run."""
        async with self._lock:
            stored = self._runs.get(run_id)
            if stored is None:
                return None
            stored.snapshot = snapshot.to_dict()
            stored.status = snapshot.workflow_status.value
            stored.snapshot_count += 1
            return stored

    def persist_hook(self, run_id: str) -> Callable[[ExecutionSnapshot], Awaitable[None]]:
        """Build an async persist hook that writes snapshots of one run."""
        async def hook(snapshot: ExecutionSnapshot) -> None:
            await self.update_snapshot(run_id, snapshot)
        return hook

    async def complete(self, run_id: str, result: Dict[str, Any]) -> Optional[StoredRun]:
        """Store the final result of a run."""
        async with self._lock:
            stored = self._runs.get(run_id)
            if stored is None:
                return None
            stored.status = result["workflow_status"]
            stored.result = result
            stored.logs = result.get("logs", [])
            stored.completed_at = datetime.now()
            return stored

    async def fail(self, run_id: str, error: str) -> Optional[StoredRun]:
        """Mark a run as failed before or outside of normal finalization."""
        async with self._lock:
            stored = self._runs.get(run_id)
            if stored is None:
                return None
            stored.status = "failed"
            stored.error = error
            stored.completed_at = datetime.now()
            return stored

    async def list_all(self) -> List[StoredRun]:
        """List all runs."""
        async with self._lock:
            return list(self._runs.values())

    async def list_by_workflow(self, workflow_id: str) -> List[StoredRun]:
        """List all runs of a specific workflow."""
        async with self._lock:
            return [r for r in self._runs.values() if r.workflow_id == workflow_id]

    async def delete(self, run_id: str) -> bool:
        """Delete a run."""
        async with self._lock:
            if run_id in self._runs:
                del self._runs[run_id]
                return True
            return False

    def __len__(self) -> int:
        return len(self._runs)


# Global storage instance
run_storage = RunStorage()
