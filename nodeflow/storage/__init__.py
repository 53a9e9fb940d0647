"""
Storage package - In-memory storage for runs.
"""

from nodeflow.storage.memory import (
    RunStorage,
    StoredRun,
    run_storage,
)

__all__ = [
    "RunStorage",
    "StoredRun",
    "run_storage",
]
