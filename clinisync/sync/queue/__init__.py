"""
Sync Queue Module.

Per-record ordered delivery of change events with retry and parking.
"""

from clinisync.sync.queue.sync_queue import SyncQueue

__all__ = [
    "SyncQueue",
]
