"""
Change Data Capture Module.

Native and polling change feeds for the two stores.
"""

from clinisync.sync.cdc.database_cdc import (
    CaptureMode,
    ChangeCapture,
    ChangeFeed,
    NativeChangeFeed,
    PollingChangeFeed,
    select_change_feed,
)

__all__ = [
    "CaptureMode",
    "ChangeCapture",
    "ChangeFeed",
    "NativeChangeFeed",
    "PollingChangeFeed",
    "select_change_feed",
]
