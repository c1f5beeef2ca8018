"""
clinisync API Module.
"""

from clinisync.api.sync_control import router as sync_control_router

__all__ = ["sync_control_router"]
