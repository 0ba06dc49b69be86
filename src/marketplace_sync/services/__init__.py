"""Services module - Sync engine components, platform strategies and scheduler."""

from marketplace_sync.services.meli_sync import MeliSync
from marketplace_sync.services.platform import PlatformSync, SyncRequest
from marketplace_sync.services.progress import ProgressReporter
from marketplace_sync.services.shopee_sync import ShopeeSync
from marketplace_sync.services.sync_orchestrator import SyncOrchestrator, SyncReport

__all__ = [
    "MeliSync",
    "PlatformSync",
    "SyncRequest",
    "ProgressReporter",
    "ShopeeSync",
    "SyncOrchestrator",
    "SyncReport",
]
