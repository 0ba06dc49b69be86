"""Request and response models for the HTTP surface."""

from marketplace_sync.models.sync import SyncTriggerBody

__all__ = ["SyncTriggerBody"]
