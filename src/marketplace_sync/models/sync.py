"""Pydantic models for sync requests."""

from typing import List, Optional

from pydantic import BaseModel, Field


class SyncTriggerBody(BaseModel):
    """Body of ``POST /api/{platform}/sync``."""

    account_ids: Optional[List[str]] = Field(None, alias="accountIds", description="Restrict to these accounts")
    full_sync: bool = Field(False, alias="fullSync", description="Extend history to the earliest plausible date")
    quick_mode: bool = Field(True, alias="quickMode", description="Favor recent orders over deep history")

    class Config:
        populate_by_name = True
        extra = "ignore"
