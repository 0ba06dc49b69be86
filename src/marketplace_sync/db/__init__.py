"""Database module."""

from .base import Base, get_engine, get_session_factory, init_db
from .models import Account, SaleRecord, SkuCost
from .repository import AccountRepository, SaleRepository, SkuCostRepository

__all__ = [
    "Base",
    "get_engine",
    "get_session_factory",
    "init_db",
    "Account",
    "SaleRecord",
    "SkuCost",
    "AccountRepository",
    "SaleRepository",
    "SkuCostRepository",
]
