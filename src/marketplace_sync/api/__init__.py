"""Marketplace API clients."""

from .meli_client import MeliClient, OrdersPage, TokenGrant
from .shopee_client import OrderListPage, ShopeeClient

__all__ = ["MeliClient", "OrdersPage", "TokenGrant", "ShopeeClient", "OrderListPage"]
