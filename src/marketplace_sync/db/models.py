"""SQLAlchemy models for accounts, sales and SKU costs."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, utcnow


def _new_id() -> str:
    return uuid.uuid4().hex[:25]


class Account(Base):
    """
    A connected seller credential on one marketplace.

    ``external_id`` holds the marketplace-side identifier (Mercado Livre
    seller id, Shopee shop id).
    """

    __tablename__ = "accounts"

    id: Mapped[str] = mapped_column(String(25), primary_key=True, default=_new_id)
    platform: Mapped[str] = mapped_column(String(20), index=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    external_id: Mapped[str] = mapped_column(String(50), nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    access_token: Mapped[str] = mapped_column(String(500), nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    refresh_token_invalid_until: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def display_name(self) -> str:
        if self.nickname:
            return self.nickname
        if self.platform == "shopee":
            return f"Loja {self.external_id}"
        return f"Conta {self.external_id}"


class SaleRecord(Base):
    """
    One persisted marketplace order.

    ``(platform, order_id)`` is the natural key: re-syncing an order updates
    this row in place.
    """

    __tablename__ = "sale_records"
    __table_args__ = (
        UniqueConstraint("platform", "order_id", name="uq_sale_records_platform_order"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    order_id: Mapped[str] = mapped_column(String(255), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(25), index=True, nullable=False)

    sale_date: Mapped[datetime] = mapped_column(DateTime, index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(100), nullable=False)
    account_label: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Monetary fields
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    platform_fee: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    freight: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    freight_adjustment: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    freight_adjustment_source: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cost_of_goods: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    margin: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    margin_is_real: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Descriptive fields
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    sku: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    buyer: Mapped[str] = mapped_column(String(255), nullable=False)
    logistic_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_mode: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_status: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    shipping_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    exposure: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    listing_kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    ads: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    platform_label: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[str] = mapped_column(String(10), nullable=False)

    # Geolocation
    latitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)
    longitude: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 7), nullable=True)

    # Free-form payloads
    tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    internal_tags: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    raw_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    payment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    shipment_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class SkuCost(Base):
    """Unit cost registered by a seller for one SKU."""

    __tablename__ = "sku_costs"
    __table_args__ = (UniqueConstraint("owner_id", "sku", name="uq_sku_costs_owner_sku"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[str] = mapped_column(String(50), index=True, nullable=False)
    sku: Mapped[str] = mapped_column(String(255), nullable=False)
    unit_cost: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    kind: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
