"""
Record transformer: raw marketplace orders to normalized sale records.

Everything in this module is pure. Monetary results are ``Decimal`` values
rounded half-up to two places, and a rounded ``-0.00`` is always stored as
``0.00``.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from marketplace_sync.config.constants import (
    DEFAULT_BUYER_NAME,
    DEFAULT_TITLE,
    FREE_SHIPPING_THRESHOLD,
    FREIGHT_ADJUSTMENT_LABELS,
    FREIGHT_NO_OVERRIDE_SENTINEL,
    IDENTIFIER_MAX_LENGTH,
    LABEL_MAX_LENGTH,
    LOGISTIC_TYPE_NAMES,
    PLATFORM_CHANNELS,
    PLATFORM_LABELS,
    PLATFORM_MELI,
    PLATFORM_SHOPEE,
    TITLE_MAX_LENGTH,
)
from marketplace_sync.db.base import to_storage, utcnow

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# SKU -> object exposing ``unit_cost``
SkuCosts = Mapping[str, Any]


# ==============================================================================
# NUMERIC HELPERS
# ==============================================================================

def to_finite_number(value: Any) -> Optional[float]:
    """Parse numbers and numeric strings, rejecting NaN/inf and everything else."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def round_currency(value: Union[float, int, Decimal, None]) -> Decimal:
    """Round half-up to cents, normalizing negative zero."""
    if value is None:
        return ZERO
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        rounded = amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return ZERO
    if rounded == 0:
        return ZERO
    return rounded


def truncate(value: Any, max_length: int) -> str:
    if value is None or value == "":
        return ""
    text = str(value)
    return text[:max_length]


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


# ==============================================================================
# FREIGHT ADJUSTMENT (TRI-STATE)
# ==============================================================================

@dataclass(frozen=True)
class NoOverride:
    """Keep the charged freight cost."""

    is_override = False

    def resolve(self, fallback: Decimal) -> Decimal:
        return fallback


@dataclass(frozen=True)
class Override:
    """Replace freight with ``value``; zero is a legitimate override."""

    value: Decimal
    label: Optional[str] = None

    is_override = True

    def resolve(self, fallback: Decimal) -> Decimal:
        return self.value


NO_OVERRIDE = NoOverride()
FreightAdjustment = Union[NoOverride, Override]


def adjustment_from_rule_value(raw: Optional[float], label: Optional[str] = None) -> FreightAdjustment:
    """Map a raw rule result to the tri-state, honoring the ±999 sentinel."""
    if raw is None or abs(raw) == FREIGHT_NO_OVERRIDE_SENTINEL:
        return NO_OVERRIDE
    return Override(round_currency(raw), label)


def freight_adjust_rule(
    logistic_type: Optional[str],
    unit_price: Optional[float],
    base_cost: Optional[float],
    list_cost: Optional[float],
    shipping_option_cost: Optional[float],
    shipment_cost: Optional[float],
) -> float:
    """
    Seller-side freight for a Mercado Livre order, or the no-override sentinel.

    Sign convention: negative is a cost to the seller, positive is revenue.

    - FLEX (``self_service``) at or above the free-shipping threshold earns
      the platform's base cost; below it the seller keeps what the buyer paid.
    - Every other logistic type below the threshold ships at the buyer's
      expense, so freight is zeroed.
    - At or above the threshold the seller pays the list cost (falling back
      to shipment cost, then option cost).
    """
    sentinel = float(FREIGHT_NO_OVERRIDE_SENTINEL)
    if not logistic_type or unit_price is None:
        return sentinel

    if logistic_type == "self_service":
        if unit_price >= FREE_SHIPPING_THRESHOLD:
            return base_cost if base_cost is not None else sentinel
        return shipping_option_cost if shipping_option_cost is not None else 0.0

    if unit_price < FREE_SHIPPING_THRESHOLD:
        return 0.0

    for candidate in (list_cost, shipment_cost, shipping_option_cost):
        if candidate is not None:
            return -candidate
    return sentinel


def calculate_freight_adjustment(
    logistic_type: Optional[str],
    unit_price: Optional[float],
    base_cost: Optional[float],
    list_cost: Optional[float],
    shipping_option_cost: Optional[float],
    shipment_cost: Optional[float],
) -> FreightAdjustment:
    if not logistic_type:
        return NO_OVERRIDE
    raw = freight_adjust_rule(
        logistic_type, unit_price, base_cost, list_cost, shipping_option_cost, shipment_cost
    )
    label = FREIGHT_ADJUSTMENT_LABELS.get(logistic_type, logistic_type)
    return adjustment_from_rule_value(raw, label)


# ==============================================================================
# MERCADO LIVRE FREIGHT
# ==============================================================================

@dataclass
class MeliFreight:
    """Freight breakdown for one Mercado Livre order."""

    logistic_type: Optional[str] = None
    logistic_type_source: Optional[str] = None
    shipping_mode: Optional[str] = None
    base_cost: Optional[float] = None
    list_cost: Optional[float] = None
    shipping_option_cost: Optional[Decimal] = None
    shipment_cost: Optional[Decimal] = None
    order_cost_fallback: Optional[Decimal] = None
    charged_cost: Optional[Decimal] = None
    charged_cost_source: Optional[str] = None
    discount: Optional[Decimal] = None
    total_amount: Optional[float] = None
    quantity: Optional[float] = None
    unit_price: Optional[Decimal] = None
    adjustment: FreightAdjustment = field(default=NO_OVERRIDE)

    @property
    def final_freight(self) -> Decimal:
        fallback = self.charged_cost
        if fallback is None:
            fallback = self.order_cost_fallback
        if fallback is None:
            fallback = ZERO
        return self.adjustment.resolve(fallback)

    def to_dict(self) -> dict:
        return {
            "logistic_type": self.logistic_type,
            "logistic_type_source": self.logistic_type_source,
            "shipping_mode": self.shipping_mode,
            "base_cost": self.base_cost,
            "list_cost": self.list_cost,
            "shipping_option_cost": _decimal_str(self.shipping_option_cost),
            "shipment_cost": _decimal_str(self.shipment_cost),
            "order_cost_fallback": _decimal_str(self.order_cost_fallback),
            "charged_cost": _decimal_str(self.charged_cost),
            "charged_cost_source": self.charged_cost_source,
            "discount": _decimal_str(self.discount),
            "quantity": self.quantity,
            "unit_price": _decimal_str(self.unit_price),
            "adjusted_cost": _decimal_str(self.adjustment.value) if self.adjustment.is_override else None,
            "adjustment_source": self.adjustment.label if self.adjustment.is_override else None,
        }


def _decimal_str(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def convert_logistic_type_name(logistic_type: Optional[str]) -> Optional[str]:
    if not logistic_type:
        return logistic_type
    return LOGISTIC_TYPE_NAMES.get(logistic_type, logistic_type)


def sum_order_quantities(items: Any) -> Optional[float]:
    if not isinstance(items, list):
        return None
    total = 0.0
    counted = False
    for item in items:
        quantity = to_finite_number(_as_dict(item).get("quantity"))
        if quantity is not None:
            total += quantity
            counted = True
    return total if counted else None


def calculate_freight(order: Optional[dict], shipment: Optional[dict]) -> MeliFreight:
    """Charged freight, discount and adjustment for a Mercado Livre order."""
    o = _as_dict(order)
    s = _as_dict(shipment)
    order_shipping = _as_dict(o.get("shipping"))

    shipping_mode = order_shipping.get("mode") if isinstance(order_shipping.get("mode"), str) else None
    raw_type = s.get("logistic_type") if isinstance(s.get("logistic_type"), str) else None
    logistic_type = raw_type or shipping_mode
    if raw_type:
        type_source = "shipment"
    elif shipping_mode:
        type_source = "order"
    else:
        type_source = None

    option = _as_dict(s.get("shipping_option"))
    base_cost = to_finite_number(s.get("base_cost"))
    option_cost = to_finite_number(option.get("cost"))
    list_cost = to_finite_number(option.get("list_cost"))
    shipment_cost = to_finite_number(s.get("cost"))
    order_cost = to_finite_number(order_shipping.get("cost"))

    charged_cost = None
    charged_source = None
    for source, candidate in (
        ("shipping_option", option_cost),
        ("shipment", shipment_cost),
        ("order", order_cost),
    ):
        if candidate is not None:
            charged_cost = round_currency(candidate)
            charged_source = source
            break

    discount = None
    if list_cost is not None and charged_cost is not None:
        discount = round_currency(Decimal(str(list_cost)) - charged_cost)

    total_amount = to_finite_number(o.get("total_amount"))
    items = _as_list(o.get("order_items"))
    quantity = sum_order_quantities(items)
    if quantity is None:
        if items:
            quantity = float(len(items))
        elif total_amount is not None:
            quantity = 1.0

    unit_price = None
    if total_amount is not None and quantity and quantity > 0:
        unit_price = round_currency(total_amount / quantity)
    elif total_amount is not None:
        unit_price = round_currency(total_amount)

    adjustment = calculate_freight_adjustment(
        logistic_type,
        float(unit_price) if unit_price is not None else None,
        base_cost,
        list_cost,
        option_cost,
        shipment_cost,
    )

    return MeliFreight(
        logistic_type=convert_logistic_type_name(logistic_type),
        logistic_type_source=type_source,
        shipping_mode=shipping_mode,
        base_cost=base_cost,
        list_cost=list_cost,
        shipping_option_cost=round_currency(option_cost) if option_cost is not None else None,
        shipment_cost=round_currency(shipment_cost) if shipment_cost is not None else None,
        order_cost_fallback=round_currency(order_cost) if order_cost is not None else None,
        charged_cost=charged_cost,
        charged_cost_source=charged_source,
        discount=discount,
        total_amount=total_amount,
        quantity=quantity,
        unit_price=unit_price,
        adjustment=adjustment,
    )


# ==============================================================================
# MARGIN & CLASSIFICATION
# ==============================================================================

def calculate_margin(
    gross_amount: Union[Decimal, float],
    platform_fee: Optional[Union[Decimal, float]],
    freight: Union[Decimal, float],
    cost_of_goods: Optional[Union[Decimal, float]],
) -> Tuple[Decimal, bool]:
    """
    Contribution margin and whether it is real.

    Platform fee arrives negative; freight may carry either sign. Without a
    positive cost of goods the result is net revenue, flagged as estimated.
    """
    gross = Decimal(str(gross_amount))
    fee = Decimal(str(platform_fee)) if platform_fee else Decimal(0)
    net = gross + fee + Decimal(str(freight))

    if cost_of_goods is not None and Decimal(str(cost_of_goods)) > 0:
        return round_currency(net - Decimal(str(cost_of_goods))), True
    return round_currency(net), False


def map_listing_exposure(listing_type: Optional[str]) -> Optional[str]:
    """Coarse exposure tier for a listing type: only ``gold_pro`` is Premium."""
    if not listing_type:
        return None
    if listing_type.lower() == "gold_pro":
        return "Premium"
    return "Clássico"


def extract_order_date(order: Any) -> Optional[datetime]:
    """Closing date of a Mercado Livre order, falling back to creation/update."""
    o = _as_dict(order)
    raw = o.get("date_closed") or o.get("date_created") or o.get("date_last_updated")
    return parse_datetime(raw)


def parse_datetime(raw: Any) -> Optional[datetime]:
    if not raw or not isinstance(raw, str):
        return None
    text = raw.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def cost_of_goods_for(sku: Optional[str], quantity: float, sku_costs: SkuCosts) -> Optional[Decimal]:
    if not sku:
        return None
    entry = sku_costs.get(sku)
    unit_cost = getattr(entry, "unit_cost", None) if entry is not None else None
    if unit_cost is None:
        return None
    return round_currency(Decimal(str(unit_cost)) * Decimal(str(quantity)))


def _account_label(account: Any) -> str:
    label = getattr(account, "nickname", None) or getattr(account, "external_id", None) or account.id
    return truncate(label, IDENTIFIER_MAX_LENGTH)


def _base_record(platform: str, order_id: str, owner_id: str, account: Any) -> Dict[str, Any]:
    now = utcnow()
    return {
        "platform": platform,
        "order_id": truncate(order_id, IDENTIFIER_MAX_LENGTH),
        "owner_id": truncate(owner_id, 50),
        "account_id": truncate(account.id, 25),
        "account_label": _account_label(account),
        "platform_label": PLATFORM_LABELS[platform],
        "channel": PLATFORM_CHANNELS[platform],
        "freight_adjustment": None,
        "freight_adjustment_source": None,
        "cost_of_goods": None,
        "sku": None,
        "logistic_type": None,
        "shipping_mode": None,
        "shipping_status": None,
        "shipping_id": None,
        "exposure": None,
        "listing_kind": None,
        "ads": None,
        "latitude": None,
        "longitude": None,
        "tags": [],
        "internal_tags": [],
        "raw_data": None,
        "payment_details": None,
        "shipment_details": None,
        "created_at": now,
        "synced_at": now,
    }


# ==============================================================================
# MERCADO LIVRE RECORDS
# ==============================================================================

def meli_order_id(order: Any) -> Optional[str]:
    raw = _as_dict(order).get("id")
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def meli_order_skus(order: Any) -> List[str]:
    """Every SKU referenced by a Mercado Livre order's items."""
    skus = []
    for entry in _as_list(_as_dict(order).get("order_items")):
        entry = _as_dict(entry)
        item = _as_dict(entry.get("item"))
        candidate = item.get("seller_sku") or item.get("sku") or entry.get("seller_sku") or entry.get("sku")
        if candidate:
            normalized = truncate(candidate, IDENTIFIER_MAX_LENGTH)
            if normalized:
                skus.append(normalized)
    return skus


def build_meli_record(
    order: dict,
    shipment: Optional[dict],
    account: Any,
    owner_id: str,
    sku_costs: SkuCosts,
) -> Dict[str, Any]:
    """
    Build the SaleRecord column values for a Mercado Livre order.

    Raises:
        ValueError: If the order carries no usable identifier
    """
    order_id = meli_order_id(order)
    if not order_id:
        raise ValueError("Order without a valid id")

    o = _as_dict(order)
    s = _as_dict(shipment)
    freight = calculate_freight(o, s)

    items = _as_list(o.get("order_items"))
    first_item = _as_dict(items[0]) if items else {}
    item_data = _as_dict(first_item.get("item"))

    title = item_data.get("title")
    if not title:
        title = next(
            (_as_dict(_as_dict(entry).get("item")).get("title") for entry in items
             if _as_dict(_as_dict(entry).get("item")).get("title")),
            None,
        )
    title = title or o.get("title") or DEFAULT_TITLE

    quantity = sum(to_finite_number(_as_dict(entry).get("quantity")) or 0 for entry in items)

    total_amount = to_finite_number(o.get("total_amount"))
    if total_amount is None:
        total_amount = sum(
            (to_finite_number(_as_dict(entry).get("quantity")) or 0)
            * (to_finite_number(_as_dict(entry).get("unit_price")) or 0)
            for entry in items
        )

    buyer = _as_dict(o.get("buyer"))
    full_name = " ".join(part for part in (buyer.get("first_name"), buyer.get("last_name")) if part)
    buyer_name = buyer.get("nickname") or full_name or DEFAULT_BUYER_NAME

    tags = [str(tag) for tag in _as_list(o.get("tags"))]
    internal_tags = [str(tag) for tag in _as_list(o.get("internal_tags"))]

    order_shipping = _as_dict(o.get("shipping"))
    shipping_status = s.get("status") or order_shipping.get("status")
    shipping_id = s.get("id") or order_shipping.get("id")

    receiver = s.get("receiver_address") or order_shipping.get("receiver_address")
    receiver = _as_dict(receiver)
    geo = _as_dict(receiver.get("geo"))
    latitude = to_finite_number(receiver.get("latitude", geo.get("latitude")))
    longitude = to_finite_number(receiver.get("longitude", geo.get("longitude")))

    sale_fee = sum(
        (to_finite_number(_as_dict(entry).get("sale_fee")) or 0)
        * (to_finite_number(_as_dict(entry).get("quantity")) or 1)
        for entry in items
    )
    platform_fee = -round_currency(sale_fee) if sale_fee > 0 else None

    unit_price = to_finite_number(first_item.get("unit_price"))
    if unit_price is None:
        unit_price = total_amount / quantity if quantity > 0 else 0

    freight_value = freight.final_freight

    sku_raw = item_data.get("seller_sku") or item_data.get("sku")
    sku = truncate(sku_raw, IDENTIFIER_MAX_LENGTH) or None
    cost_of_goods = cost_of_goods_for(sku, quantity, sku_costs)

    margin, margin_is_real = calculate_margin(
        round_currency(total_amount), platform_fee, freight_value, cost_of_goods
    )

    listing_type = first_item.get("listing_type_id") or item_data.get("listing_type_id")
    sale_date = extract_order_date(o) or datetime.now(timezone.utc)

    record = _base_record(PLATFORM_MELI, order_id, owner_id, account)
    record.update({
        "sale_date": to_storage(sale_date),
        "status": truncate(str(o.get("status") or "desconhecido").replace("_", " "), LABEL_MAX_LENGTH),
        "gross_amount": round_currency(total_amount),
        "unit_price": round_currency(unit_price),
        "quantity": int(quantity) if quantity > 0 else 1,
        "platform_fee": platform_fee,
        "freight": freight_value,
        "freight_adjustment": freight.adjustment.value if freight.adjustment.is_override else None,
        "freight_adjustment_source": freight.adjustment.label if freight.adjustment.is_override else None,
        "cost_of_goods": cost_of_goods,
        "margin": margin,
        "margin_is_real": margin_is_real,
        "title": truncate(title, TITLE_MAX_LENGTH) or DEFAULT_TITLE,
        "sku": sku,
        "buyer": truncate(buyer_name, IDENTIFIER_MAX_LENGTH) or DEFAULT_BUYER_NAME,
        "logistic_type": truncate(freight.logistic_type, LABEL_MAX_LENGTH) or None,
        "shipping_mode": truncate(freight.shipping_mode, LABEL_MAX_LENGTH) or None,
        "shipping_status": truncate(shipping_status, LABEL_MAX_LENGTH) or None,
        "shipping_id": truncate(shipping_id, IDENTIFIER_MAX_LENGTH) or None,
        "exposure": map_listing_exposure(listing_type),
        "listing_kind": "Catalogo" if "catalog" in tags else "Proprio",
        "ads": "ADS" if "ads" in internal_tags else None,
        "tags": tags,
        "internal_tags": internal_tags,
        "raw_data": {"order": o, "shipment": s or None, "freight": freight.to_dict()},
        "shipment_details": s or None,
    })
    if latitude is not None and longitude is not None:
        record["latitude"] = Decimal(str(latitude))
        record["longitude"] = Decimal(str(longitude))
    return record


# ==============================================================================
# SHOPEE RECORDS
# ==============================================================================

@dataclass
class ShopeeFreight:
    """Net freight for a Shopee order, from its escrow income breakdown."""

    actual_shipping_fee: float = 0.0
    reverse_shipping_fee: float = 0.0
    shipping_rebate: float = 0.0
    buyer_paid_shipping_fee: float = 0.0
    discount_from_3pl: float = 0.0
    auto_subsidy_applied: bool = False

    @property
    def implicit_cost(self) -> float:
        return self.actual_shipping_fee - self.buyer_paid_shipping_fee

    @property
    def net(self) -> Decimal:
        """Positive is freight revenue, negative is freight cost."""
        income = self.buyer_paid_shipping_fee + self.shipping_rebate
        cost = self.actual_shipping_fee + self.reverse_shipping_fee
        return round_currency(income - cost)

    def to_dict(self) -> dict:
        return {
            "actual_shipping_fee": self.actual_shipping_fee,
            "reverse_shipping_fee": self.reverse_shipping_fee,
            "shopee_shipping_rebate": self.shipping_rebate,
            "buyer_paid_shipping_fee": self.buyer_paid_shipping_fee,
            "shipping_fee_discount_from_3pl": self.discount_from_3pl,
            "custo_liquido_frete": str(self.net),
            "custo_implicito_frete": self.implicit_cost,
            "subsidio_automatico_aplicado": self.auto_subsidy_applied,
        }


def calculate_shopee_freight(income: Optional[dict]) -> ShopeeFreight:
    """
    Net freight with the automatic-subsidy rule.

    When the carrier charged something, no rebate was reported and the
    implicit freight cost is under one cent, the difference is treated as
    a platform rebate.
    """
    data = _as_dict(income)
    freight = ShopeeFreight(
        actual_shipping_fee=to_finite_number(data.get("actual_shipping_fee")) or 0.0,
        reverse_shipping_fee=to_finite_number(data.get("reverse_shipping_fee")) or 0.0,
        shipping_rebate=to_finite_number(data.get("shopee_shipping_rebate")) or 0.0,
        buyer_paid_shipping_fee=to_finite_number(data.get("buyer_paid_shipping_fee")) or 0.0,
        discount_from_3pl=to_finite_number(data.get("shipping_fee_discount_from_3pl")) or 0.0,
    )
    if freight.actual_shipping_fee > 0 and freight.shipping_rebate == 0:
        if freight.implicit_cost < 0.01:
            freight.shipping_rebate = freight.implicit_cost
            freight.auto_subsidy_applied = True
    return freight


def shopee_order_id(order: Any) -> Optional[str]:
    raw = _as_dict(order).get("order_sn")
    if raw is None:
        return None
    text = str(raw).strip()
    return text or None


def shopee_order_skus(order: Any) -> List[str]:
    skus = []
    for item in _as_list(_as_dict(order).get("item_list")):
        item = _as_dict(item)
        candidate = item.get("item_sku") or item.get("model_sku") or item.get("variation_sku")
        if candidate:
            skus.append(truncate(candidate, IDENTIFIER_MAX_LENGTH))
    return skus


def build_shopee_record(
    order: dict,
    escrow: Optional[dict],
    account: Any,
    owner_id: str,
    sku_costs: SkuCosts,
) -> Dict[str, Any]:
    """
    Build the SaleRecord column values for a Shopee order.

    Raises:
        ValueError: If the order carries no order_sn
    """
    order_id = shopee_order_id(order)
    if not order_id:
        raise ValueError("Order without a valid order_sn")

    o = _as_dict(order)
    escrow = _as_dict(escrow)
    items = _as_list(o.get("item_list"))
    first_item = _as_dict(items[0]) if items else {}

    quantity = sum(to_finite_number(_as_dict(item).get("model_quantity_purchased")) or 0 for item in items)
    total_amount = to_finite_number(o.get("total_amount")) or 0.0
    if quantity > 0:
        unit_price = round_currency(total_amount / quantity)
    else:
        unit_price = round_currency(to_finite_number(first_item.get("model_original_price")) or 0)

    income = _as_dict(escrow.get("order_income"))
    commission = to_finite_number(income.get("commission_fee")) or 0.0
    service = to_finite_number(income.get("service_fee")) or 0.0
    fee_total = round_currency(commission + service)
    platform_fee = -fee_total if fee_total != 0 else None

    freight = calculate_shopee_freight(income)
    freight_value = freight.net

    skus = shopee_order_skus(o)
    sku = skus[0] if skus else None
    cost_of_goods = cost_of_goods_for(sku, quantity, sku_costs)
    margin, margin_is_real = calculate_margin(
        round_currency(total_amount), platform_fee, freight_value, cost_of_goods
    )

    package = _as_dict(_as_list(o.get("package_list"))[0]) if _as_list(o.get("package_list")) else {}
    carrier = package.get("shipping_carrier") or o.get("shipping_carrier")
    create_time = to_finite_number(o.get("create_time")) or 0
    sale_date = datetime.fromtimestamp(create_time, tz=timezone.utc)

    shipment_details = dict(freight.to_dict())
    shipment_details.update({
        "parcel_chargeable_weight_gram": to_finite_number(package.get("parcel_chargeable_weight_gram")) or 0,
        "shipping_carrier": truncate(carrier, LABEL_MAX_LENGTH) or None,
        "logistics_status": truncate(package.get("logistics_status"), LABEL_MAX_LENGTH) or None,
        "packages": _as_list(o.get("package_list")),
    })

    record = _base_record(PLATFORM_SHOPEE, order_id, owner_id, account)
    record.update({
        "sale_date": to_storage(sale_date),
        "status": truncate(str(o.get("order_status") or "DESCONHECIDO"), LABEL_MAX_LENGTH),
        "gross_amount": round_currency(total_amount),
        "unit_price": unit_price,
        "quantity": int(quantity) if quantity > 0 else 1,
        "platform_fee": platform_fee,
        "freight": freight_value,
        "cost_of_goods": cost_of_goods,
        "margin": margin,
        "margin_is_real": margin_is_real,
        "title": truncate(first_item.get("item_name"), TITLE_MAX_LENGTH) or DEFAULT_TITLE,
        "sku": sku,
        "buyer": truncate(o.get("buyer_username"), IDENTIFIER_MAX_LENGTH) or DEFAULT_BUYER_NAME,
        "logistic_type": truncate(carrier, LABEL_MAX_LENGTH) or None,
        "shipping_status": truncate(package.get("logistics_status"), LABEL_MAX_LENGTH) or None,
        "shipping_id": truncate(package.get("tracking_number"), IDENTIFIER_MAX_LENGTH) or None,
        "raw_data": o,
        "payment_details": escrow or {},
        "shipment_details": shipment_details,
    })
    return record
