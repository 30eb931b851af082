"""
Shopify order normalization.
Maps the nested snake_case REST order into the flat shopify_orders row.
Total by construction: bad optional fields degrade to empty/zero, nothing raises.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Optional

ZERO = Decimal("0")

_ADDRESS_FIELDS = (
    "first_name", "last_name", "name", "company", "address1", "address2",
    "city", "province", "province_code", "country", "country_code", "zip", "phone",
)


def parse_money(value: Any) -> Decimal:
    """Shopify sends money as strings ("12.50"). Missing or garbage → 0."""
    if value is None or isinstance(value, bool):
        return ZERO
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return ZERO
    if not amount.is_finite():
        return ZERO
    return amount


def _str_or_none(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _int_or_zero(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _normalize_address(raw: Any) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None
    return {key: raw.get(key) for key in _ADDRESS_FIELDS if raw.get(key) is not None}


def _normalize_line_item(raw: Any) -> Optional[dict]:
    if not isinstance(raw, dict):
        return None
    return {
        "id": _str_or_none(raw.get("id")),
        "product_id": _str_or_none(raw.get("product_id")),
        "variant_id": _str_or_none(raw.get("variant_id")),
        "title": raw.get("title") or "",
        "variant_title": raw.get("variant_title") or "",
        "sku": raw.get("sku") or "",
        "vendor": raw.get("vendor") or "",
        "quantity": _int_or_zero(raw.get("quantity")),
        "price": str(parse_money(raw.get("price"))),
        "total_discount": str(parse_money(raw.get("total_discount"))),
    }


def _customer_name(customer: dict) -> Optional[str]:
    parts = [customer.get("first_name") or "", customer.get("last_name") or ""]
    name = " ".join(p for p in parts if isinstance(p, str) and p).strip()
    return name or None


def _tags(value: Any) -> list[str]:
    if isinstance(value, list):
        return [str(t).strip() for t in value if str(t).strip()]
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return []


def normalize_order(raw: Any) -> dict:
    """
    Transform a Shopify order into the normalized schema.

    Money columns are Decimals here; the store serializes them. The raw order is
    kept under order_data so downstream consumers can read fields we don't map.
    An order without an id comes back with order_id="" and is skipped by the store.
    """
    if not isinstance(raw, dict):
        return {"order_id": "", "order_data": raw}

    customer = _as_dict(raw.get("customer"))
    line_items = raw.get("line_items")
    if not isinstance(line_items, list):
        line_items = []

    return {
        "order_id": _str_or_none(raw.get("id")) or "",
        "order_number": _str_or_none(raw.get("order_number")),
        "order_name": _str_or_none(raw.get("name")),
        "created_at": _str_or_none(raw.get("created_at")),
        "updated_at": _str_or_none(raw.get("updated_at")),
        "processed_at": _str_or_none(raw.get("processed_at")),
        "cancelled_at": _str_or_none(raw.get("cancelled_at")),
        "currency": _str_or_none(raw.get("currency")),
        "total_price": parse_money(raw.get("total_price")),
        "subtotal_price": parse_money(raw.get("subtotal_price")),
        "total_tax": parse_money(raw.get("total_tax")),
        "total_discounts": parse_money(raw.get("total_discounts")),
        "financial_status": _str_or_none(raw.get("financial_status")),
        "fulfillment_status": _str_or_none(raw.get("fulfillment_status")),
        "customer_id": _str_or_none(customer.get("id")),
        "customer_email": _str_or_none(customer.get("email") or raw.get("email")),
        "customer_name": _customer_name(customer),
        "line_items": [item for item in map(_normalize_line_item, line_items) if item],
        "shipping_address": _normalize_address(raw.get("shipping_address")),
        "billing_address": _normalize_address(raw.get("billing_address")),
        "tags": _tags(raw.get("tags")),
        "order_data": raw,
    }
