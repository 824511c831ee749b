from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

from .model.coupons import PERCENTAGE, FIXED


@dataclass
class Quote:
    quantity: int
    unit_price: int  # cents
    base_price: int  # cents
    discount_amount: int  # cents
    total_price: int  # cents
    coupon_code: Optional[str] = None


def coupon_applies(
    coupon: Optional[Dict[str, Any]], product_id: str, now: float
) -> bool:
    """
    A coupon that fails any check is simply not applied; it never blocks the
    purchase.
    """
    if not coupon or not coupon["is_active"]:
        return False
    if coupon["expires_at"] is not None and coupon["expires_at"] < now:
        return False
    max_uses = coupon["max_uses"]
    if max_uses is not None and coupon["used_count"] >= max_uses:
        return False
    if coupon["product_id"] and coupon["product_id"] != product_id:
        return False
    return coupon["discount_type"] in (PERCENTAGE, FIXED)


def discount_for(coupon: Dict[str, Any], base: int) -> int:
    value = max(Decimal(0), Decimal(str(coupon["discount_value"])))
    if coupon["discount_type"] == PERCENTAGE:
        raw = Decimal(base) * value / Decimal(100)
    else:
        raw = value
    discount = int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    # the total never goes negative
    return min(discount, base)


def quote(
    unit_price: int,
    quantity: int,
    product_id: str,
    now: float,
    coupon: Optional[Dict[str, Any]] = None,
) -> Quote:
    base = unit_price * quantity
    discount = 0
    code = None
    if coupon_applies(coupon, product_id, now):
        discount = discount_for(coupon, base)
        code = coupon["code"]
    return Quote(
        quantity=quantity,
        unit_price=unit_price,
        base_price=base,
        discount_amount=discount,
        total_price=base - discount,
        coupon_code=code,
    )
