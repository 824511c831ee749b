# model/coupons.py
"""
Coupon store. Lookup is by normalized code; usage is counted with a guarded
atomic increment so concurrent orders can never push used_count past
max_uses.
"""

from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

PERCENTAGE = "percentage"
FIXED = "fixed"


def normalize_code(code: str) -> str:
    return code.strip().upper()


async def find_coupon(
    db: AsyncSession, code: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT code, discount_type, discount_value, max_uses, used_count,
               product_id, expires_at, is_active
        FROM coupons WHERE code = :c
    """), {"c": normalize_code(code)})).mappings().first()
    if row is None:
        return None
    return {
        "code": row["code"],
        "discount_type": row["discount_type"],
        "discount_value": Decimal(str(row["discount_value"])),
        "max_uses": row["max_uses"],
        "used_count": int(row["used_count"] or 0),
        "product_id": row["product_id"],
        "expires_at": row["expires_at"],
        "is_active": bool(row["is_active"]),
    }


async def redeem(db: AsyncSession, code: str) -> bool:
    """
    Count one use. False when the cap was reached in the meantime; the
    counter is never pushed past max_uses.
    """
    row = (await db.execute(text("""
        UPDATE coupons
        SET used_count = used_count + 1
        WHERE code = :c
          AND (max_uses IS NULL OR used_count < max_uses)
        RETURNING used_count
    """), {"c": normalize_code(code)})).first()
    return row is not None
