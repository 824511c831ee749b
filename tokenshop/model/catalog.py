from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession


async def get_option(
    db: AsyncSession, product_id: str, option_id: str
) -> Optional[Dict[str, Any]]:
    """
    Resolve a sellable option: it must belong to `product_id` and both the
    option and its product must be active.
    """
    row = (await db.execute(text("""
        SELECT o.id, o.product_id, o.name, o.price, o.delivery_mode,
               o.purchase_limit, o.max_quantity_per_order
        FROM product_options AS o
        JOIN products AS p ON p.id = o.product_id
        WHERE o.id = :o AND o.product_id = :p
          AND o.is_active = true AND p.is_active = true
    """), {"o": option_id, "p": product_id})).mappings().first()
    if row is None:
        return None
    d = dict(row)
    d["price"] = int(d["price"])
    return d


async def option_exists(db: AsyncSession, option_id: str) -> bool:
    row = (await db.execute(text("""
        SELECT 1 FROM product_options WHERE id = :o
    """), {"o": option_id})).first()
    return row is not None
