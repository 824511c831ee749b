# model/devices.py
# Device purchase limiter: an append-only log of quantities bought per
# (device fingerprint, product option), summed on read.

from __future__ import annotations

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts


async def purchased_quantity(
    db: AsyncSession, fingerprint: str, option_id: str
) -> int:
    n = (await db.execute(text("""
        SELECT COALESCE(SUM(quantity), 0) FROM device_purchases
        WHERE device_fingerprint = :fp AND product_option_id = :o
    """), {"fp": fingerprint, "o": option_id})).scalar_one()
    return int(n)


async def record_purchase(
    db: AsyncSession, fingerprint: str, option_id: str, order_id: str,
    qty: int
) -> None:
    await db.execute(text("""
        INSERT INTO device_purchases(device_fingerprint, product_option_id,
                                     order_id, quantity, created_at)
        VALUES(:fp, :o, :oid, :q, :c)
    """), {"fp": fingerprint, "o": option_id, "oid": order_id, "q": qty,
           "c": now_ts()})
