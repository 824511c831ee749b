# model/inventory.py
"""
Inventory store: the pool of deliverable stock items per product option.

A row moves through three states, each exactly once:
  available  (is_sold = false, claimed_by IS NULL)
  claimed    (claimed_by = <order id>)        -- reservation step
  sold       (is_sold = true, sold_to_order_id = <order id>)

The claim is a single conditional UPDATE, so two concurrent placements can
never pick the same row. A claim that comes back short means someone else
won the race; the caller aborts its transaction, which releases its claims.
"""

from __future__ import annotations
from typing import Any, Dict, List, Sequence

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts

CONTENT_SEPARATOR = "\n---\n"


async def count_available(db: AsyncSession, option_id: str) -> int:
    n = (await db.execute(text("""
        SELECT COUNT(*) FROM stock_items
        WHERE product_option_id = :o AND is_sold = false
          AND claimed_by IS NULL
    """), {"o": option_id})).scalar_one()
    return int(n)


def _claim_sql(dialect: str) -> str:
    # on postgres skip rows another transaction is busy claiming instead of
    # queueing behind it
    lock = "FOR UPDATE SKIP LOCKED" if dialect == "postgresql" else ""
    return f"""
        UPDATE stock_items
        SET claimed_by = :oid
        WHERE id IN (
            SELECT id FROM stock_items
            WHERE product_option_id = :o AND is_sold = false
              AND claimed_by IS NULL
            ORDER BY created_at, id
            LIMIT :n
            {lock}
        )
          AND is_sold = false
          AND claimed_by IS NULL
        RETURNING id, content, created_at
    """


async def claim(
    db: AsyncSession, option_id: str, qty: int, order_id: str
) -> List[Dict[str, Any]]:
    """
    Reserve up to `qty` available rows for `order_id`.
    Returns the claimed rows oldest first; fewer than `qty` means contention
    or an empty pool and the caller must abort.
    """
    dialect = db.get_bind().dialect.name
    rows = (await db.execute(
        text(_claim_sql(dialect)),
        {"oid": order_id, "o": option_id, "n": qty},
    )).mappings().all()
    items = [
        {"id": r["id"], "content": r["content"],
         "created_at": float(r["created_at"])}
        for r in rows
    ]
    items.sort(key=lambda it: (it["created_at"], it["id"]))
    return items


def join_contents(items: Sequence[Dict[str, Any]]) -> str:
    return CONTENT_SEPARATOR.join(it["content"] for it in items)


async def mark_sold(db: AsyncSession, order_id: str) -> int:
    """Flag every row claimed by `order_id` as sold to it."""
    result = await db.execute(text("""
        UPDATE stock_items
        SET is_sold = true, sold_to_order_id = :oid, sold_at = :now
        WHERE claimed_by = :oid AND is_sold = false
    """), {"oid": order_id, "now": now_ts()})
    return int(result.rowcount or 0)


async def add_items(
    db: AsyncSession, option_id: str, contents: Sequence[str]
) -> List[str]:
    ids = []
    now = now_ts()
    for i, content in enumerate(contents):
        item_id = new_id()
        # keep insertion order stable for the oldest-first claim
        await db.execute(text("""
            INSERT INTO stock_items(id, product_option_id, content, is_sold,
                                    created_at)
            VALUES(:id, :o, :c, false, :t)
        """), {"id": item_id, "o": option_id, "c": content,
               "t": now + i * 1e-3})
        ids.append(item_id)
    return ids


async def delete_items(db: AsyncSession, ids: Sequence[str]) -> int:
    """Delete stock rows that were never claimed. Sold rows are history."""
    if not ids:
        return 0
    stmt = text("""
        DELETE FROM stock_items
        WHERE id IN :ids AND is_sold = false AND claimed_by IS NULL
    """).bindparams(bindparam("ids", expanding=True))
    result = await db.execute(stmt, {"ids": list(ids)})
    return int(result.rowcount or 0)


async def sold_item_ids(db: AsyncSession, order_id: str) -> List[str]:
    rows = (await db.execute(text("""
        SELECT id FROM stock_items WHERE sold_to_order_id = :oid
    """), {"oid": order_id})).all()
    return [r[0] for r in rows]


async def compute_inventory(db: AsyncSession) -> Dict[str, Dict[str, int]]:
    """
    Returns, per product option id:
      { "available": ..., "claimed": ..., "sold": ... }
    where claimed counts rows reserved but not yet flagged sold.
    """
    rows = (await db.execute(text("""
        SELECT product_option_id,
               SUM(CASE WHEN is_sold = false AND claimed_by IS NULL
                        THEN 1 ELSE 0 END) AS available,
               SUM(CASE WHEN is_sold = false AND claimed_by IS NOT NULL
                        THEN 1 ELSE 0 END) AS claimed,
               SUM(CASE WHEN is_sold = true THEN 1 ELSE 0 END) AS sold
        FROM stock_items
        GROUP BY product_option_id
    """))).mappings().all()
    return {
        r["product_option_id"]: {
            "available": int(r["available"] or 0),
            "claimed": int(r["claimed"] or 0),
            "sold": int(r["sold"] or 0),
        }
        for r in rows
    }
