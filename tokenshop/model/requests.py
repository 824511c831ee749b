# model/requests.py
"""
Recharge and refund requests: customer submissions reviewed by an operator.

Both are settled exactly once. Settlement is a guarded update
(`WHERE status = 'pending'`) so a double-clicked approval affects zero rows
the second time.
"""

from __future__ import annotations
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"


# ----------------------------
# Recharges
# ----------------------------
async def insert_recharge(
    db: AsyncSession,
    token_id: str,
    amount: int,
    payment_method: str | None,
    proof_image_url: str | None,
    sender_reference: str | None,
) -> str:
    request_id = new_id()
    await db.execute(text("""
        INSERT INTO recharge_requests(id, token_id, amount, payment_method,
                                      proof_image_url, sender_reference,
                                      status, created_at)
        VALUES(:id, :t, :a, :pm, :proof, :ref, 'pending', :c)
    """), {"id": request_id, "t": token_id, "a": amount,
           "pm": payment_method, "proof": proof_image_url,
           "ref": sender_reference, "c": now_ts()})
    return request_id


async def get_recharge(
    db: AsyncSession, request_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT id, token_id, amount, status, admin_note, processed_at
        FROM recharge_requests WHERE id = :id
    """), {"id": request_id})).mappings().first()
    if row is None:
        return None
    d = dict(row)
    d["amount"] = int(d["amount"])
    return d


async def settle_recharge(
    db: AsyncSession, request_id: str, status: str, note: str | None
) -> bool:
    row = (await db.execute(text("""
        UPDATE recharge_requests
        SET status = :s, admin_note = :n, processed_at = :now
        WHERE id = :id AND status = 'pending'
        RETURNING id
    """), {"s": status, "n": note, "now": now_ts(),
           "id": request_id})).first()
    return row is not None


# ----------------------------
# Refunds
# ----------------------------
_REFUND_SELECT = """
    SELECT id, token_id, order_id, order_number, reason, status,
           refund_amount, admin_notes, processed_at, created_at
    FROM refund_requests
"""


async def find_refund_by_order_number(
    db: AsyncSession, order_number: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(_REFUND_SELECT + " WHERE order_number = :n"),
        {"n": order_number},
    )).mappings().first()
    return dict(row) if row else None


async def get_refund(
    db: AsyncSession, request_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(_REFUND_SELECT + " WHERE id = :id"), {"id": request_id},
    )).mappings().first()
    return dict(row) if row else None


async def insert_refund(
    db: AsyncSession,
    token_id: str,
    order_id: str,
    order_number: str,
    reason: str,
) -> str:
    # a second request for the same order raises IntegrityError
    request_id = new_id()
    await db.execute(text("""
        INSERT INTO refund_requests(id, token_id, order_id, order_number,
                                    reason, status, created_at)
        VALUES(:id, :t, :oid, :n, :r, 'pending', :c)
    """), {"id": request_id, "t": token_id, "oid": order_id,
           "n": order_number, "r": reason, "c": now_ts()})
    return request_id


async def settle_refund(
    db: AsyncSession,
    request_id: str,
    status: str,
    note: str | None,
    amount: int | None,
) -> bool:
    row = (await db.execute(text("""
        UPDATE refund_requests
        SET status = :s, admin_notes = :n, refund_amount = :a,
            processed_at = :now
        WHERE id = :id AND status = 'pending'
        RETURNING id
    """), {"s": status, "n": note, "a": amount, "now": now_ts(),
           "id": request_id})).first()
    return row is not None
