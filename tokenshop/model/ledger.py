# model/ledger.py
"""
Ledger store: tokens (prepaid balance accounts) and their balance mutations.

Every mutation is a guarded single-statement UPDATE plus one immutable row in
``ledger_entries``, both inside the caller's transaction, so the balance of a
token always equals the sum of its entries.

All functions here are UN-GATED: the caller holds the DB gate and the
transaction.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import new_id, now_ts

# Entry reasons
R_ORDER = "order"
R_CANCEL = "cancel"
R_REJECT = "reject"
R_RECHARGE = "recharge"
R_REFUND = "refund"


def _token(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {
        "id": row["id"],
        "token": row["token"],
        "balance": int(row["balance"]),
        "is_blocked": bool(row["is_blocked"]),
    }


async def find_token(
    db: AsyncSession, token_value: str
) -> Optional[Dict[str, Any]]:
    """Case-insensitive lookup by the bearer secret."""
    row = (await db.execute(text("""
        SELECT id, token, balance, is_blocked FROM tokens
        WHERE lower(token) = lower(:v)
    """), {"v": token_value.strip()})).mappings().first()
    return _token(row)


async def get_token(
    db: AsyncSession, token_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT id, token, balance, is_blocked FROM tokens WHERE id = :id
    """), {"id": token_id})).mappings().first()
    return _token(row)


async def create_token(
    db: AsyncSession, token_value: str, created_ip: str | None = None
) -> Dict[str, Any]:
    # a duplicate raises IntegrityError from uq_tokens_token_lower
    token_id = new_id()
    await db.execute(text("""
        INSERT INTO tokens(id, token, balance, is_blocked, created_ip,
                           created_at)
        VALUES(:id, :t, 0, false, :ip, :c)
    """), {"id": token_id, "t": token_value.strip(), "ip": created_ip,
           "c": now_ts()})
    return {"id": token_id, "token": token_value.strip(), "balance": 0,
            "is_blocked": False}


async def _append_entry(
    db: AsyncSession, token_id: str, delta: int, reason: str,
    ref_id: str | None, balance_after: int
) -> None:
    await db.execute(text("""
        INSERT INTO ledger_entries(token_id, delta, reason, ref_id,
                                   balance_after, created_at)
        VALUES(:t, :d, :r, :ref, :b, :c)
    """), {"t": token_id, "d": delta, "r": reason, "ref": ref_id,
           "b": balance_after, "c": now_ts()})


async def debit(
    db: AsyncSession, token_id: str, amount: int, reason: str,
    ref_id: str | None = None
) -> Optional[int]:
    """
    Take `amount` cents off the balance if it covers it.
    Returns the new balance, or None when the guarded update matched nothing
    (unknown token or balance too low at this moment).
    """
    if amount < 0:
        raise ValueError("debit amount must not be negative")
    row = (await db.execute(text("""
        UPDATE tokens
        SET balance = balance - :a, updated_at = :now
        WHERE id = :id AND balance >= :a
        RETURNING balance
    """), {"a": amount, "id": token_id, "now": now_ts()})).first()
    if row is None:
        return None
    new_balance = int(row[0])
    await _append_entry(db, token_id, -amount, reason, ref_id, new_balance)
    return new_balance


async def credit(
    db: AsyncSession, token_id: str, amount: int, reason: str,
    ref_id: str | None = None
) -> Optional[int]:
    """
    Add `amount` cents. Returns the new balance or None for an unknown token.
    """
    if amount < 0:
        raise ValueError("credit amount must not be negative")
    row = (await db.execute(text("""
        UPDATE tokens
        SET balance = balance + :a, updated_at = :now
        WHERE id = :id
        RETURNING balance
    """), {"a": amount, "id": token_id, "now": now_ts()})).first()
    if row is None:
        return None
    new_balance = int(row[0])
    await _append_entry(db, token_id, amount, reason, ref_id, new_balance)
    return new_balance


async def set_blocked(db: AsyncSession, token_id: str, blocked: bool) -> bool:
    row = (await db.execute(text("""
        UPDATE tokens SET is_blocked = :b, updated_at = :now
        WHERE id = :id
        RETURNING id
    """), {"b": blocked, "id": token_id, "now": now_ts()})).first()
    return row is not None


async def list_entries(
    db: AsyncSession, token_id: str, limit: int = 100
) -> List[Dict[str, Any]]:
    rows = (await db.execute(text("""
        SELECT delta, reason, ref_id, balance_after, created_at
        FROM ledger_entries
        WHERE token_id = :t
        ORDER BY id DESC
        LIMIT :lim
    """), {"t": token_id, "lim": limit})).mappings().all()
    return [
        {
            "delta": int(r["delta"]),
            "reason": r["reason"],
            "ref_id": r["ref_id"],
            "balance_after": int(r["balance_after"]),
            "created_at": float(r["created_at"]),
        }
        for r in rows
    ]


async def credited_for(
    db: AsyncSession, ref_id: str, reasons: tuple[str, ...]
) -> int:
    """Total credited against `ref_id` for the given reasons."""
    stmt = text("""
        SELECT COALESCE(SUM(delta), 0) FROM ledger_entries
        WHERE ref_id = :r AND delta > 0 AND reason IN :reasons
    """).bindparams(bindparam("reasons", expanding=True))
    n = (await db.execute(
        stmt, {"r": ref_id, "reasons": list(reasons)}
    )).scalar_one()
    return int(n)
