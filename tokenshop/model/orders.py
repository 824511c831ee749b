# model/orders.py
"""
Order state machine and order store.

  pending ──claim──> in_progress ──> completed | rejected
     │
     ├──> completed | rejected
     └──> cancelled

completed, rejected and cancelled are terminal. Auto-delivery orders are born
completed; manual ones are born pending. At most one pending/in_progress
order may exist per token (partial unique index uq_orders_one_active_per_token).

Status changes are guarded updates (`... WHERE status IN (<allowed sources>)`)
so a concurrent transition wins deterministically and the loser sees zero
affected rows.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidTransition, OrderInProgress
from ..helpers import format_order_number
from .orm import ORDER_COUNTER

# Order statuses
PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
REJECTED = "rejected"
CANCELLED = "cancelled"

ACTIVE = (PENDING, IN_PROGRESS)
TERMINAL = (COMPLETED, REJECTED, CANCELLED)
STATUSES = ACTIVE + TERMINAL

TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    PENDING: (IN_PROGRESS, CANCELLED, COMPLETED, REJECTED),
    IN_PROGRESS: (COMPLETED, REJECTED),
}

# transitions into these give the customer their money back
REFUNDING = (CANCELLED, REJECTED)

# Delivery modes
AUTO = "auto"
MANUAL_LINK = "manual_link"
MANUAL_EMAIL_PASSWORD = "manual_email_password"
MANUAL_TEXT = "manual_text"
CHAT = "chat"

DELIVERY_MODES = (AUTO, MANUAL_LINK, MANUAL_EMAIL_PASSWORD, MANUAL_TEXT, CHAT)

# modes where the customer picks the quantity
QUANTITY_MODES = (AUTO, CHAT)

REQUIRED_FIELDS: Dict[str, Tuple[str, ...]] = {
    AUTO: (),
    MANUAL_LINK: ("verification_link",),
    MANUAL_EMAIL_PASSWORD: ("email", "password"),
    MANUAL_TEXT: ("text_input",),
    CHAT: (),
}

# columns an operator may set alongside a status change
_TRANSITION_FIELDS = ("response_message", "delivered_at")

_ORDER_COLUMNS = (
    "id", "order_number", "token_id", "product_id", "product_option_id",
    "quantity", "unit_price", "base_price", "discount_amount", "total_price",
    "coupon_code", "status", "device_fingerprint", "stock_content",
    "response_message", "delivered_email", "delivered_password",
    "verification_link", "text_input", "created_at", "updated_at",
    "delivered_at",
)

_INT_COLUMNS = ("quantity", "unit_price", "base_price", "discount_amount",
                "total_price")


# ----------------------------
# State machine
# ----------------------------
def sources_for(target: str) -> Tuple[str, ...]:
    return tuple(s for s, targets in TRANSITIONS.items() if target in targets)


def check_transition(current: str, target: str) -> None:
    if target in TRANSITIONS.get(current, ()):
        return
    if current == IN_PROGRESS and target == CANCELLED:
        raise OrderInProgress(status=current)
    raise InvalidTransition(status=current, target=target)


# ----------------------------
# Store
# ----------------------------
def _order(row) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    d = dict(row)
    for k in _INT_COLUMNS:
        d[k] = int(d[k] or 0)
    return d


_SELECT = "SELECT " + ", ".join(_ORDER_COLUMNS) + " FROM orders"


async def get_order(
    db: AsyncSession, order_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(
        text(_SELECT + " WHERE id = :id"), {"id": order_id}
    )).mappings().first()
    return _order(row)


async def find_active(
    db: AsyncSession, token_id: str
) -> Optional[Dict[str, Any]]:
    row = (await db.execute(text("""
        SELECT id, order_number, status FROM orders
        WHERE token_id = :t AND status IN ('pending', 'in_progress')
        ORDER BY created_at
        LIMIT 1
    """), {"t": token_id})).mappings().first()
    return dict(row) if row else None


async def find_by_number(
    db: AsyncSession, token_id: str, variants: Sequence[str]
) -> Optional[Dict[str, Any]]:
    stmt = text(
        _SELECT + " WHERE token_id = :t AND order_number IN :nums"
    ).bindparams(bindparam("nums", expanding=True))
    row = (await db.execute(
        stmt, {"t": token_id, "nums": list(variants)}
    )).mappings().first()
    return _order(row)


async def list_for_token(
    db: AsyncSession, token_id: str, limit: int = 50
) -> List[Dict[str, Any]]:
    rows = (await db.execute(
        text(_SELECT + """
            WHERE token_id = :t ORDER BY created_at DESC LIMIT :lim
        """),
        {"t": token_id, "lim": limit},
    )).mappings().all()
    return [_order(r) for r in rows]


async def next_order_number(db: AsyncSession) -> str:
    seq = (await db.execute(text("""
        UPDATE order_counters SET value = value + 1
        WHERE name = :n
        RETURNING value
    """), {"n": ORDER_COUNTER})).scalar_one()
    return format_order_number(int(seq))


async def insert_order(db: AsyncSession, order: Dict[str, Any]) -> None:
    cols = [c for c in _ORDER_COLUMNS if c in order]
    await db.execute(
        text(
            "INSERT INTO orders(" + ", ".join(cols) + ") "
            "VALUES(" + ", ".join(":" + c for c in cols) + ")"
        ),
        {c: order[c] for c in cols},
    )


async def guarded_transition(
    db: AsyncSession,
    order_id: str,
    target: str,
    now: float,
    sources: Sequence[str] | None = None,
    **fields: Any,
) -> bool:
    """
    Move `order_id` to `target` only if its status is still one of
    `sources` (default: every status allowed to reach `target`).
    Returns False when the guard matched nothing.
    """
    unknown = set(fields) - set(_TRANSITION_FIELDS)
    if unknown:
        raise ValueError(f"cannot set {sorted(unknown)} on transition")
    sources = tuple(sources or sources_for(target))
    sets = ["status = :target", "updated_at = :now"]
    sets += [f"{k} = :{k}" for k in fields]
    stmt = text(
        "UPDATE orders SET " + ", ".join(sets) +
        " WHERE id = :id AND status IN :sources RETURNING id"
    ).bindparams(bindparam("sources", expanding=True))
    row = (await db.execute(stmt, {
        "target": target, "now": now, "id": order_id,
        "sources": list(sources), **fields,
    })).first()
    return row is not None
