# tokenshop/fulfillment.py
"""
Order-fulfillment engine.

Every public operation is one short database transaction, taken under the DB
gate and bounded by a timeout. Inside the transaction the steps keep the
order that makes partial failure harmless:

  place:   claim stock -> count coupon -> insert order -> debit balance
           -> mark stock sold / log device (best-effort)
  cancel:  guarded status flip -> credit balance
  settle:  credit balance -> guarded request status flip

A failure in a financially authoritative step raises, and the rollback is the
compensating action (the order row disappears, claims are released, a credit
is withdrawn). Best-effort steps run in savepoints: their failure is logged
and the order stands.
"""
from __future__ import annotations
import asyncio
import logging
import os
from dataclasses import dataclass
from typing import (
    Any, AsyncContextManager, Awaitable, Callable, Dict, List, Optional,
    Sequence, TypedDict,
)

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import pricing
from .errors import (
    AlreadyProcessed, AlreadyRefunded, BalanceDeductFailed, HasPendingOrder,
    InsufficientBalance, InsufficientStock, InvalidInput, InvalidQuantity,
    InvalidTransition, MissingFields, OptionNotFound, OrderInProgress,
    OrderNotFound, PurchaseLimitReached, RefundExists, RequestNotFound,
    StoreTimeout, TokenBlocked, TokenExists, TokenNotFound, Unauthorized,
)
from .helpers import clean_str, new_id, now_ts, order_number_variants
from .infra.timings import timeit
from .model import (
    catalog, coupons, devices, inventory, ledger, orders, requests,
)

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "10"))

APPROVE = "approve"
REJECT = "reject"

# operator-facing transitions
OPERATOR_TARGETS = (
    orders.IN_PROGRESS, orders.COMPLETED, orders.REJECTED, orders.CANCELLED,
)


@dataclass
class PlaceOrderRequest:
    token_value: str
    product_id: str
    option_id: str
    quantity: int = 1
    email: Optional[str] = None
    password: Optional[str] = None
    verification_link: Optional[str] = None
    text_input: Optional[str] = None
    coupon_code: Optional[str] = None
    device_fingerprint: Optional[str] = None


class PlaceOrderResult(TypedDict):
    order_id: str
    order_number: str
    status: str
    quantity: int
    base_price: int
    discount_amount: int
    total_price: int
    coupon_code: Optional[str]
    delivered_content: Optional[str]
    new_balance: int


class CancelOrderResult(TypedDict):
    order_id: str
    order_number: str
    status: str
    already_cancelled: bool
    refund_amount: int
    new_balance: int


class TransitionResult(TypedDict):
    order_id: str
    order_number: str
    status: str
    refund_amount: int
    new_balance: Optional[int]


class SettleResult(TypedDict):
    request_id: str
    status: str
    new_balance: Optional[int]


def public_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return {
        k: order.get(k) for k in (
            "id", "order_number", "product_id", "product_option_id",
            "quantity", "unit_price", "base_price", "discount_amount",
            "total_price", "coupon_code", "status", "stock_content",
            "response_message", "delivered_email", "delivered_password",
            "verification_link", "text_input", "created_at", "updated_at",
            "delivered_at",
        )
    }


class FulfillmentEngine:
    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        gated: Gated,
        timeout_seconds: float = STORE_TIMEOUT_SECONDS,
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.timeout = timeout_seconds

    # ------------------------------------------------------------------
    # plumbing
    # ------------------------------------------------------------------
    async def _in_tx(
        self, fn: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        async with self.sessions() as session:
            async with self.gated():
                async with session.begin():
                    return await fn(session, *args)

    async def _run(
        self, kind: str, fn: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        try:
            async with timeit(kind):
                return await asyncio.wait_for(
                    self._in_tx(fn, *args), timeout=self.timeout
                )
        except asyncio.TimeoutError:
            # the transaction was rolled back on cancellation: fail closed
            logger.error("%s timed out after %.1fs", kind, self.timeout)
            raise StoreTimeout(operation=kind)

    async def _best_effort(
        self, db: AsyncSession, kind: str,
        fn: Callable[..., Awaitable[Any]], *args: Any
    ) -> Any:
        try:
            async with timeit(kind):
                async with db.begin_nested():
                    return await fn(db, *args)
        except SQLAlchemyError:
            logger.exception("%s failed after the order was paid", kind)
            return None

    # ------------------------------------------------------------------
    # place order
    # ------------------------------------------------------------------
    async def place_order(self, req: PlaceOrderRequest) -> PlaceOrderResult:
        return await self._run("engine.place_order", self._place_order, req)

    @staticmethod
    def _quantity(option: Dict[str, Any], requested: Any) -> int:
        if option["delivery_mode"] not in orders.QUANTITY_MODES:
            return 1
        qty = 1 if requested is None else requested
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise InvalidQuantity(quantity=requested)
        max_qty = option["max_quantity_per_order"]
        if max_qty is not None and qty > max_qty:
            raise InvalidQuantity(quantity=qty, max_quantity=max_qty)
        return qty

    @staticmethod
    def _delivery_fields(
        mode: str, req: PlaceOrderRequest
    ) -> Dict[str, Optional[str]]:
        given = {
            "email": clean_str(req.email),
            "password": req.password or None,
            "verification_link": clean_str(req.verification_link),
            "text_input": clean_str(req.text_input),
        }
        missing = [f for f in orders.REQUIRED_FIELDS[mode] if not given[f]]
        if missing:
            raise MissingFields(fields=missing)
        if mode == orders.AUTO:
            return {}
        return {
            "delivered_email": given["email"],
            "delivered_password": given["password"],
            "verification_link": given["verification_link"],
            "text_input": given["text_input"],
        }

    async def _place_order(
        self, db: AsyncSession, req: PlaceOrderRequest
    ) -> PlaceOrderResult:
        now = now_ts()

        # ---- preconditions, first failure wins, nothing written yet
        token = await ledger.find_token(db, req.token_value)
        if token is None:
            raise TokenNotFound()
        if token["is_blocked"]:
            raise TokenBlocked()

        active = await orders.find_active(db, token["id"])
        if active is not None:
            raise HasPendingOrder(order_number=active["order_number"])

        option = await catalog.get_option(db, req.product_id, req.option_id)
        if option is None:
            raise OptionNotFound()
        mode = option["delivery_mode"]
        if mode not in orders.DELIVERY_MODES:
            logger.error("option %s has unknown delivery mode %r",
                         option["id"], mode)
            raise OptionNotFound()
        qty = self._quantity(option, req.quantity)
        fields = self._delivery_fields(mode, req)

        coupon = None
        if clean_str(req.coupon_code):
            coupon = await coupons.find_coupon(db, req.coupon_code)
        q = pricing.quote(option["price"], qty, option["product_id"], now,
                          coupon)

        if token["balance"] < q.total_price:
            raise InsufficientBalance(balance=token["balance"],
                                      required=q.total_price)

        fingerprint = clean_str(req.device_fingerprint)
        limit = option["purchase_limit"]
        if limit is not None and fingerprint:
            purchased = await devices.purchased_quantity(
                db, fingerprint, option["id"]
            )
            if purchased + qty > limit:
                raise PurchaseLimitReached(purchased=purchased, limit=limit)

        if mode == orders.AUTO:
            available = await inventory.count_available(db, option["id"])
            if available < qty:
                raise InsufficientStock(available=available)

        order_id = new_id()

        # ---- a. reserve stock
        claimed: List[Dict[str, Any]] = []
        if mode == orders.AUTO:
            async with timeit("inventory.claim"):
                claimed = await inventory.claim(db, option["id"], qty,
                                                order_id)
            if len(claimed) < qty:
                # lost a race for some rows; ours go back on rollback
                available = (
                    await inventory.count_available(db, option["id"])
                    + len(claimed)
                )
                logger.warning(
                    "stock claim for option %s came back short (%d/%d)",
                    option["id"], len(claimed), qty,
                )
                raise InsufficientStock(available=available)

        # ---- coupon use is counted before the order exists; a guarded
        # increment that matches nothing means the cap was reached since
        # the quote, so the order is priced without it
        if q.coupon_code:
            async with timeit("coupons.redeem"):
                counted = await coupons.redeem(db, q.coupon_code)
            if not counted:
                logger.warning("coupon %s reached its cap during placement, "
                               "pricing without it", q.coupon_code)
                q = pricing.quote(option["price"], qty,
                                  option["product_id"], now)
                if token["balance"] < q.total_price:
                    raise InsufficientBalance(balance=token["balance"],
                                              required=q.total_price)

        # ---- b. insert the order row
        status = orders.COMPLETED if mode == orders.AUTO else orders.PENDING
        content = inventory.join_contents(claimed) if claimed else None
        order_number = await orders.next_order_number(db)
        row = {
            "id": order_id,
            "order_number": order_number,
            "token_id": token["id"],
            "product_id": option["product_id"],
            "product_option_id": option["id"],
            "quantity": qty,
            "unit_price": q.unit_price,
            "base_price": q.base_price,
            "discount_amount": q.discount_amount,
            "total_price": q.total_price,
            "coupon_code": q.coupon_code,
            "status": status,
            "device_fingerprint": fingerprint,
            "stock_content": content,
            "response_message": content,
            "created_at": now,
            "updated_at": now,
            "delivered_at": now if content is not None else None,
            **fields,
        }
        try:
            async with timeit("orders.insert"):
                async with db.begin_nested():
                    await orders.insert_order(db, row)
        except IntegrityError:
            # another placement for this token got its pending order in
            # between our check and our insert
            winner = await orders.find_active(db, token["id"])
            if winner is None:
                raise
            raise HasPendingOrder(order_number=winner["order_number"])

        # ---- c. debit; on failure the rollback deletes the order row
        async with timeit("ledger.debit"):
            new_balance = await ledger.debit(
                db, token["id"], q.total_price, ledger.R_ORDER, order_id
            )
        if new_balance is None:
            logger.error("debit of %d for order %s failed, rolling back",
                         q.total_price, order_number)
            raise BalanceDeductFailed()

        # ---- best-effort
        if claimed:
            sold = await self._best_effort(
                db, "inventory.mark_sold", inventory.mark_sold, order_id
            )
            if sold is not None and sold != len(claimed):
                logger.error("order %s: flagged %d of %d claimed items sold",
                             order_number, sold, len(claimed))

        if fingerprint:
            await self._best_effort(
                db, "devices.record", devices.record_purchase,
                fingerprint, option["id"], order_id, qty,
            )

        logger.info("order %s placed: %s x%d, total %d, status %s",
                    order_number, option["id"], qty, q.total_price, status)
        return {
            "order_id": order_id,
            "order_number": order_number,
            "status": status,
            "quantity": qty,
            "base_price": q.base_price,
            "discount_amount": q.discount_amount,
            "total_price": q.total_price,
            "coupon_code": q.coupon_code,
            "delivered_content": content,
            "new_balance": new_balance,
        }

    # ------------------------------------------------------------------
    # cancel order (customer)
    # ------------------------------------------------------------------
    async def cancel_order(
        self, order_id: str, token_id: str
    ) -> CancelOrderResult:
        return await self._run("engine.cancel_order", self._cancel_order,
                               order_id, token_id)

    async def _already_cancelled(
        self, db: AsyncSession, order: Dict[str, Any]
    ) -> CancelOrderResult:
        token = await ledger.get_token(db, order["token_id"])
        return {
            "order_id": order["id"],
            "order_number": order["order_number"],
            "status": orders.CANCELLED,
            "already_cancelled": True,
            "refund_amount": 0,
            "new_balance": token["balance"] if token else 0,
        }

    async def _cancel_order(
        self, db: AsyncSession, order_id: str, token_id: str
    ) -> CancelOrderResult:
        order = await orders.get_order(db, order_id)
        if order is None:
            raise OrderNotFound()
        if order["token_id"] != token_id:
            raise Unauthorized()
        if order["status"] == orders.CANCELLED:
            return await self._already_cancelled(db, order)
        orders.check_transition(order["status"], orders.CANCELLED)

        ok = await orders.guarded_transition(
            db, order_id, orders.CANCELLED, now_ts(),
            sources=(orders.PENDING,),
        )
        if not ok:
            # an operator moved it first; report what actually happened
            current = await orders.get_order(db, order_id)
            if current["status"] == orders.CANCELLED:
                return await self._already_cancelled(db, current)
            orders.check_transition(current["status"], orders.CANCELLED)
            raise InvalidTransition(status=current["status"])

        refund = order["total_price"]
        new_balance = await ledger.credit(
            db, token_id, refund, ledger.R_CANCEL, order_id
        )
        if new_balance is None:
            raise TokenNotFound()
        logger.info("order %s cancelled, %d refunded",
                    order["order_number"], refund)
        return {
            "order_id": order_id,
            "order_number": order["order_number"],
            "status": orders.CANCELLED,
            "already_cancelled": False,
            "refund_amount": refund,
            "new_balance": new_balance,
        }

    # ------------------------------------------------------------------
    # operator transitions
    # ------------------------------------------------------------------
    async def transition_order(
        self, order_id: str, target: str,
        response_message: Optional[str] = None,
    ) -> TransitionResult:
        if target not in OPERATOR_TARGETS:
            raise InvalidInput(field="status")
        return await self._run("engine.transition_order",
                               self._transition_order, order_id, target,
                               response_message)

    async def _transition_order(
        self, db: AsyncSession, order_id: str, target: str,
        response_message: Optional[str],
    ) -> TransitionResult:
        now = now_ts()
        order = await orders.get_order(db, order_id)
        if order is None:
            raise OrderNotFound()
        if order["status"] == target == orders.CANCELLED:
            return {"order_id": order_id,
                    "order_number": order["order_number"],
                    "status": orders.CANCELLED, "refund_amount": 0,
                    "new_balance": None}
        orders.check_transition(order["status"], target)

        fields: Dict[str, Any] = {}
        if target == orders.COMPLETED:
            fields["delivered_at"] = now
        if response_message and target in (orders.COMPLETED,
                                           orders.REJECTED):
            fields["response_message"] = response_message

        ok = await orders.guarded_transition(db, order_id, target, now,
                                             **fields)
        if not ok:
            current = await orders.get_order(db, order_id)
            orders.check_transition(current["status"], target)
            raise InvalidTransition(status=current["status"])

        refund = 0
        new_balance = None
        if target in orders.REFUNDING:
            refund = order["total_price"]
            reason = (ledger.R_CANCEL if target == orders.CANCELLED
                      else ledger.R_REJECT)
            new_balance = await ledger.credit(
                db, order["token_id"], refund, reason, order_id
            )
            if new_balance is None:
                raise TokenNotFound()
        logger.info("order %s: %s -> %s", order["order_number"],
                    order["status"], target)
        return {
            "order_id": order_id,
            "order_number": order["order_number"],
            "status": target,
            "refund_amount": refund,
            "new_balance": new_balance,
        }

    # ------------------------------------------------------------------
    # recharges
    # ------------------------------------------------------------------
    async def submit_recharge(
        self,
        amount: int,
        token_id: Optional[str] = None,
        new_token: Optional[str] = None,
        payment_method: Optional[str] = None,
        proof_image_url: Optional[str] = None,
        sender_reference: Optional[str] = None,
        user_ip: Optional[str] = None,
    ) -> Dict[str, Any]:
        if isinstance(amount, bool) or not isinstance(amount, int) \
                or amount <= 0:
            raise InvalidInput(field="amount")
        if not token_id and not clean_str(new_token):
            raise InvalidInput(field="token_id")
        return await self._run(
            "engine.submit_recharge", self._submit_recharge, amount,
            token_id, clean_str(new_token), clean_str(payment_method),
            clean_str(proof_image_url), clean_str(sender_reference), user_ip,
        )

    async def _submit_recharge(
        self, db: AsyncSession, amount: int, token_id: Optional[str],
        new_token: Optional[str], payment_method: Optional[str],
        proof_image_url: Optional[str], sender_reference: Optional[str],
        user_ip: Optional[str],
    ) -> Dict[str, Any]:
        created = None
        if token_id:
            token = await ledger.get_token(db, token_id)
            if token is None:
                raise TokenNotFound()
            if token["is_blocked"]:
                raise TokenBlocked()
        else:
            try:
                async with db.begin_nested():
                    token = await ledger.create_token(db, new_token, user_ip)
            except IntegrityError:
                raise TokenExists()
            created = token["token"]
        request_id = await requests.insert_recharge(
            db, token["id"], amount, payment_method, proof_image_url,
            sender_reference,
        )
        return {"request_id": request_id, "token_id": token["id"],
                "created_token": created}

    async def process_recharge(
        self, request_id: str, action: str, note: Optional[str] = None
    ) -> SettleResult:
        if action not in (APPROVE, REJECT):
            raise InvalidInput(field="action")
        return await self._run("engine.process_recharge",
                               self._process_recharge, request_id, action,
                               note)

    async def _process_recharge(
        self, db: AsyncSession, request_id: str, action: str,
        note: Optional[str],
    ) -> SettleResult:
        req = await requests.get_recharge(db, request_id)
        if req is None:
            raise RequestNotFound()
        if req["status"] != requests.PENDING:
            raise AlreadyProcessed(status=req["status"])

        new_balance = None
        if action == APPROVE:
            # credit first: the status flip is the record that money was
            # granted, so it must not happen without the credit
            new_balance = await ledger.credit(
                db, req["token_id"], req["amount"], ledger.R_RECHARGE,
                request_id,
            )
            if new_balance is None:
                raise TokenNotFound()
        status = requests.APPROVED if action == APPROVE else requests.REJECTED
        if not await requests.settle_recharge(db, request_id, status, note):
            # a concurrent click won; our credit goes away with the rollback
            raise AlreadyProcessed()
        logger.info("recharge %s %s (%d)", request_id, status, req["amount"])
        return {"request_id": request_id, "status": status,
                "new_balance": new_balance}

    # ------------------------------------------------------------------
    # refunds
    # ------------------------------------------------------------------
    async def submit_refund(
        self, token_value: str, order_number: str, reason: str = ""
    ) -> Dict[str, Any]:
        if not clean_str(token_value) or not clean_str(order_number):
            raise InvalidInput(field="order_number")
        return await self._run("engine.submit_refund", self._submit_refund,
                               token_value, order_number,
                               (reason or "").strip())

    async def _submit_refund(
        self, db: AsyncSession, token_value: str, order_number: str,
        reason: str,
    ) -> Dict[str, Any]:
        token = await ledger.find_token(db, token_value)
        if token is None:
            raise TokenNotFound()
        if token["is_blocked"]:
            raise TokenBlocked()
        order = await orders.find_by_number(
            db, token["id"], order_number_variants(order_number)
        )
        if order is None:
            raise OrderNotFound()
        if order["status"] in orders.ACTIVE:
            raise OrderInProgress(status=order["status"])
        if await self._refundable(db, order) <= 0:
            # cancellation or rejection already paid the total back
            raise AlreadyRefunded(order_number=order["order_number"])

        existing = await requests.find_refund_by_order_number(
            db, order["order_number"]
        )
        if existing is not None:
            raise RefundExists(status=existing["status"])
        try:
            async with db.begin_nested():
                request_id = await requests.insert_refund(
                    db, token["id"], order["id"], order["order_number"],
                    reason,
                )
        except IntegrityError:
            existing = await requests.find_refund_by_order_number(
                db, order["order_number"]
            )
            if existing is None:
                raise
            raise RefundExists(status=existing["status"])
        return {"request_id": request_id,
                "order_number": order["order_number"]}

    async def process_refund(
        self,
        action: str,
        request_id: Optional[str] = None,
        order_number: Optional[str] = None,
        note: Optional[str] = None,
        amount: Optional[int] = None,
    ) -> SettleResult:
        if action not in (APPROVE, REJECT):
            raise InvalidInput(field="action")
        if not request_id and not clean_str(order_number):
            raise InvalidInput(field="request_id")
        if amount is not None and (
            isinstance(amount, bool) or not isinstance(amount, int)
            or amount <= 0
        ):
            raise InvalidInput(field="amount")
        return await self._run("engine.process_refund",
                               self._process_refund, action, request_id,
                               order_number, note, amount)

    async def _refundable(
        self, db: AsyncSession, order: Dict[str, Any]
    ) -> int:
        """What is left of the order total after cancel/reject credits."""
        paid_back = await ledger.credited_for(
            db, order["id"], (ledger.R_CANCEL, ledger.R_REJECT)
        )
        return order["total_price"] - paid_back

    async def _find_refund(
        self, db: AsyncSession, request_id: Optional[str],
        order_number: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        if request_id:
            return await requests.get_refund(db, request_id)
        for num in order_number_variants(order_number):
            found = await requests.find_refund_by_order_number(db, num)
            if found is not None:
                return found
        return None

    async def _process_refund(
        self, db: AsyncSession, action: str, request_id: Optional[str],
        order_number: Optional[str], note: Optional[str],
        amount: Optional[int],
    ) -> SettleResult:
        req = await self._find_refund(db, request_id, order_number)
        if req is None:
            raise RequestNotFound()
        if req["status"] != requests.PENDING:
            raise AlreadyProcessed(status=req["status"])

        new_balance = None
        credited = None
        if action == APPROVE:
            credited = amount
            order = (await orders.get_order(db, req["order_id"])
                     if req["order_id"] else None)
            if order is not None:
                refundable = await self._refundable(db, order)
                if refundable <= 0:
                    raise AlreadyRefunded(order_number=order["order_number"])
                if credited is None:
                    credited = refundable
                elif credited > refundable:
                    raise InvalidInput(field="amount", refundable=refundable)
            if credited is None or credited <= 0:
                raise InvalidInput(field="amount")
            new_balance = await ledger.credit(
                db, req["token_id"], credited, ledger.R_REFUND, req["id"]
            )
            if new_balance is None:
                raise TokenNotFound()
        status = requests.APPROVED if action == APPROVE else requests.REJECTED
        if not await requests.settle_refund(db, req["id"], status, note,
                                            credited):
            raise AlreadyProcessed()
        logger.info("refund %s for %s %s", req["id"], req["order_number"],
                    status)
        return {"request_id": req["id"], "status": status,
                "new_balance": new_balance}

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def lookup_token(self, token_value: str) -> Dict[str, Any]:
        return await self._run("engine.lookup_token", self._lookup_token,
                               token_value)

    async def _lookup_token(
        self, db: AsyncSession, token_value: str
    ) -> Dict[str, Any]:
        token = await ledger.find_token(db, token_value)
        if token is None:
            raise TokenNotFound()
        return token

    async def order_status(
        self, token_value: str, order_id: str
    ) -> Dict[str, Any]:
        return await self._run("engine.order_status", self._order_status,
                               token_value, order_id)

    async def _order_status(
        self, db: AsyncSession, token_value: str, order_id: str
    ) -> Dict[str, Any]:
        token = await ledger.find_token(db, token_value)
        if token is None:
            raise TokenNotFound()
        order = await orders.get_order(db, order_id)
        if order is None or order["token_id"] != token["id"]:
            raise OrderNotFound()
        return public_order(order)

    async def token_data(
        self, token_value: str, limit: int = 50
    ) -> Dict[str, Any]:
        return await self._run("engine.token_data", self._token_data,
                               token_value, limit)

    async def _token_data(
        self, db: AsyncSession, token_value: str, limit: int
    ) -> Dict[str, Any]:
        token = await ledger.find_token(db, token_value)
        if token is None:
            raise TokenNotFound()
        recent = await orders.list_for_token(db, token["id"], limit)
        active = await orders.find_active(db, token["id"])
        return {
            "token_id": token["id"],
            "balance": token["balance"],
            "is_blocked": token["is_blocked"],
            "active_order": active,
            "orders": [public_order(o) for o in recent],
        }

    async def refund_status(
        self, token_value: str, order_number: str
    ) -> Dict[str, Any]:
        return await self._run("engine.refund_status", self._refund_status,
                               token_value, order_number)

    async def _refund_status(
        self, db: AsyncSession, token_value: str, order_number: str
    ) -> Dict[str, Any]:
        token = await ledger.find_token(db, token_value)
        if token is None:
            raise TokenNotFound()
        req = await self._find_refund(db, None, order_number)
        if req is None or req["token_id"] != token["id"]:
            raise RequestNotFound()
        return {
            "request_id": req["id"],
            "order_number": req["order_number"],
            "status": req["status"],
            "refund_amount": req["refund_amount"],
            "admin_notes": req["admin_notes"],
            "processed_at": req["processed_at"],
        }

    async def inventory(self) -> Dict[str, Dict[str, int]]:
        return await self._run("engine.inventory", inventory.compute_inventory)

    async def ledger_entries(
        self, token_id: str, limit: int = 100
    ) -> List[Dict[str, Any]]:
        return await self._run("engine.ledger_entries", ledger.list_entries,
                               token_id, limit)

    # ------------------------------------------------------------------
    # admin catalog glue
    # ------------------------------------------------------------------
    async def add_stock(
        self, option_id: str, contents: Sequence[str]
    ) -> List[str]:
        contents = [c for c in (str(x).strip() for x in contents) if c]
        if not contents:
            raise InvalidInput(field="items")
        return await self._run("engine.add_stock", self._add_stock,
                               option_id, contents)

    async def _add_stock(
        self, db: AsyncSession, option_id: str, contents: List[str]
    ) -> List[str]:
        if not await catalog.option_exists(db, option_id):
            raise OptionNotFound()
        return await inventory.add_items(db, option_id, contents)

    async def delete_stock(self, ids: Sequence[str]) -> int:
        return await self._run("engine.delete_stock", inventory.delete_items,
                               list(ids))

    async def set_token_blocked(self, token_id: str, blocked: bool) -> None:
        await self._run("engine.set_token_blocked", self._set_token_blocked,
                        token_id, blocked)

    async def _set_token_blocked(
        self, db: AsyncSession, token_id: str, blocked: bool
    ) -> None:
        if not await ledger.set_blocked(db, token_id, blocked):
            raise TokenNotFound()
