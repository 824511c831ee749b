from __future__ import annotations
import logging
import os
import sys
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Form, Request
from fastapi.responses import ORJSONResponse, RedirectResponse
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .errors import InvalidInput, ShopError, Unauthorized
from .fulfillment import FulfillmentEngine, PlaceOrderRequest
from .helpers import clean_str, ct_equal, to_iso
from .infra import timings
from .infra.sql import make_async_engine
from .model.orm import create_schema

logger = logging.getLogger(__name__)

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./tokenshop.db")
    sys.exit(1)

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")

engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)
shop = FulfillmentEngine(SessionAsync, gated)

app = FastAPI(
    title="TokenShop",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


@app.exception_handler(ShopError)
async def _shop_error(request: Request, exc: ShopError):
    if exc.status_code >= 500:
        logger.error("%s %s -> %s", request.method, request.url.path,
                     exc.code)
    return ORJSONResponse(exc.to_dict(), status_code=exc.status_code)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    print('\n' * 3)
    print('=' * 50)
    print('TokenShop is starting up...')
    print(f'   - Database: {engine.dialect.name}')
    print(f'   - Store timeout: {shop.timeout:.1f}s')
    print('=' * 50)
    print('\n' * 3)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise Unauthorized()


def _str(payload: dict, key: str, required: bool = True) -> Optional[str]:
    value = payload.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidInput(field=key)
    value = clean_str(value)
    if required and value is None:
        raise InvalidInput(field=key)
    return value


def _int(payload: dict, key: str, default: Optional[int] = None):
    value = payload.get(key, default)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInput(field=key)
    return value


def _with_iso(order: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(order)
    for k in ("created_at", "updated_at", "delivered_at"):
        out[k] = to_iso(out.get(k))
    return out


# ----------------------------
# Customer API
# ----------------------------
@app.post("/api/orders")
async def place_order(payload: dict):
    req = PlaceOrderRequest(
        token_value=_str(payload, "token"),
        product_id=_str(payload, "product_id"),
        option_id=_str(payload, "option_id"),
        # shape and bounds are checked against the option by the engine
        quantity=payload.get("quantity"),
        email=_str(payload, "email", required=False),
        password=_str(payload, "password", required=False),
        verification_link=_str(payload, "verification_link", required=False),
        text_input=_str(payload, "text_input", required=False),
        coupon_code=_str(payload, "coupon_code", required=False),
        device_fingerprint=_str(payload, "device_fingerprint",
                                required=False),
    )
    result = await shop.place_order(req)
    return {"success": True, **result}


@app.post("/api/orders/{order_id}/cancel")
async def cancel_order(order_id: str, payload: dict):
    token = await shop.lookup_token(_str(payload, "token"))
    result = await shop.cancel_order(order_id, token["id"])
    return {"success": True, **result}


@app.post("/api/orders/status")
async def order_status(payload: dict):
    order = await shop.order_status(_str(payload, "token"),
                                    _str(payload, "order_id"))
    return {"success": True, "order": _with_iso(order)}


@app.post("/api/tokens/lookup")
async def token_lookup(payload: dict):
    data = await shop.token_data(_str(payload, "token"))
    data["orders"] = [_with_iso(o) for o in data["orders"]]
    return {"success": True, **data}


@app.post("/api/recharges")
async def submit_recharge(payload: dict, request: Request):
    token_id = None
    new_token = _str(payload, "new_token", required=False)
    if new_token is None:
        token_id = (await shop.lookup_token(_str(payload, "token")))["id"]
    result = await shop.submit_recharge(
        amount=_int(payload, "amount"),
        token_id=token_id,
        new_token=new_token,
        payment_method=_str(payload, "payment_method", required=False),
        proof_image_url=_str(payload, "proof_image_url", required=False),
        sender_reference=_str(payload, "sender_reference", required=False),
        user_ip=request.client.host if request.client else None,
    )
    return {"success": True, **result}


@app.post("/api/refunds")
async def submit_refund(payload: dict):
    result = await shop.submit_refund(
        _str(payload, "token"),
        _str(payload, "order_number"),
        _str(payload, "reason", required=False) or "",
    )
    return {"success": True, **result}


@app.post("/api/refunds/status")
async def refund_status(payload: dict):
    result = await shop.refund_status(_str(payload, "token"),
                                      _str(payload, "order_number"))
    result["processed_at"] = to_iso(result["processed_at"])
    return {"success": True, **result}


@app.get("/api/inventory")
async def get_inventory():
    return await shop.inventory()


# ----------------------------
# Admin session
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: Optional[str] = Form(None),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        if next:
            return RedirectResponse(url=next, status_code=HTTP_303_SEE_OTHER)
        return {"success": True}
    # auth failed
    return ORJSONResponse(
        {"success": False, "error": "INVALID_CREDENTIALS"}, status_code=401
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


# ----------------------------
# Admin API
# ----------------------------
@app.post("/api/admin/recharges/{request_id}",
          dependencies=[Depends(require_admin)])
async def process_recharge(request_id: str, payload: dict):
    result = await shop.process_recharge(
        request_id, _str(payload, "action"),
        _str(payload, "note", required=False),
    )
    return {"success": True, **result}


@app.post("/api/admin/refunds/{request_id}",
          dependencies=[Depends(require_admin)])
async def process_refund(request_id: str, payload: dict):
    result = await shop.process_refund(
        _str(payload, "action"),
        request_id=request_id,
        note=_str(payload, "note", required=False),
        amount=_int(payload, "amount"),
    )
    return {"success": True, **result}


@app.post("/api/admin/refunds/by-number/{order_number}",
          dependencies=[Depends(require_admin)])
async def process_refund_by_number(order_number: str, payload: dict):
    result = await shop.process_refund(
        _str(payload, "action"),
        order_number=order_number,
        note=_str(payload, "note", required=False),
        amount=_int(payload, "amount"),
    )
    return {"success": True, **result}


@app.post("/api/admin/orders/{order_id}/transition",
          dependencies=[Depends(require_admin)])
async def transition_order(order_id: str, payload: dict):
    result = await shop.transition_order(
        order_id, _str(payload, "status"),
        _str(payload, "response_message", required=False),
    )
    return {"success": True, **result}


@app.post("/api/admin/stock", dependencies=[Depends(require_admin)])
async def add_stock(payload: dict):
    items = payload.get("items")
    if not isinstance(items, list):
        raise InvalidInput(field="items")
    ids = await shop.add_stock(_str(payload, "option_id"), items)
    return {"success": True, "ids": ids}


@app.post("/api/admin/stock/delete", dependencies=[Depends(require_admin)])
async def delete_stock(payload: dict):
    ids = payload.get("ids")
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        raise InvalidInput(field="ids")
    deleted = await shop.delete_stock(ids) if ids else 0
    return {"success": True, "deleted": deleted}


@app.post("/api/admin/tokens/{token_id}/block",
          dependencies=[Depends(require_admin)])
async def block_token(token_id: str, payload: dict):
    blocked = payload.get("blocked", True)
    if not isinstance(blocked, bool):
        raise InvalidInput(field="blocked")
    await shop.set_token_blocked(token_id, blocked)
    return {"success": True, "token_id": token_id, "is_blocked": blocked}


@app.get("/api/admin/tokens/{token_id}/ledger",
         dependencies=[Depends(require_admin)])
async def token_ledger(token_id: str, limit: int = 100):
    entries = await shop.ledger_entries(token_id, max(1, min(limit, 500)))
    for e in entries:
        e["created_at"] = to_iso(e["created_at"])
    return {"items": entries, "limit": limit}


@app.get("/api/admin/timings", dependencies=[Depends(require_admin)])
async def api_admin_timings():
    return {"items": timings.aggregates()}
