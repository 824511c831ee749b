"""
Shared fixtures: a fresh SQLite file database per test, the engine on top of
it, and a small seeding helper for catalog rows and funded tokens.
"""
import logging
import os

import pytest
import pytest_asyncio
from sqlalchemy import Numeric, bindparam, text

# the server module refuses to import without a database url; tests swap the
# engine it uses for one on the per-test database
os.environ.setdefault("DATABASE_URL", "sqlite:///./tokenshop-test.db")

from tokenshop.fulfillment import FulfillmentEngine, PlaceOrderRequest  # noqa: E402
from tokenshop.infra import timings  # noqa: E402
from tokenshop.infra.sql import make_async_engine  # noqa: E402
from tokenshop.model import inventory, ledger, orders  # noqa: E402
from tokenshop.model.orm import create_schema  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)


class Seeder:
    """Writes fixture rows directly, outside the engine under test."""

    def __init__(self, SessionAsync):
        self.SessionAsync = SessionAsync

    async def _tx(self, fn, *args):
        async with self.SessionAsync() as db:
            async with db.begin():
                return await fn(db, *args)

    async def token(self, value="tok-alice", balance=0, blocked=False):
        async def _create(db):
            token = await ledger.create_token(db, value)
            if balance:
                await ledger.credit(db, token["id"], balance,
                                    ledger.R_RECHARGE, "seed")
            if blocked:
                await ledger.set_blocked(db, token["id"], True)
            return token["id"]
        return await self._tx(_create)

    async def option(self, product_id="prod-1", option_id="opt-1",
                     price=2000, mode="auto", purchase_limit=None,
                     max_qty=None, stock=0, active=True):
        async def _create(db):
            await db.execute(text("""
                INSERT INTO products(id, name, is_active)
                VALUES(:p, :p, true)
                ON CONFLICT (id) DO NOTHING
            """), {"p": product_id})
            await db.execute(text("""
                INSERT INTO product_options(id, product_id, name, price,
                    delivery_mode, purchase_limit, max_quantity_per_order,
                    is_active)
                VALUES(:o, :p, :o, :price, :m, :lim, :mq, :a)
            """), {"o": option_id, "p": product_id, "price": price,
                   "m": mode, "lim": purchase_limit, "mq": max_qty,
                   "a": active})
            if stock:
                await inventory.add_items(
                    db, option_id, [f"{option_id}-item-{i}"
                                    for i in range(stock)]
                )
        await self._tx(_create)
        return product_id, option_id

    async def coupon(self, code, discount_type="percentage",
                     discount_value=10, max_uses=None, product_id=None,
                     expires_at=None, active=True):
        async def _create(db):
            await db.execute(text("""
                INSERT INTO coupons(code, discount_type, discount_value,
                    max_uses, used_count, product_id, expires_at, is_active)
                VALUES(:c, :t, :v, :m, 0, :p, :e, :a)
            """).bindparams(bindparam("v", type_=Numeric(10, 2))),
                {"c": code.upper(), "t": discount_type, "v": discount_value,
                 "m": max_uses, "p": product_id, "e": expires_at,
                 "a": active})
        await self._tx(_create)

    async def balance(self, token_id):
        async def _read(db):
            return (await ledger.get_token(db, token_id))["balance"]
        return await self._tx(_read)

    async def ledger_sum(self, token_id):
        async def _read(db):
            n = (await db.execute(text("""
                SELECT COALESCE(SUM(delta), 0) FROM ledger_entries
                WHERE token_id = :t
            """), {"t": token_id})).scalar_one()
            return int(n)
        return await self._tx(_read)

    async def order(self, order_id):
        return await self._tx(orders.get_order, order_id)

    async def coupon_uses(self, code):
        async def _read(db):
            return (await db.execute(text(
                "SELECT used_count FROM coupons WHERE code = :c"
            ), {"c": code.upper()})).scalar_one()
        return await self._tx(_read)

    async def inventory(self):
        return await self._tx(inventory.compute_inventory)

    async def sold_ids(self, order_id):
        return await self._tx(inventory.sold_item_ids, order_id)

    async def active_count(self, token_id):
        async def _read(db):
            return (await db.execute(text("""
                SELECT COUNT(*) FROM orders
                WHERE token_id = :t AND status IN ('pending', 'in_progress')
            """), {"t": token_id})).scalar_one()
        return await self._tx(_read)

    async def set_status(self, order_id, status):
        async def _write(db):
            await db.execute(text(
                "UPDATE orders SET status = :s WHERE id = :id"
            ), {"s": status, "id": order_id})
        await self._tx(_write)


@pytest_asyncio.fixture
async def database(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/shop.db"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    timings.reset()
    yield engine, SessionAsync, gated
    await engine.dispose()


@pytest_asyncio.fixture
async def shop(database):
    _, SessionAsync, gated = database
    return FulfillmentEngine(SessionAsync, gated, timeout_seconds=10)


@pytest_asyncio.fixture
async def seed(database):
    _, SessionAsync, _ = database
    return Seeder(SessionAsync)


def order_request(token="tok-alice", product_id="prod-1", option_id="opt-1",
                  **kw):
    return PlaceOrderRequest(token_value=token, product_id=product_id,
                             option_id=option_id, **kw)


@pytest.fixture
def make_request():
    return order_request
