"""
Load a catalog into the shop database.

    DATABASE_URL=sqlite:///./tokenshop.db python seed_catalog.py catalog.json

catalog.json:

    {
      "products": [
        {"id": "netflix", "name": "Netflix", "options": [
          {"id": "nf-1m", "name": "1 month", "price": 2000,
           "delivery_mode": "auto", "purchase_limit": 2,
           "max_quantity_per_order": 5,
           "stock": ["user1:pass1", "user2:pass2"]}
        ]}
      ],
      "coupons": [
        {"code": "SAVE10", "discount_type": "percentage",
         "discount_value": 10, "max_uses": 100}
      ],
      "tokens": [{"token": "demo-token", "balance": 5000}]
    }

Prices and balances are in cents. Existing rows are left alone.
"""
import asyncio
from decimal import Decimal
import json
import os
import sys

from sqlalchemy import select

from tokenshop.helpers import new_id, now_ts
from tokenshop.infra.sql import make_async_engine
from tokenshop.model import coupons, inventory, ledger
from tokenshop.model.orm import (
    Coupon, Product, ProductOption, create_schema,
)


async def seed_products(db, products):
    n_items = 0
    for p in products:
        if await db.get(Product, p["id"]) is None:
            db.add(Product(id=p["id"], name=p["name"],
                           is_active=p.get("is_active", True)))
            await db.flush()
        for o in p.get("options", []):
            if await db.get(ProductOption, o["id"]) is None:
                db.add(ProductOption(
                    id=o["id"],
                    product_id=p["id"],
                    name=o["name"],
                    price=int(o["price"]),
                    delivery_mode=o.get("delivery_mode", "auto"),
                    purchase_limit=o.get("purchase_limit"),
                    max_quantity_per_order=o.get("max_quantity_per_order"),
                    is_active=o.get("is_active", True),
                ))
                await db.flush()
            stock = o.get("stock") or []
            if stock:
                n_items += len(await inventory.add_items(db, o["id"], stock))
    print(f'✅ {len(products)} products, {n_items} stock items')


async def seed_coupons(db, items):
    for c in items:
        code = coupons.normalize_code(c["code"])
        existing = await db.execute(select(Coupon).where(Coupon.code == code))
        if existing.scalar_one_or_none() is not None:
            continue
        db.add(Coupon(
            code=code,
            discount_type=c["discount_type"],
            discount_value=Decimal(str(c["discount_value"])),
            max_uses=c.get("max_uses"),
            used_count=0,
            product_id=c.get("product_id"),
            expires_at=c.get("expires_at"),
            is_active=c.get("is_active", True),
        ))
    print(f'✅ {len(items)} coupons')


async def seed_tokens(db, items):
    for t in items:
        if await ledger.find_token(db, t["token"]) is not None:
            continue
        token = await ledger.create_token(db, t["token"])
        balance = int(t.get("balance", 0))
        if balance:
            await ledger.credit(db, token["id"], balance, ledger.R_RECHARGE,
                                f"seed-{new_id()}")
    print(f'✅ {len(items)} tokens')


async def main(path: str):
    with open(path) as f:
        catalog = json.load(f)

    engine, SessionAsync, _, _ = make_async_engine(os.environ["DATABASE_URL"])
    try:
        async with engine.begin() as conn:
            await create_schema(conn)
        async with SessionAsync() as db:
            async with db.begin():
                await seed_products(db, catalog.get("products", []))
                await seed_coupons(db, catalog.get("coupons", []))
                await seed_tokens(db, catalog.get("tokens", []))
    finally:
        await engine.dispose()
    print(f'✅ seeded at {now_ts():.0f}')


if __name__ == '__main__':
    if len(sys.argv) != 2 or "DATABASE_URL" not in os.environ:
        print(__doc__)
        sys.exit(1)
    asyncio.run(main(sys.argv[1]))
