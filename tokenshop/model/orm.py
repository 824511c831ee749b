from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

ORDER_COUNTER = "orders"


# ----------------------------
# ORM models
# ----------------------------
class Token(Base):
    __tablename__ = "tokens"
    id = Column(String, primary_key=True)
    token = Column(String, nullable=False)
    balance = Column(BigInteger, nullable=False, default=0)  # cents
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_ip = Column(String, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=True)

    __table_args__ = (
        # tokens are matched case-insensitively, so they must be unique that
        # way too
        Index("uq_tokens_token_lower", func.lower(token), unique=True),
    )


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"
    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(String, ForeignKey("tokens.id"), nullable=False,
                      index=True)
    delta = Column(BigInteger, nullable=False)  # signed cents
    # order | cancel | reject | recharge | refund
    reason = Column(String, nullable=False)
    ref_id = Column(String, nullable=True)
    balance_after = Column(BigInteger, nullable=False)
    created_at = Column(Float, nullable=False)


class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)


class ProductOption(Base):
    __tablename__ = "product_options"
    id = Column(String, primary_key=True)
    product_id = Column(String, ForeignKey("products.id"), nullable=False,
                        index=True)
    name = Column(String, nullable=False, default="")
    price = Column(BigInteger, nullable=False)  # cents
    # auto | manual_link | manual_email_password | manual_text | chat
    delivery_mode = Column(String, nullable=False, default="auto")
    purchase_limit = Column(Integer, nullable=True)
    max_quantity_per_order = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class StockItem(Base):
    __tablename__ = "stock_items"
    id = Column(String, primary_key=True)
    product_option_id = Column(String, ForeignKey("product_options.id"),
                               nullable=False)
    content = Column(Text, nullable=False)
    is_sold = Column(Boolean, nullable=False, default=False)
    # order id that reserved the row; set before the order row exists
    claimed_by = Column(String, nullable=True)
    sold_to_order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    sold_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_stock_items_option_available",
              "product_option_id", "is_sold", "claimed_by"),
    )


class Order(Base):
    __tablename__ = "orders"
    id = Column(String, primary_key=True)
    order_number = Column(String, nullable=False, unique=True)
    token_id = Column(String, ForeignKey("tokens.id"), nullable=False,
                      index=True)
    product_id = Column(String, nullable=False)
    product_option_id = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(BigInteger, nullable=False)  # cents
    base_price = Column(BigInteger, nullable=False)  # cents
    discount_amount = Column(BigInteger, nullable=False, default=0)  # cents
    total_price = Column(BigInteger, nullable=False)  # cents
    coupon_code = Column(String, nullable=True)

    # pending | in_progress | completed | rejected | cancelled
    status = Column(String, nullable=False)
    device_fingerprint = Column(String, nullable=True)

    # delivery payload
    stock_content = Column(Text, nullable=True)
    response_message = Column(Text, nullable=True)
    delivered_email = Column(String, nullable=True)
    delivered_password = Column(String, nullable=True)
    verification_link = Column(String, nullable=True)
    text_input = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    delivered_at = Column(Float, nullable=True)

    __table_args__ = (
        # at most one non-terminal order per token, enforced by the store
        Index(
            "uq_orders_one_active_per_token", "token_id", unique=True,
            postgresql_where=text("status IN ('pending', 'in_progress')"),
            sqlite_where=text("status IN ('pending', 'in_progress')"),
        ),
    )


class OrderCounter(Base):
    __tablename__ = "order_counters"
    name = Column(String, primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)


class Coupon(Base):
    __tablename__ = "coupons"
    code = Column(String, primary_key=True)  # stored upper-case
    # percentage | fixed
    discount_type = Column(String, nullable=False)
    # percent for percentage (fractions allowed), cents for fixed
    discount_value = Column(Numeric(10, 2), nullable=False)
    max_uses = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0)
    product_id = Column(String, nullable=True)
    expires_at = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class DevicePurchase(Base):
    __tablename__ = "device_purchases"
    id = Column(Integer, primary_key=True, autoincrement=True)
    device_fingerprint = Column(String, nullable=False)
    product_option_id = Column(String, nullable=False)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    quantity = Column(Integer, nullable=False)
    created_at = Column(Float, nullable=False)

    __table_args__ = (
        Index("ix_device_purchases_fp_option",
              "device_fingerprint", "product_option_id"),
    )


class RechargeRequest(Base):
    __tablename__ = "recharge_requests"
    id = Column(String, primary_key=True)
    token_id = Column(String, ForeignKey("tokens.id"), nullable=False,
                      index=True)
    amount = Column(BigInteger, nullable=False)  # cents
    payment_method = Column(String, nullable=True)
    proof_image_url = Column(String, nullable=True)
    sender_reference = Column(String, nullable=True)
    # pending | approved | rejected
    status = Column(String, nullable=False, default="pending")
    admin_note = Column(Text, nullable=True)
    processed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    id = Column(String, primary_key=True)
    token_id = Column(String, ForeignKey("tokens.id"), nullable=False,
                      index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True)
    # one request per order, whatever its status
    order_number = Column(String, nullable=False, unique=True)
    reason = Column(Text, nullable=False, default="")
    # pending | approved | rejected
    status = Column(String, nullable=False, default="pending")
    refund_amount = Column(BigInteger, nullable=True)  # cents
    admin_notes = Column(Text, nullable=True)
    processed_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)


async def create_schema(conn: AsyncConnection) -> None:
    """
    Create tables if missing and seed the order-number counter.
    """
    await conn.run_sync(Base.metadata.create_all)
    await conn.execute(text("""
        INSERT INTO order_counters (name, value) VALUES (:n, 0)
        ON CONFLICT (name) DO NOTHING
    """), {"n": ORDER_COUNTER})
