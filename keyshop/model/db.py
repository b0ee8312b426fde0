from sqlalchemy.orm import declarative_base
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Float,
    Boolean,
    Numeric,
    Index,
)


Base = declarative_base()

PAYMENT_PRODUCT_ID = "payment_link"
PAYMENT_PRODUCT_NAME = "Payment"

# order statuses
PENDING = "pending"
PAID = "paid"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REFUNDED = "refunded"


# ----------------------------
# ORM models
# ----------------------------
class Product(Base):
    __tablename__ = "products"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    # max units per buyer over paid/delivered orders; NULL or 0 = no limit
    purchase_limit = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=True)


class Card(Base):
    __tablename__ = "cards"
    id = Column(Integer, primary_key=True, autoincrement=True)
    product_id = Column(String, nullable=False, index=True)
    card_key = Column(Text, nullable=False)
    is_used = Column(Boolean, nullable=False, default=False)
    reserved_order_id = Column(String, nullable=True)
    reserved_at = Column(Float, nullable=True)
    used_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("cards_product_free_idx", "product_id", "is_used"),
        Index("cards_reserved_order_idx", "reserved_order_id"),
    )


class Order(Base):
    __tablename__ = "orders"
    order_id = Column(String, primary_key=True)
    product_id = Column(String, nullable=False)
    product_name = Column(String, nullable=False)
    amount = Column(Numeric(10, 2), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    email = Column(String, nullable=True)
    user_id = Column(String, nullable=True)
    username = Column(String, nullable=True)
    # only set on payment-link orders
    payee = Column(String, nullable=True)

    # pending | paid | delivered | cancelled | refunded
    status = Column(String, nullable=False, default=PENDING)
    points_used = Column(Integer, nullable=False, default=0)
    current_payment_id = Column(String, nullable=True)
    trade_no = Column(String, nullable=True)
    # newline-joined card keys
    card_key = Column(Text, nullable=True)

    created_at = Column(Float, nullable=False)
    paid_at = Column(Float, nullable=True)
    delivered_at = Column(Float, nullable=True)

    __table_args__ = (
        Index("orders_status_created_idx", "status", "created_at"),
        Index("orders_current_payment_idx", "current_payment_id"),
    )

    @property
    def is_payment_order(self) -> bool:
        return is_payment_order(self.product_id)


class User(Base):
    __tablename__ = "login_users"
    user_id = Column(String, primary_key=True)
    username = Column(String, nullable=True)
    points = Column(Integer, nullable=False, default=0)
    is_blocked = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=True)


class RefundRequest(Base):
    __tablename__ = "refund_requests"
    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=True)
    username = Column(String, nullable=True)
    reason = Column(Text, nullable=True)
    # pending | approved | rejected | processed
    status = Column(String, nullable=False, default="pending")
    admin_username = Column(String, nullable=True)
    admin_note = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    processed_at = Column(Float, nullable=True)


class MaintenanceRun(Base):
    __tablename__ = "maintenance_runs"
    name = Column(String, primary_key=True)
    last_run_at = Column(Float, nullable=False)


def is_payment_order(product_id) -> bool:
    return product_id == PAYMENT_PRODUCT_ID
