"""
SQLAlchemy ORM Models for the Storefront

Defines database models matching the schema in init_db.py.
The order ledger (pending_orders, order_items, purchases) enforces its
idempotency guarantees with unique indexes, not application checks alone.
"""
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, ForeignKey, Text,
    CheckConstraint, UniqueConstraint, Index, text
)
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()

# Owner of chat-originated orders. Chat users are not authenticated identities.
ANONYMOUS_USER_ID = "00000000-0000-0000-0000-000000000000"


class ProductModel(Base):
    """
    ORM model for products table.

    pdf_url is the artifact's storage path; it never leaves the server.
    """
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    title = Column(String, nullable=False)
    description = Column(Text)
    category = Column(String)
    price = Column(Float, nullable=False)
    price_usd = Column(Float)
    pdf_url = Column(String)
    cover_url = Column(String)
    downloads = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class UserRoleModel(Base):
    """ORM model for user_roles table (admin capability)."""
    __tablename__ = "user_roles"

    user_id = Column(String, primary_key=True)
    role = Column(String, primary_key=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("role IN ('admin', 'user')", name="role_check"),
    )


class PendingOrderModel(Base):
    """
    ORM model for pending_orders table.

    merchant_reference is ours, provider_tracking_id is the provider's;
    both are unique and neither changes once set.
    """
    __tablename__ = "pending_orders"

    id = Column(String, primary_key=True)
    merchant_reference = Column(String, nullable=False, unique=True)
    provider_tracking_id = Column(String, unique=True)
    user_id = Column(String, nullable=False, index=True)
    channel = Column(String, nullable=False)
    total_amount = Column(Float, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    delivery_chat_id = Column(String)  # Chat to push fulfillment into
    contact_phone = Column(String)
    transaction_id = Column(String)  # Provider receipt recorded on completion
    status_checks = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'completed', 'failed')", name="order_status_check"),
        CheckConstraint("channel IN ('mpesa', 'pesapal', 'payhero', 'telegram')", name="order_channel_check"),
    )


class OrderItemModel(Base):
    """ORM model for order_items table (ordered line items of a pending order)."""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("pending_orders.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    product_id = Column(String, nullable=False)
    amount = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("order_id", "position", name="uq_order_items_position"),
    )


class PurchaseModel(Base):
    """
    ORM model for purchases table.

    One row per (transaction, product): a retransmitted webhook cannot insert
    a second grant. Authenticated identities also hold at most one row per
    product; the anonymous chat identity is exempt because many chat buyers
    share it.
    """
    __tablename__ = "purchases"

    id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=False, index=True)
    amount = Column(Float, nullable=False)
    payment_method = Column(String, nullable=False)
    transaction_id = Column(String, nullable=False, index=True)
    order_id = Column(String, ForeignKey("pending_orders.id"))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("transaction_id", "product_id", name="uq_purchases_transaction_product"),
        Index(
            "uq_purchases_user_product",
            "user_id",
            "product_id",
            unique=True,
            sqlite_where=text(f"user_id != '{ANONYMOUS_USER_ID}'"),
            postgresql_where=text(f"user_id != '{ANONYMOUS_USER_ID}'"),
        ),
    )


class ChatSessionModel(Base):
    """
    ORM model for chat_sessions table.

    Conversation state for the chat bot, keyed by chat id. A cache for UI
    context only; entitlement is always decided by the ledger.
    """
    __tablename__ = "chat_sessions"

    chat_id = Column(String, primary_key=True)
    state = Column(String, nullable=False, default="idle")
    context_data = Column(Text)  # JSON blob
    awaiting_phone = Column(Boolean, nullable=False, default=False)
    last_activity_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("state IN ('idle', 'awaiting_phone', 'awaiting_payment')",
                        name="chat_state_check"),
    )
