"""
Database package for the storefront.

Exports database initialization, models, and session management.
"""
from .init_db import initialize_database, get_db, get_async_session, AsyncSessionLocal
from .models import (
    Base,
    ANONYMOUS_USER_ID,
    ProductModel,
    UserRoleModel,
    PendingOrderModel,
    OrderItemModel,
    PurchaseModel,
    ChatSessionModel,
)

__all__ = [
    "initialize_database",
    "get_db",
    "get_async_session",
    "AsyncSessionLocal",
    "Base",
    "ANONYMOUS_USER_ID",
    "ProductModel",
    "UserRoleModel",
    "PendingOrderModel",
    "OrderItemModel",
    "PurchaseModel",
    "ChatSessionModel",
]
