"""
Pydantic Order Ledger Models

PendingOrder tracks one checkout attempt through pending -> completed|failed.
Purchase is the permanent entitlement created when a payment is confirmed.
"""
from datetime import datetime
from typing import Optional, Literal, List
from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "completed", "failed"]
Channel = Literal["mpesa", "pesapal", "telegram"]

TERMINAL_STATUSES = ("completed", "failed")


class LineItem(BaseModel):
    """One product in an order with the amount charged for it."""
    product_id: str = Field(min_length=1)
    amount: float = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class PendingOrder(BaseModel):
    """
    Checkout attempt awaiting confirmation from a payment provider.

    Invariants:
    - merchant_reference is unique and immutable
    - provider_tracking_id is immutable once set
    - status only moves pending -> completed or pending -> failed
    """
    id: str = Field(pattern="^ord_")
    merchant_reference: str
    provider_tracking_id: Optional[str] = None
    user_id: str
    channel: Channel
    items: List[LineItem]
    total_amount: float
    status: OrderStatus = "pending"
    delivery_chat_id: Optional[str] = None
    contact_phone: Optional[str] = None
    transaction_id: Optional[str] = None
    status_checks: int = 0
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def product_ids(self) -> List[str]:
        return [item.product_id for item in self.items]

    model_config = {
        "json_schema_extra": {
            "example": {
                "id": "ord_3f2a9c1b7d4e5f60",
                "merchant_reference": "ORD-18c2f1a9b3e7d2c41",
                "provider_tracking_id": "ws_CO_17102026143501234567",
                "user_id": "8d1c5a1e-6f0b-4b8e-9a57-3f7f0c2d9e11",
                "channel": "mpesa",
                "items": [{"product_id": "A", "amount": 500, "quantity": 1}],
                "total_amount": 500,
                "status": "pending",
                "created_at": "2026-10-17T14:35:00Z",
                "updated_at": "2026-10-17T14:35:00Z"
            }
        }
    }


class Purchase(BaseModel):
    """Entitlement record. Immutable, no expiry."""
    id: str = Field(pattern="^pur_")
    user_id: str
    product_id: str
    amount: float
    payment_method: str
    transaction_id: str
    order_id: Optional[str] = None
    created_at: datetime
