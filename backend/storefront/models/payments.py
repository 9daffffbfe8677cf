"""
Pydantic Payment Models

Request/response shapes for checkout plus the two normalized, in-process
shapes every provider adapter produces:
- PaymentInitiation: what happened when a payment was started
- PaymentOutcome: what a provider callback says about a payment
"""
from typing import Optional, Literal, List, Dict, Any
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel

ResultStatus = Literal["success", "failed", "pending"]


class CheckoutItem(BaseModel):
    """Cart line as submitted by the client."""
    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    amount: float
    quantity: int = Field(default=1, ge=1)


class ChannelDetails(BaseModel):
    """Payer contact details; which fields matter depends on the channel."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    phone: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = Field(default=None, alias="firstName")
    last_name: Optional[str] = Field(default=None, alias="lastName")
    account_name: Optional[str] = Field(default=None, alias="accountName")
    reference_number: Optional[str] = Field(default=None, alias="referenceNumber")


class InitiatePaymentRequest(BaseModel):
    """Body of POST /payments/initiate."""
    model_config = ConfigDict(populate_by_name=True)

    channel: Literal["mpesa", "pesapal", "payhero", "bank"]
    items: List[CheckoutItem]
    channel_details: ChannelDetails = Field(default_factory=ChannelDetails, alias="channelDetails")


class PaymentInitiation(BaseModel):
    """
    Normalized result of starting a payment with a provider.

    Exactly one of three shapes:
    - hosted flow: redirect_url (+ provider_reference = tracking id)
    - STK flow: push_sent=True + provider_reference
    - unconfigured adapter: needs_manual_setup=True
    """
    redirect_url: Optional[str] = None
    push_sent: bool = False
    provider_reference: Optional[str] = None
    needs_manual_setup: bool = False
    message: Optional[str] = None

    @classmethod
    def redirect(cls, redirect_url: str, provider_reference: str) -> "PaymentInitiation":
        return cls(redirect_url=redirect_url, provider_reference=provider_reference)

    @classmethod
    def push(cls, provider_reference: str, message: Optional[str] = None) -> "PaymentInitiation":
        return cls(push_sent=True, provider_reference=provider_reference, message=message)

    @classmethod
    def manual_setup(cls, message: Optional[str] = None) -> "PaymentInitiation":
        return cls(needs_manual_setup=True, message=message)


class PaymentOutcome(BaseModel):
    """
    Normalized provider callback.

    correlation_key is matched against provider_tracking_id first;
    merchant_reference (when the provider echoes it) is the fallback key.
    """
    correlation_key: str
    result_status: ResultStatus
    provider_transaction_id: Optional[str] = None
    raw_amount: Optional[float] = None
    merchant_reference: Optional[str] = None
    payment_method: Optional[str] = None
    phone: Optional[str] = None
    description: Optional[str] = None


class InitiationResult(BaseModel):
    """Response of POST /payments/initiate; serialized with camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool
    merchant_reference: Optional[str] = None
    redirect_url: Optional[str] = None
    order_tracking_id: Optional[str] = None
    push_sent: Optional[bool] = None
    needs_manual_setup: Optional[bool] = None
    status: Optional[str] = None
    message: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class OrderStatusView(BaseModel):
    """Response of GET /payments/status/{merchant_reference}."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    merchant_reference: str
    status: str
    attempts_remaining: int
    message: str
