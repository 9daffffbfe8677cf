"""
PayHero Adapter

M-Pesa STK push through a PayHero aggregator account. PayHero sends the
push, then posts the result to our callback URL with our merchant
reference echoed back as external_reference.

Callback bodies come in two shapes:
- flat: {"status": "SUCCESS", "external_reference", "reference",
  "provider_reference", "checkout_request_id", ...}
- wrapped: {"status": true, "response": {"Status": "Success",
  "ExternalReference", "MpesaReceiptNumber", "CheckoutRequestID",
  "ResultCode", ...}}
"""
import logging
import re
from typing import Any, Dict, Optional

import httpx

from ..config import settings, Settings
from ..exceptions import InvalidPaymentDetailsError, MalformedPayloadError, ProviderCallError
from ..models.payments import ChannelDetails, PaymentInitiation, PaymentOutcome
from .base import ProviderAdapter, pick
from .daraja import format_phone_number

logger = logging.getLogger(__name__)

PAYMENTS_PATH = "/api/v2/payments"
TRANSACTION_STATUS_PATH = "/api/v2/transaction-status"

SUCCESS_STATUSES = {"success", "successful", "completed"}
FAILED_STATUSES = {"failed", "cancelled", "rejected"}


def status_from_text(status: Any, result_code: Any = None) -> str:
    """
    Map a PayHero status string to success/failed/pending.

    A bare ResultCode (0 paid, anything else not) is used only when the
    status string is missing.
    """
    text = str(status).strip().lower() if isinstance(status, str) else ""
    if text in SUCCESS_STATUSES:
        return "success"
    if text in FAILED_STATUSES:
        return "failed"
    if not text and result_code is not None:
        return "success" if str(result_code).strip() == "0" else "failed"
    return "pending"


class PayheroAdapter(ProviderAdapter):
    """STK push via the PayHero v2 API."""

    channel = "payhero"
    payment_method = "mpesa"

    def __init__(
        self,
        callback_path: str = "/webhooks/payhero",
        client: Optional[httpx.AsyncClient] = None,
        config: Settings = settings
    ):
        super().__init__(config.payhero_base_url, client=client, config=config)
        self.callback_path = callback_path

    @property
    def is_configured(self) -> bool:
        c = self.config
        return all([c.payhero_api_username, c.payhero_api_password, c.payhero_channel_id])

    def prepare_contact_details(self, details: ChannelDetails) -> Dict[str, Any]:
        if not details.phone:
            raise InvalidPaymentDetailsError("An M-Pesa phone number is required")

        phone = format_phone_number(details.phone, self.config.phone_country_code)
        if not re.fullmatch(rf"{self.config.phone_country_code}\d{{9}}", phone):
            raise InvalidPaymentDetailsError("Invalid M-Pesa phone number", details={"phone": details.phone})

        name = " ".join(part for part in (details.first_name, details.last_name) if part)
        return {"phone": phone, "customer_name": name or None}

    def _auth(self) -> httpx.BasicAuth:
        return httpx.BasicAuth(self.config.payhero_api_username, self.config.payhero_api_password)

    async def initiate(
        self,
        amount: float,
        reference: str,
        description: str,
        contact_details: Dict[str, Any]
    ) -> PaymentInitiation:
        """
        Ask PayHero to send an STK push.

        Returns:
            PaymentInitiation.push with PayHero's own reference as tracking id
        """
        self.require_configured()
        payload = {
            "amount": int(round(amount)),
            "phone_number": contact_details["phone"],
            "channel_id": int(self.config.payhero_channel_id),
            "provider": "m-pesa",
            "external_reference": reference,
            "callback_url": self.config.callback_url(self.callback_path),
        }
        if contact_details.get("customer_name"):
            payload["customer_name"] = contact_details["customer_name"]

        logger.info(f"Requesting PayHero STK push: reference={reference}, amount={payload['amount']}")
        data = await self._request("POST", PAYMENTS_PATH, json=payload, auth=self._auth())

        tracking_id = data.get("reference") or data.get("CheckoutRequestID")
        if not data.get("success") or not tracking_id:
            message = data.get("error_message") or data.get("message") or "PayHero did not accept the payment"
            logger.warning(f"PayHero push rejected for {reference}: {message}")
            raise ProviderCallError(message, details={"channel": self.channel, "response": data})

        logger.info(f"PayHero push queued: reference={reference}, payhero_reference={tracking_id}")
        return PaymentInitiation.push(
            provider_reference=tracking_id,
            message="Check your phone and enter your M-Pesa PIN to complete payment.",
        )

    async def query_outcome(
        self,
        tracking_id: str,
        merchant_reference: Optional[str] = None
    ) -> PaymentOutcome:
        self.require_configured()
        data = await self._request(
            "GET", TRANSACTION_STATUS_PATH, params={"reference": tracking_id}, auth=self._auth()
        )
        status = status_from_text(data.get("status"))
        receipt = pick(data, "provider_reference", "third_party_reference")
        return PaymentOutcome(
            correlation_key=tracking_id,
            result_status=status,
            provider_transaction_id=(receipt or tracking_id) if status == "success" else None,
            merchant_reference=merchant_reference,
            payment_method=self.payment_method,
            description=data.get("status"),
        )

    def parse_callback(self, payload: Dict[str, Any]) -> PaymentOutcome:
        """
        Normalize either callback shape. The tracking id is PayHero's
        reference when present; external_reference is our merchant
        reference and is always the fallback key.
        """
        body = payload.get("response") if isinstance(payload.get("response"), dict) else payload

        merchant_reference = pick(body, "external_reference", "ExternalReference", "externalReference")
        tracking_id = pick(body, "reference", "Reference")
        if not merchant_reference and not tracking_id:
            raise MalformedPayloadError(
                "PayHero callback without external_reference", details={"payload": payload}
            )

        status = status_from_text(
            pick(body, "status", "Status"),
            pick(body, "ResultCode", "result_code"),
        )
        receipt = pick(
            body, "provider_reference", "MpesaReceiptNumber", "checkout_request_id", "CheckoutRequestID"
        )
        amount = pick(body, "amount", "Amount")
        phone = pick(body, "phone_number", "Phone")

        return PaymentOutcome(
            correlation_key=str(tracking_id or merchant_reference),
            result_status=status,
            provider_transaction_id=str(receipt) if status == "success" and receipt else None,
            raw_amount=float(amount) if amount is not None else None,
            merchant_reference=merchant_reference,
            payment_method=self.payment_method,
            phone=str(phone) if phone is not None else None,
            description=pick(body, "result_description", "ResultDesc"),
        )

    def acknowledgement(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {"success": True, "message": "Callback processed"}
