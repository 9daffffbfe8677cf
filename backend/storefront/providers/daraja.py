"""
Direct-STK Adapter (Safaricom Daraja)

Sends an M-Pesa STK push to the payer's handset and parses the
asynchronous stkCallback that Daraja posts back.

Flow:
1. Client-credentials exchange for a bearer token (fresh per call)
2. POST /mpesa/stkpush/v1/processrequest, ResponseCode "0" means the
   prompt was delivered
3. Daraja later posts Body.stkCallback with ResultCode 0 (paid) or
   nonzero (cancelled, timed out, insufficient funds, ...)
"""
import base64
import logging
import math
import re
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from ..config import settings, Settings
from ..exceptions import InvalidPaymentDetailsError, MalformedPayloadError, ProviderCallError
from ..models.payments import ChannelDetails, PaymentInitiation, PaymentOutcome
from .base import ProviderAdapter, metadata_lookup, pick

logger = logging.getLogger(__name__)

TOKEN_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 100


def format_phone_number(phone: str, country_code: Optional[str] = None) -> str:
    """
    Normalize a local phone number to international digits-only form.

    Examples (country code 254):
        0712345678     -> 254712345678
        +254712345678  -> 254712345678
        712345678      -> 254712345678
        254712345678   -> 254712345678
    """
    country_code = country_code or settings.phone_country_code
    cleaned = re.sub(r"\D", "", phone or "")

    if cleaned.startswith("0"):
        cleaned = country_code + cleaned[1:]
    elif not cleaned.startswith(country_code):
        cleaned = country_code + cleaned

    return cleaned


def stk_timestamp(tz_name: Optional[str] = None) -> str:
    """Daraja timestamp, YYYYMMDDHHMMSS in the merchant's local time."""
    now = datetime.now(ZoneInfo(tz_name or settings.mpesa_timezone))
    return now.strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def _result_status(result_code: Any) -> str:
    if result_code is None:
        return "pending"
    return "success" if str(result_code).strip() == "0" else "failed"


class DarajaAdapter(ProviderAdapter):
    """Direct STK push over the Daraja API."""

    channel = "mpesa"
    payment_method = "mpesa"

    def __init__(
        self,
        callback_path: str = "/webhooks/mpesa",
        client: Optional[httpx.AsyncClient] = None,
        config: Settings = settings
    ):
        super().__init__(config.mpesa_base_url, client=client, config=config)
        self.callback_path = callback_path

    @property
    def is_configured(self) -> bool:
        c = self.config
        return all([c.mpesa_consumer_key, c.mpesa_consumer_secret, c.mpesa_shortcode, c.mpesa_passkey])

    @property
    def callback_url(self) -> str:
        return self.config.callback_url(self.callback_path)

    def prepare_contact_details(self, details: ChannelDetails) -> Dict[str, Any]:
        if not details.phone:
            raise InvalidPaymentDetailsError("An M-Pesa phone number is required")

        phone = format_phone_number(details.phone, self.config.phone_country_code)
        if not re.fullmatch(rf"{self.config.phone_country_code}\d{{9}}", phone):
            raise InvalidPaymentDetailsError(
                "Invalid M-Pesa phone number",
                details={"phone": details.phone}
            )
        return {"phone": phone}

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        data = await self._request(
            "GET",
            TOKEN_PATH,
            params={"grant_type": "client_credentials"},
            auth=httpx.BasicAuth(self.config.mpesa_consumer_key, self.config.mpesa_consumer_secret),
        )
        token = data.get("access_token")
        if not token:
            raise ProviderCallError("M-Pesa did not issue an access token", details={"channel": self.channel})
        logger.debug("Daraja access token received")
        return token

    def _signed_request_fields(self) -> Dict[str, str]:
        shortcode = self.config.mpesa_shortcode
        timestamp = stk_timestamp(self.config.mpesa_timezone)
        return {
            "BusinessShortCode": shortcode,
            "Password": stk_password(shortcode, self.config.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
        }

    async def initiate(
        self,
        amount: float,
        reference: str,
        description: str,
        contact_details: Dict[str, Any]
    ) -> PaymentInitiation:
        """
        Send an STK push.

        Returns:
            PaymentInitiation.push with CheckoutRequestID as provider reference
        """
        self.require_configured()
        phone = contact_details["phone"]
        token = await self.get_access_token()

        payload = {
            **self._signed_request_fields(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": math.ceil(amount),
            "PartyA": phone,
            "PartyB": self.config.mpesa_shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": (self.config.mpesa_account_reference or reference)[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": description[:TRANSACTION_DESC_MAX_LENGTH],
        }

        logger.info(f"Sending STK push: reference={reference}, amount={payload['Amount']}")
        result = await self._request(
            "POST",
            STK_PUSH_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

        if str(result.get("ResponseCode")) != "0" or not result.get("CheckoutRequestID"):
            message = result.get("errorMessage") or result.get("CustomerMessage") or "Unknown error"
            logger.warning(f"STK push rejected for {reference}: {message}")
            raise ProviderCallError(message, details={"channel": self.channel, "response": result})

        checkout_id = result["CheckoutRequestID"]
        logger.info(f"STK push accepted: reference={reference}, checkout_request_id={checkout_id}")
        return PaymentInitiation.push(
            provider_reference=checkout_id,
            message=result.get("CustomerMessage") or "Check your phone and enter your M-Pesa PIN to complete payment.",
        )

    async def query_outcome(
        self,
        checkout_request_id: str,
        merchant_reference: Optional[str] = None
    ) -> PaymentOutcome:
        """
        Ask Daraja for the state of an STK push.

        A push the payer has not answered yet is reported by Daraja as an
        error; that surfaces here as a pending outcome.
        """
        self.require_configured()
        token = await self.get_access_token()
        try:
            result = await self._request(
                "POST",
                STK_QUERY_PATH,
                json={**self._signed_request_fields(), "CheckoutRequestID": checkout_request_id},
                headers={"Authorization": f"Bearer {token}"},
            )
        except ProviderCallError as e:
            if "processed" in e.message.lower():
                return PaymentOutcome(
                    correlation_key=checkout_request_id,
                    result_status="pending",
                    merchant_reference=merchant_reference,
                )
            raise

        status = _result_status(result.get("ResultCode"))
        return PaymentOutcome(
            correlation_key=checkout_request_id,
            result_status=status,
            provider_transaction_id=checkout_request_id if status == "success" else None,
            merchant_reference=merchant_reference,
            payment_method=self.payment_method,
            description=result.get("ResultDesc"),
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def parse_callback(self, payload: Dict[str, Any]) -> PaymentOutcome:
        """
        Normalize a Daraja stkCallback.

        Accepts the documented Body.stkCallback envelope as well as a bare
        stkCallback object. Metadata items are looked up by Name.
        """
        callback = pick(payload, "Body.stkCallback", "body.stkCallback", "stkCallback") or payload
        if not isinstance(callback, dict):
            raise MalformedPayloadError("STK callback is not an object")

        checkout_id = pick(callback, "CheckoutRequestID", "checkoutRequestId", "checkout_request_id")
        if not checkout_id:
            raise MalformedPayloadError("STK callback without CheckoutRequestID", details={"payload": payload})

        status = _result_status(pick(callback, "ResultCode", "resultCode", "result_code"))
        items = pick(callback, "CallbackMetadata.Item", "callbackMetadata.Item", "CallbackMetadata.item")

        receipt = metadata_lookup(items, "MpesaReceiptNumber")
        amount = metadata_lookup(items, "Amount")
        phone = metadata_lookup(items, "PhoneNumber")

        transaction_id = None
        if status == "success":
            # A success without a receipt still needs a dedup key
            transaction_id = str(receipt) if receipt else str(checkout_id)

        return PaymentOutcome(
            correlation_key=str(checkout_id),
            result_status=status,
            provider_transaction_id=transaction_id,
            raw_amount=float(amount) if amount is not None else None,
            payment_method=self.payment_method,
            phone=str(phone) if phone is not None else None,
            description=pick(callback, "ResultDesc", "resultDesc"),
        )

    def acknowledgement(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {"ResultCode": 0, "ResultDesc": "Accepted"}
