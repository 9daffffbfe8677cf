"""
Hosted-Redirect Adapter (PesaPal API v3)

The payer is sent to a PesaPal-hosted page. PesaPal then reports back on
two independent paths:
- browser return: the payer's browser lands on our return URL with
  OrderTrackingId / OrderMerchantReference in the query string. Anyone can
  forge this, so it only ever starts a client-side "verifying" poll.
- IPN: a server-to-server notification with the same identifiers. Even
  this carries no status; the adapter must query GetTransactionStatus
  before any outcome is trusted.

Status codes from GetTransactionStatus: 1 completed, 2 failed,
anything else (0 invalid, 3 reversed, missing) pending.
"""
import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from ..config import settings, Settings
from ..exceptions import InvalidPaymentDetailsError, MalformedPayloadError, ProviderCallError
from ..models.payments import ChannelDetails, PaymentInitiation, PaymentOutcome
from .base import ProviderAdapter, pick

logger = logging.getLogger(__name__)

TOKEN_PATH = "/api/Auth/RequestToken"
REGISTER_IPN_PATH = "/api/URLSetup/RegisterIPN"
SUBMIT_ORDER_PATH = "/api/Transactions/SubmitOrderRequest"
TRANSACTION_STATUS_PATH = "/api/Transactions/GetTransactionStatus"

DESCRIPTION_MAX_LENGTH = 100

TRACKING_ID_KEYS = ("OrderTrackingId", "orderTrackingId", "order_tracking_id", "data.OrderTrackingId")
MERCHANT_REFERENCE_KEYS = (
    "OrderMerchantReference", "orderMerchantReference", "merchantReference",
    "merchant_reference", "data.OrderMerchantReference",
)
NOTIFICATION_TYPE_KEYS = ("OrderNotificationType", "orderNotificationType", "notification_type")


def _error_message(data: Dict[str, Any]) -> Optional[str]:
    error = data.get("error")
    if not error:
        return None
    if isinstance(error, dict):
        return error.get("message") or error.get("code") or str(error)
    return str(error)


def status_from_code(status_code: Any, description: Optional[str] = None) -> str:
    code = str(status_code).strip() if status_code is not None else ""
    desc = (description or "").strip().lower()
    if code == "1" or desc == "completed":
        return "success"
    if code == "2" or desc == "failed":
        return "failed"
    return "pending"


class PesapalAdapter(ProviderAdapter):
    """Hosted payment page over PesaPal v3."""

    channel = "pesapal"
    payment_method = "pesapal"

    def __init__(
        self,
        return_path: str = "/webhooks/hosted-redirect/return",
        ipn_path: str = "/webhooks/pesapal",
        client: Optional[httpx.AsyncClient] = None,
        config: Settings = settings
    ):
        super().__init__(config.pesapal_base_url, client=client, config=config)
        self.return_path = return_path
        self.ipn_path = ipn_path
        self._ipn_id: Optional[str] = config.pesapal_ipn_id or None

    @property
    def is_configured(self) -> bool:
        return bool(self.config.pesapal_consumer_key and self.config.pesapal_consumer_secret)

    def prepare_contact_details(self, details: ChannelDetails) -> Dict[str, Any]:
        if not details.email and not details.phone:
            raise InvalidPaymentDetailsError("An email address or phone number is required")

        billing = {"country_code": "KE"}
        if details.email:
            billing["email_address"] = details.email
        if details.phone:
            billing["phone_number"] = details.phone
        if details.first_name:
            billing["first_name"] = details.first_name
        if details.last_name:
            billing["last_name"] = details.last_name
        return billing

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        data = await self._request(
            "POST",
            TOKEN_PATH,
            json={
                "consumer_key": self.config.pesapal_consumer_key,
                "consumer_secret": self.config.pesapal_consumer_secret,
            },
        )
        token = data.get("token")
        if not token:
            raise ProviderCallError(
                _error_message(data) or "PesaPal did not issue an access token",
                details={"channel": self.channel}
            )
        return token

    async def ensure_ipn_id(self, token: str) -> str:
        """Registered IPN id, registering our notification URL on first use."""
        if self._ipn_id:
            return self._ipn_id

        data = await self._request(
            "POST",
            REGISTER_IPN_PATH,
            json={"url": self.config.callback_url(self.ipn_path), "ipn_notification_type": "POST"},
            headers={"Authorization": f"Bearer {token}"},
        )
        ipn_id = data.get("ipn_id")
        if not ipn_id:
            raise ProviderCallError(
                _error_message(data) or "PesaPal IPN registration failed",
                details={"channel": self.channel}
            )

        logger.info(f"Registered PesaPal IPN url, ipn_id={ipn_id}")
        self._ipn_id = ipn_id
        return ipn_id

    async def initiate(
        self,
        amount: float,
        reference: str,
        description: str,
        contact_details: Dict[str, Any]
    ) -> PaymentInitiation:
        """
        Register the order with PesaPal.

        Returns:
            PaymentInitiation.redirect with the hosted page URL and
            order_tracking_id as provider reference
        """
        self.require_configured()
        token = await self.get_access_token()
        ipn_id = await self.ensure_ipn_id(token)

        payload = {
            "id": reference,
            "currency": self.config.currency,
            "amount": round(amount, 2),
            "description": description[:DESCRIPTION_MAX_LENGTH],
            "callback_url": self.config.callback_url(self.return_path),
            "notification_id": ipn_id,
            "billing_address": contact_details,
        }

        logger.info(f"Submitting PesaPal order: reference={reference}, amount={payload['amount']}")
        data = await self._request(
            "POST",
            SUBMIT_ORDER_PATH,
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )

        tracking_id = data.get("order_tracking_id")
        redirect_url = data.get("redirect_url")
        if not tracking_id or not redirect_url:
            message = _error_message(data) or "PesaPal did not return a payment page"
            logger.warning(f"PesaPal order rejected for {reference}: {message}")
            raise ProviderCallError(message, details={"channel": self.channel, "response": data})

        logger.info(f"PesaPal order registered: reference={reference}, tracking_id={tracking_id}")
        return PaymentInitiation.redirect(redirect_url=redirect_url, provider_reference=tracking_id)

    async def get_transaction_status(self, tracking_id: str) -> Dict[str, Any]:
        self.require_configured()
        token = await self.get_access_token()
        data = await self._request(
            "GET",
            TRANSACTION_STATUS_PATH,
            params={"orderTrackingId": tracking_id},
            headers={"Authorization": f"Bearer {token}"},
        )
        logger.debug(f"PesaPal status for {tracking_id}: {data}")

        if data.get("status_code") is None and _error_message(data):
            raise ProviderCallError(_error_message(data), details={"channel": self.channel})
        return data

    def outcome_from_status(
        self,
        tracking_id: str,
        status: Dict[str, Any],
        merchant_reference: Optional[str] = None
    ) -> PaymentOutcome:
        result_status = status_from_code(status.get("status_code"), status.get("payment_status_description"))
        amount = status.get("amount")
        return PaymentOutcome(
            correlation_key=tracking_id,
            result_status=result_status,
            provider_transaction_id=tracking_id if result_status == "success" else None,
            raw_amount=float(amount) if amount is not None else None,
            merchant_reference=status.get("merchant_reference") or merchant_reference,
            payment_method=status.get("payment_method") or self.payment_method,
            description=status.get("payment_status_description") or status.get("description"),
        )

    async def query_outcome(
        self,
        tracking_id: str,
        merchant_reference: Optional[str] = None
    ) -> PaymentOutcome:
        """Authoritative outcome for a tracking id, straight from PesaPal."""
        status = await self.get_transaction_status(tracking_id)
        return self.outcome_from_status(tracking_id, status, merchant_reference)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def _identifiers(self, payload: Dict[str, Any]) -> Tuple[str, Optional[str], Optional[str]]:
        tracking_id = pick(payload, *TRACKING_ID_KEYS)
        merchant_reference = pick(payload, *MERCHANT_REFERENCE_KEYS)
        if not tracking_id and not merchant_reference:
            raise MalformedPayloadError(
                "PesaPal payload without OrderTrackingId or merchant reference",
                details={"payload": payload}
            )
        return tracking_id, merchant_reference, pick(payload, *NOTIFICATION_TYPE_KEYS)

    def parse_return(self, query: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
        """Identifiers from a browser return. Carries no payment status."""
        tracking_id, merchant_reference, _ = self._identifiers(query)
        return tracking_id, merchant_reference

    def parse_callback(self, payload: Dict[str, Any]) -> PaymentOutcome:
        """
        Correlation-only outcome for an IPN.

        PesaPal notifications carry no status, so the parsed outcome is
        always pending; resolve_notification upgrades it with a status query.
        """
        tracking_id, merchant_reference, _ = self._identifiers(payload)
        return PaymentOutcome(
            correlation_key=tracking_id or merchant_reference,
            result_status="pending",
            merchant_reference=merchant_reference,
            payment_method=self.payment_method,
        )

    async def resolve_notification(self, payload: Dict[str, Any]) -> PaymentOutcome:
        """Parse an IPN and verify it against GetTransactionStatus."""
        tracking_id, merchant_reference, notification_type = self._identifiers(payload)
        if not tracking_id:
            raise MalformedPayloadError(
                "PesaPal IPN without OrderTrackingId",
                details={"merchant_reference": merchant_reference}
            )

        logger.info(
            f"PesaPal IPN: tracking_id={tracking_id}, reference={merchant_reference}, "
            f"type={notification_type}"
        )
        return await self.query_outcome(tracking_id, merchant_reference)

    def acknowledgement(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload = payload or {}
        return {
            "orderNotificationType": pick(payload, *NOTIFICATION_TYPE_KEYS, default="IPNCHANGE"),
            "orderTrackingId": pick(payload, *TRACKING_ID_KEYS),
            "orderMerchantReference": pick(payload, *MERCHANT_REFERENCE_KEYS),
            "status": 200,
        }
