"""
Provider Adapter Base

Every payment channel is reached through an adapter that:
- starts a payment and returns a normalized PaymentInitiation
- turns the provider's callback payload into a normalized PaymentOutcome
- knows the acknowledgement body its provider expects back

All provider-specific field lookups live inside the adapter; the
reconciliation engine only ever sees PaymentOutcome.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import httpx

from ..config import settings, Settings
from ..exceptions import ProviderCallError, ProviderConfigError
from ..models.payments import ChannelDetails, PaymentInitiation, PaymentOutcome

logger = logging.getLogger(__name__)

_MISSING = object()


def pick(payload: Any, *paths: str, default: Any = None) -> Any:
    """
    Return the first non-empty value found at any of the dotted paths.

    Providers send the same field under different names and at different
    depths; callers list every known variant in priority order.

    Example:
        pick(body, "Body.stkCallback.ResultCode", "stkCallback.ResultCode", "ResultCode")
    """
    for path in paths:
        value: Any = payload
        for key in path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                value = _MISSING
                break
        if value is not _MISSING and value is not None and value != "":
            return value
    return default


def metadata_lookup(items: Optional[Iterable[Dict[str, Any]]], name: str) -> Any:
    """Value of a Name/Value metadata list entry, matched by name (order is not guaranteed)."""
    for item in items or []:
        if isinstance(item, dict) and item.get("Name") == name:
            return item.get("Value")
    return None


def _provider_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    message = pick(
        body,
        "errorMessage",
        "error.message",
        "message",
        "error_description",
        "CustomerMessage",
        "ResponseDescription",
    )
    if isinstance(message, str):
        return message
    return str(body)


class ProviderAdapter(ABC):
    """
    Base class for payment channel adapters.

    Subclasses set `channel` (order tag) and `payment_method` (purchase tag)
    and implement initiation and callback parsing.
    """

    channel: str = ""
    payment_method: str = ""

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        config: Settings = settings
    ):
        self.base_url = base_url.rstrip("/")
        self.config = config
        self.timeout = config.provider_timeout_seconds
        self._client = client
        self._owns_client = client is None

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """True when every credential the provider needs is present."""

    @abstractmethod
    def prepare_contact_details(self, details: ChannelDetails) -> Dict[str, Any]:
        """
        Validate and normalize payer contact details.

        Raises:
            InvalidPaymentDetailsError: Details unusable for this provider
        """

    @abstractmethod
    async def initiate(
        self,
        amount: float,
        reference: str,
        description: str,
        contact_details: Dict[str, Any]
    ) -> PaymentInitiation:
        """Start a payment. Raises ProviderCallError when the provider refuses."""

    @abstractmethod
    def parse_callback(self, payload: Dict[str, Any]) -> PaymentOutcome:
        """
        Normalize a callback payload.

        Raises:
            MalformedPayloadError: No correlation key in the payload
        """

    @abstractmethod
    async def query_outcome(
        self,
        tracking_id: str,
        merchant_reference: Optional[str] = None
    ) -> PaymentOutcome:
        """Outcome straight from the provider's status endpoint."""

    def acknowledgement(self, payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Body returned to the provider for every callback delivery."""
        return {"status": "accepted"}

    def require_configured(self) -> None:
        if not self.is_configured:
            raise ProviderConfigError(
                f"{self.channel} payments are not configured",
                details={"channel": self.channel}
            )

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={"Accept": "application/json"},
                timeout=httpx.Timeout(self.timeout),
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: Optional[httpx.Auth] = None
    ) -> Dict[str, Any]:
        """
        Call the provider and return its JSON body.

        Raises:
            ProviderCallError: Timeout, transport failure, non-2xx status or
                a non-JSON body. The provider's own message is kept.
        """
        client = await self._get_client()
        kwargs: Dict[str, Any] = {"json": json, "params": params, "headers": headers}
        if auth is not None:
            kwargs["auth"] = auth

        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.error(f"{self.channel} request timeout: {method} {path}")
            raise ProviderCallError(
                "Payment provider timed out",
                details={"channel": self.channel, "path": path}
            ) from e
        except httpx.RequestError as e:
            logger.error(f"{self.channel} request failed: {method} {path}: {e}")
            raise ProviderCallError(
                f"Could not reach payment provider: {e}",
                details={"channel": self.channel, "path": path}
            ) from e

        if response.status_code >= 400:
            message = _provider_message(response)
            logger.error(
                f"{self.channel} API error {response.status_code} on {path}: {message}"
            )
            raise ProviderCallError(
                message,
                details={"channel": self.channel, "status_code": response.status_code}
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderCallError(
                "Payment provider returned an unreadable response",
                details={"channel": self.channel, "path": path}
            ) from e
