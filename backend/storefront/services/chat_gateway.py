"""
Conversational Channel Gateway (Telegram Bot API)
"""
import logging
from typing import Any, Dict, Optional

import httpx

from ..config import settings
from ..exceptions import ProviderCallError

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"


class TelegramGateway:
    """Outbound messages to Telegram chats. HTML parse mode throughout."""

    def __init__(self, token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.token = token if token is not None else settings.telegram_bot_token
        self._client = client
        self._owns_client = client is None

    @property
    def is_configured(self) -> bool:
        return bool(self.token)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=TELEGRAM_API_BASE,
                timeout=httpx.Timeout(settings.provider_timeout_seconds),
            )
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.is_configured:
            raise ProviderCallError("Telegram bot token is not configured", details={"channel": "telegram"})

        client = await self._get_client()
        try:
            response = await client.post(f"/bot{self.token}/{method}", json=payload)
            result = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Telegram {method} failed: {e}")
            raise ProviderCallError(f"Telegram {method} failed", details={"chat_id": payload.get("chat_id")}) from e

        if not result.get("ok"):
            logger.error(f"Telegram {method} rejected: {result.get('description')}")
            raise ProviderCallError(
                result.get("description") or f"Telegram {method} rejected",
                details={"chat_id": payload.get("chat_id")}
            )
        return result

    async def send_message(
        self,
        chat_id: str,
        text: str,
        reply_markup: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        logger.info(f"Sending message to {chat_id}: {text[:50]}...")
        payload: Dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        if reply_markup:
            payload["reply_markup"] = reply_markup
        return await self._call("sendMessage", payload)

    async def send_document(self, chat_id: str, url: str, caption: str) -> Dict[str, Any]:
        logger.info(f"Sending document to {chat_id}")
        return await self._call(
            "sendDocument",
            {"chat_id": chat_id, "document": url, "caption": caption, "parse_mode": "HTML"},
        )

    async def request_contact(self, chat_id: str, text: str) -> Dict[str, Any]:
        """Message with a one-time keyboard button that shares the user's phone."""
        return await self.send_message(chat_id, text, reply_markup={
            "keyboard": [[{"text": "📱 Share Phone Number", "request_contact": True}]],
            "resize_keyboard": True,
            "one_time_keyboard": True,
        })

    async def remove_keyboard(self, chat_id: str, text: str) -> Dict[str, Any]:
        return await self.send_message(chat_id, text, reply_markup={"remove_keyboard": True})


_gateway: Optional[TelegramGateway] = None


def get_chat_gateway() -> TelegramGateway:
    global _gateway
    if _gateway is None:
        _gateway = TelegramGateway()
    return _gateway


async def close_chat_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
