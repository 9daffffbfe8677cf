"""
Chat-Bot Adapter

STK push started from the Telegram bot. Same Daraja calls as the direct
channel, but:
- callbacks land on their own path so the chat can be notified
- orders belong to the anonymous identity and carry the chat id
"""
from typing import Optional

import httpx

from ..config import settings, Settings
from .daraja import DarajaAdapter


class ChatBotAdapter(DarajaAdapter):
    channel = "telegram"
    payment_method = "telegram"

    def __init__(
        self,
        callback_path: str = "/webhooks/telegram-mpesa",
        client: Optional[httpx.AsyncClient] = None,
        config: Settings = settings
    ):
        super().__init__(callback_path=callback_path, client=client, config=config)

    def describe(self, product_title: str) -> str:
        """TransactionDesc shown on the payer's handset."""
        return f"{self.config.app_name} - {product_title[:20]}"
