"""
Provider Registry

Holds one adapter per channel for the lifetime of the app. The registry
is created in the FastAPI lifespan and closed on shutdown; tests
substitute adapters built around httpx.MockTransport.
"""
import logging
from typing import Dict, Iterable, Optional

from ..exceptions import ValidationError
from .base import ProviderAdapter
from .chat_bot import ChatBotAdapter
from .daraja import DarajaAdapter
from .payhero import PayheroAdapter
from .pesapal import PesapalAdapter

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Channel name -> adapter."""

    def __init__(self, adapters: Iterable[ProviderAdapter]):
        self._adapters: Dict[str, ProviderAdapter] = {a.channel: a for a in adapters}

    @classmethod
    def default(cls) -> "ProviderRegistry":
        registry = cls([DarajaAdapter(), PesapalAdapter(), PayheroAdapter(), ChatBotAdapter()])
        for channel, adapter in registry._adapters.items():
            state = "configured" if adapter.is_configured else "NOT configured"
            logger.info(f"Payment channel {channel}: {state}")
        return registry

    def get(self, channel: str) -> ProviderAdapter:
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise ValidationError(f"Unsupported payment channel: {channel}", details={"channel": channel})
        return adapter

    @property
    def daraja(self) -> DarajaAdapter:
        return self.get("mpesa")

    @property
    def pesapal(self) -> PesapalAdapter:
        return self.get("pesapal")

    @property
    def payhero(self) -> PayheroAdapter:
        return self.get("payhero")

    @property
    def chat_bot(self) -> ChatBotAdapter:
        return self.get("telegram")

    def channels(self):
        return list(self._adapters)

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """FastAPI dependency returning the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry.default()
    return _registry


async def close_provider_registry() -> None:
    global _registry
    if _registry is not None:
        await _registry.close()
        _registry = None
