"""Adapter registry: provider tag and payment method lookups."""
from typing import Dict, Iterable, Optional, Type

import structlog

from paybridge.config import PROVIDER_TAGS, Settings
from paybridge.core.exceptions import NotFoundError, ValidationError
from paybridge.providers.airtel import AirtelAdapter
from paybridge.providers.base import PaymentAdapter
from paybridge.providers.dpo import DpoAdapter
from paybridge.providers.mpesa import MpesaAdapter
from paybridge.providers.pesapal import PesapalAdapter
from paybridge.providers.signature import WebhookVerifier

logger = structlog.get_logger(__name__)

ADAPTER_CLASSES: Dict[str, Type[PaymentAdapter]] = {
    "pesapal": PesapalAdapter,
    "mpesa": MpesaAdapter,
    "airtel": AirtelAdapter,
    "dpo": DpoAdapter,
}


class AdapterRegistry:
    """Maps provider tags and payment methods to adapters."""

    def __init__(self, adapters: Iterable[PaymentAdapter], methods: Dict[str, str]):
        self._adapters: Dict[str, PaymentAdapter] = {a.tag: a for a in adapters}
        self._methods = dict(methods)

    @property
    def tags(self) -> list:
        return sorted(self._adapters)

    @property
    def methods(self) -> list:
        return sorted(self._methods)

    def get(self, tag: str) -> PaymentAdapter:
        """
        Look up an adapter by provider tag.

        Raises:
            NotFoundError: If no adapter is registered for the tag
        """
        adapter = self._adapters.get((tag or "").lower())
        if adapter is None:
            raise NotFoundError(f"Unknown payment provider: {tag}")
        return adapter

    def for_method(self, method: str) -> PaymentAdapter:
        """
        Look up the adapter serving a payment method.

        Raises:
            ValidationError: If the method is not supported
        """
        tag = self._methods.get((method or "").lower())
        if tag is None or tag not in self._adapters:
            raise ValidationError(
                f"Unsupported payment method: {method}. Supported: {', '.join(self.methods)}"
            )
        return self._adapters[tag]

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()


def build_registry(settings: Settings, tags: Optional[Iterable[str]] = None) -> AdapterRegistry:
    """
    Build the adapter registry from settings.

    Args:
        settings: Application settings
        tags: Optional subset of provider tags to register

    Returns:
        AdapterRegistry: Registry with one adapter per provider
    """
    adapters = []
    for tag in tags or PROVIDER_TAGS:
        config = settings.provider_config(tag)
        verifier = WebhookVerifier(
            tag, config.webhook_secret, required=settings.webhook_secrets_required
        )
        if not config.webhook_secret:
            log = logger.error if settings.webhook_secrets_required else logger.warning
            log("provider_webhook_secret_not_configured", provider=tag)
        adapters.append(ADAPTER_CLASSES[tag](config, verifier=verifier))

    methods = {
        "card_bank": settings.card_bank_provider,
        "mpesa": "mpesa",
        "airtel": "airtel",
    }
    logger.info("adapter_registry_built", providers=[a.tag for a in adapters], methods=methods)
    return AdapterRegistry(adapters, methods)
