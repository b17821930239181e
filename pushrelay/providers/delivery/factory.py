from __future__ import annotations

from pushrelay.core.config import get_settings
from pushrelay.core.errors import DeliveryConfigError
from pushrelay.providers.delivery.base import DeliveryAdapter
from pushrelay.providers.delivery.fake import FakeDeliveryAdapter
from pushrelay.providers.delivery.gateway import GatewayDeliveryAdapter


def get_delivery_adapter() -> DeliveryAdapter:
    settings = get_settings()
    provider = (settings.delivery_provider or "").lower()

    if provider == "fake":
        return FakeDeliveryAdapter()
    if provider == "gateway":
        return GatewayDeliveryAdapter()

    raise DeliveryConfigError(f"Unsupported delivery provider: {provider or 'none'}")
