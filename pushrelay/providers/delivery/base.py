from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from pushrelay.domain.jobs import DeliveryTarget


@dataclass(frozen=True)
class DeliveryContent:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)
    sound: str | None = None
    icon: str | None = None
    image: str | None = None
    route: str | None = None
    type: str = "general"
    priority: str = "normal"


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    # Only meaningful for failures; a retryable failure may succeed on a later attempt.
    retryable: bool = False


class DeliveryAdapter(Protocol):
    async def send(self, target: DeliveryTarget, content: DeliveryContent) -> DeliveryResult:
        ...

    async def aclose(self) -> None:
        ...
