from __future__ import annotations

import asyncio
from collections import deque
from typing import Deque, Mapping, Sequence, Union

from pushrelay.domain.jobs import DeliveryTarget
from pushrelay.providers.delivery.base import DeliveryContent, DeliveryResult

Scripted = Union[DeliveryResult, BaseException]


class FakeDeliveryAdapter:
    def __init__(
        self,
        outcomes: Mapping[str, Scripted | Sequence[Scripted]] | None = None,
        *,
        delay_s: float = 0.0,
    ) -> None:
        # Scripted per-target outcomes keep delivery tests deterministic without a gateway.
        self._scripts: dict[str, Deque[Scripted]] = {}
        for target, outcome in (outcomes or {}).items():
            if isinstance(outcome, (DeliveryResult, BaseException)):
                self._scripts[target] = deque([outcome])
            else:
                self._scripts[target] = deque(outcome)
        self._delay_s = delay_s
        self._sent = 0
        self.calls: list[tuple[DeliveryTarget, DeliveryContent]] = []
        self.closed = False

    def _next_outcome(self, target: str) -> Scripted | None:
        # The last scripted outcome repeats once earlier ones are consumed.
        script = self._scripts.get(target)
        if not script:
            return None
        if len(script) > 1:
            return script.popleft()
        return script[0]

    async def send(self, target: DeliveryTarget, content: DeliveryContent) -> DeliveryResult:
        self.calls.append((target, content))
        if self._delay_s > 0:
            await asyncio.sleep(self._delay_s)
        outcome = self._next_outcome(target.value)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is not None:
            return outcome
        self._sent += 1
        return DeliveryResult(success=True, message_id=f"fake-{self._sent}")

    async def aclose(self) -> None:
        self.closed = True

    def sent_to(self, target: str) -> int:
        return sum(1 for call_target, _ in self.calls if call_target.value == target)
