# events.py
"""
Round lifecycle events.

Published by the engine and processor, consumed by transports
(WebSocket broadcaster) and tests:
- roundStart        {roundId, hash}             seed withheld
- multiplierUpdate  {roundId, multiplier}       every clock tick
- roundCrash        {roundId, crashPoint, seed} seed revealed
- playerCashout     {playerId, multiplier, cryptoPayout, usdPayout}

Publishing never awaits: each subscriber owns a bounded queue and the
oldest event is dropped when a slow subscriber falls behind, so the
multiplier clock cannot be held up by a consumer.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger("crypto_crash.events")

ROUND_START = "roundStart"
MULTIPLIER_UPDATE = "multiplierUpdate"
ROUND_CRASH = "roundCrash"
PLAYER_CASHOUT = "playerCashout"


@dataclass(frozen=True)
class GameEvent:
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": dict(self.data)}


class EventBus:
    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._subscribers: List[asyncio.Queue[GameEvent]] = []

    def subscribe(self) -> asyncio.Queue[GameEvent]:
        queue: asyncio.Queue[GameEvent] = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[GameEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, **data: Any) -> GameEvent:
        event = GameEvent(event_type, data)
        for queue in list(self._subscribers):
            if queue.full():
                # drop oldest
                queue.get_nowait()
                logger.debug(f"Subscriber queue full, dropped oldest event before {event_type}")
            queue.put_nowait(event)
        return event
