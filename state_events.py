#!/usr/bin/env python3
"""Bot state change events.

The engine publishes a `bot_state` event after every turn, refresh and
command. Delivering it to viewers (and filtering by owner) belongs to the
subscribers; a failing subscriber never affects the engine.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Tuple

from logging_utils import get_logger

log = get_logger("state_events")

EVENT_BOT_STATE = "bot_state"
EVENT_TURN_COMPLETED = "turn_completed"

Handler = Callable[["StateEvent"], Awaitable[None]]


@dataclass
class StateEvent:
    type: str
    bot_id: str
    owner_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "bot_id": self.bot_id,
            "owner_id": self.owner_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }


class StateBroadcaster:
    """Async fan-out of state events to subscribers, optionally owner-scoped."""

    def __init__(self, history_size: int = 200) -> None:
        self._subscribers: List[Tuple[Optional[str], Handler]] = []
        self._recent: Deque[StateEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: Handler, owner_id: Optional[str] = None) -> None:
        """owner_id=None receives every owner's events."""
        self._subscribers.append((owner_id, handler))

    def unsubscribe(self, handler: Handler) -> None:
        self._subscribers = [(o, h) for o, h in self._subscribers if h is not handler]

    def recent(self, owner_id: Optional[str] = None) -> List[StateEvent]:
        return [e for e in self._recent if owner_id is None or e.owner_id == owner_id]

    async def publish(self, event: StateEvent) -> None:
        self._recent.append(event)
        targets = [h for owner, h in self._subscribers if owner is None or owner == event.owner_id]
        if not targets:
            return
        results = await asyncio.gather(*(h(event) for h in targets), return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                log.warning(f"State subscriber failed for {event.type} bot={event.bot_id}: {result}")
