#!/usr/bin/env python3
"""State broadcaster fan-out and owner scoping."""

import asyncio
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from state_events import EVENT_BOT_STATE, StateBroadcaster, StateEvent


def test_owner_scoped_subscribers_only_see_their_bots() -> None:
    broadcaster = StateBroadcaster()
    everyone, alice_only = [], []

    async def _all(event):
        everyone.append(event.bot_id)

    async def _alice(event):
        alice_only.append(event.bot_id)

    broadcaster.subscribe(_all)
    broadcaster.subscribe(_alice, owner_id="alice")

    async def _publish():
        await broadcaster.publish(StateEvent(EVENT_BOT_STATE, "a1", "alice"))
        await broadcaster.publish(StateEvent(EVENT_BOT_STATE, "b1", "bob"))

    asyncio.run(_publish())

    assert everyone == ["a1", "b1"]
    assert alice_only == ["a1"]
    assert [e.bot_id for e in broadcaster.recent("bob")] == ["b1"]


def test_failing_subscriber_does_not_break_publish() -> None:
    broadcaster = StateBroadcaster()
    seen = []

    async def _boom(event):
        raise RuntimeError("socket closed")

    async def _ok(event):
        seen.append(event.type)

    broadcaster.subscribe(_boom)
    broadcaster.subscribe(_ok)

    asyncio.run(broadcaster.publish(StateEvent(EVENT_BOT_STATE, "a1", "alice")))

    assert seen == [EVENT_BOT_STATE]


def test_unsubscribe_and_bounded_history() -> None:
    broadcaster = StateBroadcaster(history_size=2)
    seen = []

    async def _handler(event):
        seen.append(event.bot_id)

    broadcaster.subscribe(_handler)
    broadcaster.unsubscribe(_handler)

    async def _publish_three():
        for bot_id in ("a1", "a2", "a3"):
            await broadcaster.publish(StateEvent(EVENT_BOT_STATE, bot_id, "alice"))

    asyncio.run(_publish_three())

    assert seen == []
    assert [e.bot_id for e in broadcaster.recent()] == ["a2", "a3"]
    assert broadcaster.recent()[0].to_dict()["owner_id"] == "alice"
