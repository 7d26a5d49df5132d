#!/usr/bin/env python3
"""Per-owner round-robin selection in the bot registry."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from models import Bot
from scheduler import BotRegistry


def _bot(bot_id: str, owner: str, **kw) -> Bot:
    return Bot(id=bot_id, owner_id=owner, name=bot_id, prompt="", provider_id="p", **kw)


def _drain(reg: BotRegistry) -> list:
    ran = []
    while True:
        bot = reg.next_bot(exclude=ran)
        if bot is None:
            return ran
        ran.append(bot.id)


def _registry() -> BotRegistry:
    return BotRegistry(
        [
            _bot("a1", "alice"),
            _bot("a2", "alice"),
            _bot("a3", "alice"),
            _bot("b1", "bob"),
        ]
    )


def test_owners_alternate_and_bots_rotate_within_owner() -> None:
    reg = _registry()

    picked = [reg.next_bot().id for _ in range(8)]

    assert picked == ["a1", "b1", "a2", "b1", "a3", "b1", "a1", "b1"]


def test_first_turns_of_a_cycle_cover_every_active_owner() -> None:
    reg = BotRegistry(
        [_bot(f"a{i}", "alice") for i in range(5)] + [_bot("b1", "bob"), _bot("c1", "carol")]
    )

    ran = _drain(reg)

    owners = [reg.get(bid).owner_id for bid in ran[:3]]
    assert sorted(owners) == ["alice", "bob", "carol"]
    assert sorted(ran) == sorted(["a0", "a1", "a2", "a3", "a4", "b1", "c1"])


def test_owner_cursor_persists_between_cycles() -> None:
    reg = _registry()

    first = _drain(reg)
    second = _drain(reg)

    assert first == ["a1", "b1", "a2", "a3"]
    assert second[0] == "b1"
    assert sorted(second) == sorted(first)


def test_paused_inactive_and_busy_bots_are_skipped() -> None:
    reg = BotRegistry(
        [
            _bot("a1", "alice", is_paused=True),
            _bot("a2", "alice"),
            _bot("b1", "bob", is_active=False),
            _bot("c1", "carol", is_busy=True),
        ]
    )

    assert [reg.next_bot().id for _ in range(3)] == ["a2", "a2", "a2"]
    assert reg.active_owners() == ["alice", "carol"]

    reg.get("a2").is_paused = True
    assert reg.next_bot() is None


def test_removing_bots_keeps_rotation_consistent() -> None:
    reg = _registry()
    assert reg.next_bot().id == "a1"

    reg.remove("a2")
    reg.remove("b1")

    assert "b1" not in reg
    assert reg.owners() == ["alice"]
    assert [reg.next_bot().id for _ in range(3)] == ["a3", "a1", "a3"]
    assert reg.remove("missing") is None


def test_replacing_a_bot_keeps_its_place() -> None:
    reg = _registry()
    replacement = _bot("a2", "alice", balance=42.0)

    reg.add(replacement)

    assert len(reg) == 4
    assert [b.id for b in reg.bots_for("alice")] == ["a1", "a2", "a3"]
    assert reg.get("a2").balance == 42.0
