#!/usr/bin/env python3
"""Base prompt rendering, history context, iteration and summary prompts."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from models import Bot, DecisionLogEntry, HistorySummary, MarketTicker, Position
from prompt_builder import (
    SUMMARY_HEADER,
    build_full_prompt,
    build_iteration_prompt,
    build_summarization_prompt,
    format_history_context,
    render_base_prompt,
    truncate_market_section,
)

NOW = 1_700_000_000.0


def _bot(prompt: str) -> Bot:
    bot = Bot(id="bot_a", owner_id="alice", name="Degen", prompt=prompt, provider_id="grok", balance=8_000.0)
    bot.positions.append(
        Position(id="pos_1", bot_id="bot_a", symbol="BTCUSDT", side="LONG", entry_price=69_500.0,
                 size=2_000.0, leverage=10, opened_at=NOW - 3600, unrealized_pnl=287.77)
    )
    bot.recompute_totals()
    return bot


TICKERS = [MarketTicker(symbol="BTCUSDT", price=70_500.0, change_24h=1.5),
           MarketTicker(symbol="ETHUSDT", price=2_000.0, change_24h=-0.5)]


def test_template_placeholders_are_filled() -> None:
    bot = _bot("Value {{totalValue}} free {{availableBalance}} upnl {{unrealizedPnl}}\n{{openPositions}}\n{{marketData}}")

    prompt = render_base_prompt(bot, TICKERS, NOW)

    assert "Value 10287.77 free 8000.00 upnl 287.77" in prompt
    assert "Position pos_1: LONG BTCUSDT" in prompt
    assert "Open: 1.0h (60min)" in prompt
    assert "BTCUSDT: $70500 (+1.50% 24h, Strong Bullish)" in prompt
    assert "ETHUSDT: $2000 (-0.50% 24h, Bearish)" in prompt
    assert "{{" not in prompt
    assert "RESPONSE FORMAT" not in prompt


def test_plain_persona_gets_standard_sections() -> None:
    bot = _bot("You are a cautious trader.")

    prompt = render_base_prompt(bot, TICKERS, NOW)

    assert prompt.startswith("You are a cautious trader.")
    assert "PORTFOLIO:" in prompt
    assert "Live Market Data:" in prompt
    assert "RESPONSE FORMAT" in prompt
    assert "2023-11-14 22:13:20 UTC" in prompt


def test_active_cooldowns_are_listed() -> None:
    bot = _bot("trade")
    bot.cooldowns = {"ETHUSDT": NOW + 290, "SOLUSDT": NOW - 10}

    prompt = render_base_prompt(bot, TICKERS, NOW)

    assert "Active Position Cooldowns" in prompt
    assert "ETHUSDT: 5min remaining" in prompt
    assert "SOLUSDT" not in prompt


def test_history_context_is_separate_from_base_prompt() -> None:
    summary = HistorySummary(bot_id="bot_a", text="I overtrade on Mondays.", count=40,
                             first_timestamp=1.0, last_timestamp=2.0, last_decision_id=40)
    recent = [DecisionLogEntry(bot_id="bot_a", prompt="old prompt", decisions=[{"action": "LONG", "symbol": "BTCUSDT"}],
                               notes=["OPENED LONG BTCUSDT"], timestamp=NOW - 600)]

    context = format_history_context(summary, recent, NOW)
    full = build_full_prompt("BASE", context)

    assert SUMMARY_HEADER in context
    assert "Compressed summary of 40 earlier decisions" in context
    assert "AI Log Entry #1 - 0.2h ago (10min)" in context
    assert "  LONG BTCUSDT" in context
    assert full.startswith("BASE")
    assert build_full_prompt("BASE", "") == "BASE"
    assert format_history_context(None, [], NOW) == ""


def test_iteration_prompt_marks_final_iteration_and_trims_old_steps() -> None:
    steps = [
        {"iteration": i, "tool": "statistics", "parameters": {"data": [1, 2]}, "reasoning": "r",
         "result": {"ok": True, "result": {"pad": "x" * 1000}}}
        for i in range(1, 4)
    ]

    first = build_iteration_prompt("FULL", [], 1, 3, ["kelly", "statistics"], 2, 10_000)
    final = build_iteration_prompt("FULL", steps, 3, 3, ["kelly"], 2, 2000)

    assert "Available tools: kelly, statistics" in first
    assert "FINAL ITERATION" not in first
    assert "FINAL ITERATION" in final
    assert "analyzed 2 available trading symbols" in final
    assert "omitted for length" in final
    assert "[Iteration 3]" in final


def test_summarization_prompt_truncates_market_data() -> None:
    bot = _bot("Persona text")
    market = "\n".join(f"SYM{i}USDT: $1" for i in range(20))
    entry = DecisionLogEntry(bot_id="bot_a", prompt=f"Header\nLive Market Data:\n{market}\n\nTail", timestamp=NOW)
    previous = HistorySummary(bot_id="bot_a", text="earlier lessons", count=12,
                              first_timestamp=1.0, last_timestamp=2.0, last_decision_id=12)

    prompt = build_summarization_prompt(bot, [entry], previous)

    assert 'You are "Degen"' in prompt
    assert "covering 12 earlier decisions" in prompt
    assert "SYM5USDT" in prompt
    assert "SYM6USDT" not in prompt
    assert "... (market data truncated)" in prompt
    assert "Tail" in prompt


def test_truncate_market_section_leaves_other_prompts_alone() -> None:
    assert truncate_market_section("no market here") == "no market here"
