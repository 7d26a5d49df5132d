#!/usr/bin/env python3
"""
Prompt assembly for decision turns and history summarization.

The base prompt (portfolio, positions, market data, cooldowns) is what gets
stored on the decision log. History context is appended only when the prompt
is sent, so stored prompts never grow with accumulated history.
"""

from __future__ import annotations

import json
import math
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from market_cache import trend_label
from models import Bot, DecisionLogEntry, HistorySummary, MarketTicker, Position

RULE = "─" * 80
SUMMARY_HEADER = "=== YOUR LEARNING HISTORY & INSIGHTS ==="
SUMMARY_FOOTER = "=== END OF SUMMARY ==="
COOLDOWN_HEADER = "Active Position Cooldowns (symbols you cannot trade yet):"
MARKET_SECTION = "Live Market Data:"
SUMMARY_MARKET_LINES = 6

RESPONSE_FORMAT = """RESPONSE FORMAT:
Return a JSON array of decisions and nothing else. Each decision is one of:
  {"action": "LONG" | "SHORT", "symbol": "BTCUSDT", "size": <margin USD>, "leverage": <x>, "stopLoss": <price>, "takeProfit": <price>, "reasoning": "..."}
  {"action": "CLOSE", "closePositionId": "<position id>", "reasoning": "..."}
  {"action": "HOLD", "reasoning": "..."}
Return [] to do nothing."""


def format_position(p: Position, now: float) -> str:
    pnl_pct = (p.unrealized_pnl / p.size * 100.0) if p.size else 0.0
    minutes_open = max(0, int((now - p.opened_at) // 60))
    sl = f"${p.stop_loss:.4f}" if p.stop_loss else "N/A"
    tp = f"${p.take_profit:.4f}" if p.take_profit else "N/A"
    return (
        f"Position {p.id}: {p.side} {p.symbol} | Entry: ${p.entry_price:.4f} | "
        f"Current PnL: ${p.unrealized_pnl:.2f} ({pnl_pct:.2f}%) | Margin: ${p.size:.2f} | "
        f"Leverage: {p.leverage:g}x | Open: {minutes_open / 60:.1f}h ({minutes_open}min) | "
        f"SL: {sl} | TP: {tp} | Liq: ${p.liquidation_price:.4f}"
    )


def format_positions(positions: Sequence[Position], now: float) -> str:
    if not positions:
        return "None"
    return "\n".join(format_position(p, now) for p in positions)


def format_market(tickers: Iterable[MarketTicker]) -> str:
    lines = [
        f"{t.symbol}: ${t.price:g} ({t.change_24h:+.2f}% 24h, {trend_label(t.change_24h)})"
        for t in tickers
    ]
    return "\n".join(lines) if lines else "No market data available"


def format_cooldowns(remaining: Dict[str, float]) -> str:
    if not remaining:
        return ""
    lines = [COOLDOWN_HEADER]
    for symbol in sorted(remaining):
        lines.append(f"{symbol}: {math.ceil(remaining[symbol] / 60)}min remaining")
    return "\n".join(lines)


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def render_base_prompt(
    bot: Bot,
    tickers: Sequence[MarketTicker],
    now: Optional[float] = None,
) -> str:
    """Fill the bot's prompt template with portfolio and market context."""
    ts = time.time() if now is None else now
    values = {
        "totalValue": f"{bot.total_value:.2f}",
        "availableBalance": f"{bot.balance:.2f}",
        "unrealizedPnl": f"{bot.unrealized_pnl:.2f}",
        "openPositions": format_positions(bot.open_positions, ts),
        "marketData": format_market(tickers),
        "currentDate": _iso(ts),
    }
    template = bot.prompt or ""
    uses_template = "{{marketData}}" in template
    prompt = template
    for key, val in values.items():
        prompt = prompt.replace("{{" + key + "}}", val)

    if not uses_template:
        prompt = (
            f"{prompt.rstrip()}\n\n"
            f"Current Date: {values['currentDate']}\n\n"
            f"PORTFOLIO:\n"
            f"Total Value: ${values['totalValue']}\n"
            f"Available Balance: ${values['availableBalance']}\n"
            f"Unrealized PnL: ${values['unrealizedPnl']}\n\n"
            f"Open Positions:\n{values['openPositions']}\n\n"
            f"{MARKET_SECTION}\n{values['marketData']}\n\n"
            f"{RESPONSE_FORMAT}"
        )

    cooldowns = format_cooldowns(bot.active_cooldowns(ts))
    if cooldowns:
        prompt = f"{prompt}\n\n{cooldowns}"
    return prompt


def _outcome_lines(entry: DecisionLogEntry) -> List[str]:
    lines = ["OUTCOME:"]
    if not entry.decisions:
        lines.append("  No trades taken (HOLD)")
    for d in entry.decisions:
        target = d.get("symbol") or d.get("closePositionId") or ""
        lines.append(f"  {d.get('action', '?')} {target}".rstrip())
    for note in entry.notes:
        lines.append(f"  {note}")
    lines.append(f"  Success: {'Yes' if entry.success else 'No'}")
    return lines


def format_history_context(
    summary: Optional[HistorySummary],
    recent: Sequence[DecisionLogEntry],
    now: Optional[float] = None,
) -> str:
    """Summary narrative (if any) plus the given recent entries, newest first."""
    ts = time.time() if now is None else now
    parts: List[str] = []
    if summary and summary.text:
        parts.append(
            f"\n\n{SUMMARY_HEADER}\n"
            f"(Compressed summary of {summary.count} earlier decisions)\n\n"
            f"{summary.text}\n\n{SUMMARY_FOOTER}\n"
        )
    if recent:
        parts.append(f"\n\n=== RECENT AI LOG (Last {len(recent)} Trading Cycles) ===\n")
        for idx, entry in enumerate(recent):
            minutes_ago = max(0, int((ts - entry.timestamp) // 60))
            parts.append(
                f"\n{RULE}\nAI Log Entry #{idx + 1} - {minutes_ago / 60:.1f}h ago ({minutes_ago}min)\n{RULE}\n\n"
                f"{entry.prompt or '[No AI log recorded]'}\n\n"
                + "\n".join(_outcome_lines(entry))
                + "\n"
            )
    return "".join(parts)


def build_full_prompt(base_prompt: str, history_context: str) -> str:
    return f"{base_prompt}{history_context}" if history_context else base_prompt


def build_iteration_prompt(
    full_prompt: str,
    analysis_history: Sequence[Dict[str, Any]],
    iteration: int,
    max_iterations: int,
    tool_names: Sequence[str],
    symbol_count: int,
    max_chars: int,
) -> str:
    """Prompt for one analysis iteration; the last one demands final decisions."""
    is_final = iteration >= max_iterations
    header = [
        f"\n\n=== ANALYSIS MODE: iteration {iteration} of {max_iterations} ===",
    ]
    if is_final:
        header.append(
            "FINAL ITERATION: You MUST return trading decisions now (LONG/SHORT/CLOSE/HOLD array). "
            f"You have analyzed {symbol_count} available trading symbols; prioritize the opportunities "
            "with the highest edge and conviction. Reference the computed values from your prior analysis iterations."
        )
    else:
        header.append(
            "You may request one analytical tool before deciding by answering with a single object:\n"
            '{"action": "ANALYZE", "tool": "<name>", "parameters": {...}, "reasoning": "..."}\n'
            "Or answer with the final decision array right away.\n"
            f"Available tools: {', '.join(tool_names) if tool_names else 'none'}"
        )

    history_blocks = []
    for step in analysis_history:
        if step.get("tool") is None:
            history_blocks.append(
                f"\n[Iteration {step['iteration']} - Parse Error]\n"
                f"Could not parse response. Response: {step.get('response', '')}..."
            )
            continue
        history_blocks.append(
            f"\n[Iteration {step['iteration']}] TOOL {step['tool']} "
            f"params={json.dumps(step['parameters'], default=str)}\n"
            f"Reasoning: {step.get('reasoning', '')}\n"
            f"Result: {json.dumps(step['result'], default=str)}"
        )

    tail = "\n".join(header)
    budget = max(0, int(max_chars) - len(full_prompt) - len(tail) - 64)
    kept: List[str] = []
    used = 0
    for block in reversed(history_blocks):
        if used + len(block) > budget:
            break
        kept.insert(0, block)
        used += len(block)
    dropped = len(history_blocks) - len(kept)

    history_text = ""
    if history_blocks:
        history_text = "\n\n=== YOUR ANALYSIS SO FAR ==="
        if dropped:
            history_text += f"\n({dropped} earlier analysis step(s) omitted for length)"
        history_text += "".join(kept)
    return f"{full_prompt}{history_text}{tail}"


def truncate_market_section(prompt: str, max_lines: int = SUMMARY_MARKET_LINES) -> str:
    """Keep only the first few lines after a 'Live Market Data:' header."""
    if MARKET_SECTION not in prompt:
        return prompt
    out: List[str] = []
    in_market = False
    kept = 0
    for line in prompt.splitlines():
        if line.strip().startswith(MARKET_SECTION):
            in_market = True
            kept = 0
            out.append(line)
            continue
        if in_market:
            if not line.strip():
                in_market = False
                out.append(line)
                continue
            kept += 1
            if kept <= max_lines:
                out.append(line)
            elif kept == max_lines + 1:
                out.append("... (market data truncated)")
            continue
        out.append(line)
    return "\n".join(out)


def format_entries_for_summary(entries: Sequence[DecisionLogEntry]) -> str:
    blocks = []
    for idx, entry in enumerate(entries):
        blocks.append(
            f"--- Decision {idx + 1} ({_iso(entry.timestamp)}) ---\n"
            f"PROMPT:\n{truncate_market_section(entry.prompt)}\n"
            + "\n".join(_outcome_lines(entry))
        )
    return "\n\n".join(blocks)


def build_summarization_prompt(
    bot: Bot,
    entries: Sequence[DecisionLogEntry],
    previous: Optional[HistorySummary],
    personality_chars: int = 2000,
) -> str:
    previous_ctx = ""
    if previous and previous.text:
        previous_ctx = (
            f"\nYOUR PREVIOUS SUMMARY (covering {previous.count} earlier decisions). Use it as context, "
            "then generate a fresh, self-contained summary that covers both it and the new decisions below. "
            "Do not copy it verbatim.\n"
            f"{previous.text}\n"
        )
    return (
        f'You are "{bot.name}" reflecting on your trading history to extract learnings and patterns.\n\n'
        f"Your personality and trading philosophy:\n{(bot.prompt or '')[:personality_chars]}\n"
        f"{previous_ctx}\n"
        f"TRADING HISTORY TO ANALYZE ({len(entries)} decisions):\n"
        f"{format_entries_for_summary(entries)}\n\n"
        "Your task: write a learning summary of at most about 2,000 words that documents:\n"
        "1. Key patterns and insights: which setups worked and which failed.\n"
        "2. Learning outcomes: profitable and losing trades and why.\n"
        "3. Risk management: leverage, sizing, stop losses and take profits.\n"
        "4. Behavioral observations such as overtrading or revenge trading.\n"
        "5. Actionable recommendations for future trades.\n\n"
        f"Write in the first person, in YOUR voice as {bot.name}. This is your trading journal, "
        "not a generic report.\n\nYOUR LEARNING SUMMARY:"
    )
