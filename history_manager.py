#!/usr/bin/env python3
"""
History manager: keeps each bot's model context bounded.

The bot's whole decision log is costed with a chars/4 token estimate. Once
that cost reaches the budget and at least `min_batch` entries outside the
verbatim keep window are not yet covered by the summary, a pass compresses
everything older than the newest `keep_recent` entries into one fresh
narrative summary.

A pass is asked to compress that whole prefix, and its count is the prefix
length. Entries an earlier summary already covers reach the model through
that summary's text; only the uncovered ones are sent verbatim.

Invariant: summary.count + raw entries after summary.last_decision_id equals
the total number of decisions logged for the bot.
"""

from __future__ import annotations

import asyncio
import json
import math
import sqlite3
import time
from typing import Callable, List, Optional, Sequence

from arena_config import HistoryConfig
from arena_db import ArenaDB
from errors import ProviderError
from logging_utils import bot_logger, get_logger
from models import Bot, DecisionLogEntry, HistorySummary
from prompt_builder import build_summarization_prompt, format_history_context
from providers import ProviderAdapter

log = get_logger("history_manager")

CHARS_PER_TOKEN = 4


def estimate_tokens(entry: DecisionLogEntry) -> int:
    chars = (
        len(entry.prompt or "")
        + len(json.dumps(entry.decisions, default=str))
        + len(json.dumps(entry.notes))
    )
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_history_tokens(entries: Sequence[DecisionLogEntry]) -> int:
    return sum(estimate_tokens(e) for e in entries)


def uncovered(entries: Sequence[DecisionLogEntry], covered_through: int) -> List[DecisionLogEntry]:
    return [e for e in entries if int(e.id or 0) > covered_through]


def plan_compression(
    history: Sequence[DecisionLogEntry],
    config: HistoryConfig,
    covered_through: int = 0,
    force: bool = False,
) -> List[DecisionLogEntry]:
    """
    Entries the next summary covers (oldest first), or [] when no pass is due.

    `history` is every decision logged for the bot; `covered_through` is the
    last decision id the current summary covers.
    """
    keep = max(0, int(config.keep_recent))
    eligible = list(history[: len(history) - keep]) if len(history) > keep else []
    fresh = uncovered(eligible, covered_through)
    if not fresh:
        return []
    if force:
        return eligible
    if estimate_history_tokens(history) < config.token_budget:
        return []
    if len(fresh) < config.min_batch:
        return []
    return eligible


class HistoryManager:
    def __init__(
        self,
        db: ArenaDB,
        config: HistoryConfig,
        provider_for: Callable[[Bot], Optional[ProviderAdapter]],
    ) -> None:
        self.db = db
        self.config = config
        self.provider_for = provider_for

    async def current_summary(self, bot: Bot) -> Optional[HistorySummary]:
        if bot.history_summary is None:
            bot.history_summary = await asyncio.to_thread(self.db.get_history_summary, bot.id)
        return bot.history_summary

    async def context_for(self, bot: Bot, now: Optional[float] = None) -> str:
        """History block appended to the base prompt at send time."""
        summary = await self.current_summary(bot)
        recent = await asyncio.to_thread(self.db.get_recent_decisions, bot.id, self.config.context_entries)
        return format_history_context(summary, recent, now)

    async def raw_entries(self, bot: Bot) -> List[DecisionLogEntry]:
        """Entries not yet covered by the summary, oldest first."""
        summary = await self.current_summary(bot)
        after_id = summary.last_decision_id if summary else 0
        return await asyncio.to_thread(self.db.get_decisions_after, bot.id, after_id)

    async def maybe_summarize(self, bot: Bot, force: bool = False) -> Optional[HistorySummary]:
        """Run one summarization pass if due. Failures keep the previous summary."""
        blog = bot_logger(log, bot.id, bot.owner_id)
        previous = await self.current_summary(bot)
        covered_through = previous.last_decision_id if previous else 0
        history = await asyncio.to_thread(self.db.get_decisions_after, bot.id, 0)
        compress = plan_compression(history, self.config, covered_through, force=force)
        if not compress:
            return None

        provider = self.provider_for(bot)
        if provider is None:
            blog.warning("Summarization skipped: no provider configured")
            return None

        fresh = uncovered(compress, covered_through)
        prompt = build_summarization_prompt(bot, fresh, previous, self.config.personality_chars)
        blog.info(
            f"Summarizing {len(compress)} decisions, {len(fresh)} new "
            f"(~{estimate_history_tokens(history)} tokens logged, keeping {len(history) - len(compress)})"
        )
        try:
            text = await provider.send(prompt, timeout_sec=self.config.summary_timeout_sec)
        except ProviderError as exc:
            blog.warning(f"Summarization failed ({exc.kind}): {exc.message}")
            return None

        last_id = int(compress[-1].id or 0)
        # The log may have been wiped (paper reset) while the model was writing.
        if not await asyncio.to_thread(self.db.decision_exists, bot.id, last_id):
            blog.warning(f"Summary discarded: decision {last_id} no longer exists")
            return None

        summary = HistorySummary(
            bot_id=bot.id,
            text=text.strip(),
            count=len(compress),
            first_timestamp=compress[0].timestamp,
            last_timestamp=compress[-1].timestamp,
            last_decision_id=last_id,
            token_estimate=math.ceil(len(text) / CHARS_PER_TOKEN),
            generated_at=time.time(),
        )
        try:
            await asyncio.to_thread(self.db.upsert_history_summary, summary)
        except sqlite3.Error as exc:
            blog.warning(f"Summary write failed, keeping it in memory only: {exc}")
        bot.history_summary = summary
        blog.info(f"Summary now covers {summary.count} decisions (~{summary.token_estimate} tokens)")
        return summary
