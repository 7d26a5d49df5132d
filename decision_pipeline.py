#!/usr/bin/env python3
"""
Decision pipeline: bot state + market snapshot + history -> trade decisions.

Standard mode sends one prompt. Iterative mode lets the model call analytical
tools for a few bounded iterations before it must answer with decisions.
Provider and parse failures come back on DecisionResult.error; nothing here
raises for a bad model answer.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from arena_config import ArenaSettings
from decision_parser import Decision, ParseOutcome, parse_analysis_request, parse_decisions
from errors import ArenaError, ProviderError
from logging_utils import bot_logger, get_logger
from market_cache import MarketSnapshotCache
from models import Bot
from prompt_builder import build_full_prompt, build_iteration_prompt, render_base_prompt
from providers import ProviderAdapter
from tool_registry import ToolRegistry

log = get_logger("decision_pipeline")


@dataclass
class DecisionResult:
    bot_id: str
    base_prompt: str
    decisions: List[Decision] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    error: Optional[ArenaError] = None
    raw_text: str = ""
    iterations: int = 0
    analysis: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.error is None

    def fail(self, error: ArenaError) -> "DecisionResult":
        self.error = error
        self.decisions = []
        self.notes.append(error.as_note())
        return self


class DecisionPipeline:
    def __init__(
        self,
        settings: ArenaSettings,
        market: MarketSnapshotCache,
        provider_for: Callable[[Bot], Optional[ProviderAdapter]],
        history=None,
        tools: Optional[ToolRegistry] = None,
    ) -> None:
        self.settings = settings
        self.market = market
        self.provider_for = provider_for
        self.history = history
        self.tools = tools

    def permitted_symbols(self, bot: Bot) -> List[str]:
        """Bot override first, then the global list; empty means all symbols."""
        if bot.trading_symbols:
            return [s.upper() for s in bot.trading_symbols]
        return list(self.settings.trading.trading_symbols)

    async def run(self, bot: Bot, now: Optional[float] = None) -> DecisionResult:
        ts = time.time() if now is None else now
        blog = bot_logger(log, bot.id, bot.owner_id)

        tickers = self.market.filter(self.permitted_symbols(bot))
        base_prompt = render_base_prompt(bot, tickers, ts)
        result = DecisionResult(bot_id=bot.id, base_prompt=base_prompt)

        history_context = ""
        if self.history is not None:
            try:
                history_context = await self.history.context_for(bot, now=ts)
            except Exception as exc:
                blog.warning(f"History context unavailable, sending base prompt only: {exc}")
        full_prompt = build_full_prompt(base_prompt, history_context)

        provider = self.provider_for(bot)
        if provider is None:
            return result.fail(ProviderError(f"no provider configured ({bot.provider_id})", kind="missing_provider"))

        if bot.iterative and self.tools is not None:
            await self._run_iterative(bot, provider, full_prompt, len(tickers), result)
        else:
            await self._run_standard(provider, full_prompt, result)

        if result.error is not None:
            blog.warning(f"Decision failed ({result.error.kind}): {result.error.message}")
        else:
            blog.info(
                f"{len(result.decisions)} decision(s): "
                + (", ".join(d.label() for d in result.decisions) or "HOLD")
            )
        return result

    async def _run_standard(self, provider: ProviderAdapter, prompt: str, result: DecisionResult) -> None:
        result.iterations = 1
        try:
            text = await provider.send(prompt, timeout_sec=self.settings.decision.decision_timeout_sec)
        except ProviderError as err:
            result.fail(err)
            return
        self._apply_answer(text, result)

    def _apply_answer(self, text: str, result: DecisionResult) -> None:
        self._apply_outcome(text, parse_decisions(text), result)

    @staticmethod
    def _apply_outcome(text: str, outcome: ParseOutcome, result: DecisionResult) -> None:
        result.raw_text = text
        result.notes.extend(outcome.notes)
        if outcome.error is not None:
            result.fail(outcome.error)
            return
        result.decisions = outcome.decisions

    async def _run_iterative(
        self,
        bot: Bot,
        provider: ProviderAdapter,
        full_prompt: str,
        symbol_count: int,
        result: DecisionResult,
    ) -> None:
        cfg = self.settings.decision
        max_iterations = max(1, int(cfg.max_iterations))
        tool_names = self.tools.names() if self.tools else []

        for iteration in range(1, max_iterations + 1):
            is_final = iteration == max_iterations
            prompt = build_iteration_prompt(
                full_prompt,
                result.analysis,
                iteration,
                max_iterations,
                tool_names,
                symbol_count,
                cfg.max_prompt_chars,
            )
            result.iterations = iteration
            try:
                text = await provider.send(prompt, timeout_sec=cfg.iteration_timeout_sec)
            except ProviderError as err:
                result.fail(err)
                return

            request = parse_analysis_request(text)
            if request is None:
                outcome = parse_decisions(text)
                if outcome.error is not None and not is_final:
                    # Retry on the next iteration with the failure in the analysis history.
                    result.analysis.append(
                        {"iteration": iteration, "tool": None, "error": outcome.error.message, "response": (text or "")[:200]}
                    )
                    bot_logger(log, bot.id).warning(
                        f"Iteration {iteration}: could not parse as decisions or ANALYZE ({outcome.error.message})"
                    )
                    continue
                self._apply_outcome(text, outcome, result)
                return
            if is_final:
                result.raw_text = text
                result.notes.append(
                    f"Final iteration asked for tool '{request.tool}' instead of deciding; treated as HOLD"
                )
                return

            tool_result = await self.tools.call(request.tool, request.parameters, timeout_sec=cfg.tool_timeout_sec)
            result.analysis.append(
                {
                    "iteration": iteration,
                    "tool": request.tool,
                    "parameters": request.parameters,
                    "reasoning": request.reasoning,
                    "result": tool_result,
                }
            )
            bot_logger(log, bot.id).debug(f"Iteration {iteration}: tool {request.tool} ok={tool_result.get('ok')}")
