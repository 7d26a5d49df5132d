#!/usr/bin/env python3
"""Decision pipeline: standard and iterative modes with fake providers."""

import asyncio
import sys
from pathlib import Path
from typing import List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from arena_config import ArenaSettings
from decision_pipeline import DecisionPipeline
from errors import ParseError, ProviderError
from market_cache import MarketSnapshotCache
from models import Bot, MarketTicker
from tool_registry import ToolRegistry

NOW = 1_700_000_000.0


class _ScriptedProvider:
    """Returns canned answers in order and records every prompt."""

    def __init__(self, answers: List[object]) -> None:
        self.answers = list(answers)
        self.prompts: List[str] = []

    async def send(self, prompt: str, timeout_sec: float) -> str:
        self.prompts.append(prompt)
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


class _FakeHistory:
    async def context_for(self, bot, now=None) -> str:
        return "\n\n=== HISTORY BLOCK ==="


def _market() -> MarketSnapshotCache:
    cache = MarketSnapshotCache()
    cache.replace(
        [MarketTicker(symbol="BTCUSDT", price=70_000.0), MarketTicker(symbol="ETHUSDT", price=2_000.0)],
        now=NOW,
    )
    return cache


def _bot(**kw) -> Bot:
    return Bot(id="bot_a", owner_id="alice", name="A", prompt="Trade well.", provider_id="grok",
               balance=1_000.0, **kw)


def _pipeline(provider, history=None, tools=None, settings=None) -> DecisionPipeline:
    return DecisionPipeline(settings or ArenaSettings(), _market(), lambda bot: provider, history=history, tools=tools)


def test_standard_mode_parses_decisions_and_keeps_base_prompt_clean() -> None:
    provider = _ScriptedProvider(['[{"action": "LONG", "symbol": "BTCUSDT", "size": 100, "leverage": 5}]'])
    pipeline = _pipeline(provider, history=_FakeHistory())

    result = asyncio.run(pipeline.run(_bot(), NOW))

    assert result.success
    assert result.iterations == 1
    assert result.decisions[0].symbol == "BTCUSDT"
    assert "HISTORY BLOCK" in provider.prompts[0]
    assert "HISTORY BLOCK" not in result.base_prompt
    assert provider.prompts[0].startswith(result.base_prompt)


def test_non_json_answer_is_a_parse_error_with_no_decisions() -> None:
    provider = _ScriptedProvider(["I'd rather not say."])

    result = asyncio.run(_pipeline(provider).run(_bot(), NOW))

    assert not result.success
    assert isinstance(result.error, ParseError)
    assert result.decisions == []
    assert result.notes[0].startswith("ParseError:")
    assert result.raw_text == "I'd rather not say."


def test_provider_failure_is_reported_not_raised() -> None:
    provider = _ScriptedProvider([ProviderError("HTTP 503", kind="http_error")])

    result = asyncio.run(_pipeline(provider).run(_bot(), NOW))

    assert result.error.kind == "http_error"
    assert result.notes == ["ProviderError: HTTP 503"]


def test_missing_provider() -> None:
    pipeline = DecisionPipeline(ArenaSettings(), _market(), lambda bot: None)

    result = asyncio.run(pipeline.run(_bot(), NOW))

    assert result.error.kind == "missing_provider"


def test_permitted_symbols_filter_market_data() -> None:
    settings = ArenaSettings()
    settings.trading.trading_symbols = ["BTCUSDT", "ETHUSDT"]
    provider = _ScriptedProvider(["[]"])
    pipeline = _pipeline(provider, settings=settings)

    bot = _bot(trading_symbols=["ethusdt"])
    result = asyncio.run(pipeline.run(bot, NOW))

    assert pipeline.permitted_symbols(bot) == ["ETHUSDT"]
    assert pipeline.permitted_symbols(_bot()) == ["BTCUSDT", "ETHUSDT"]
    assert "ETHUSDT: $2000" in result.base_prompt
    assert "BTCUSDT: $" not in result.base_prompt


def test_iterative_mode_calls_tools_then_decides() -> None:
    calls = []

    def echo(params):
        calls.append(params)
        return {"echo": params["value"]}

    tools = ToolRegistry({"echo": echo})
    provider = _ScriptedProvider(
        [
            '{"action": "ANALYZE", "tool": "echo", "parameters": {"value": 7}, "reasoning": "check"}',
            '[{"action": "SHORT", "symbol": "ETHUSDT", "size": 60, "leverage": 2}]',
        ]
    )
    pipeline = _pipeline(provider, tools=tools)

    result = asyncio.run(pipeline.run(_bot(iterative=True), NOW))

    assert result.success
    assert result.iterations == 2
    assert calls == [{"value": 7}]
    assert result.analysis[0]["result"] == {"ok": True, "result": {"echo": 7}}
    assert '"echo": 7' in provider.prompts[1]
    assert result.decisions[0].action == "SHORT"


def test_final_iteration_tool_request_becomes_hold() -> None:
    settings = ArenaSettings()
    settings.decision.max_iterations = 2
    tools = ToolRegistry({"echo": lambda params: params})
    request = '{"action": "ANALYZE", "tool": "echo", "parameters": {}, "reasoning": "more"}'
    provider = _ScriptedProvider([request, request])

    result = asyncio.run(_pipeline(provider, tools=tools, settings=settings).run(_bot(iterative=True), NOW))

    assert result.success
    assert result.decisions == []
    assert result.iterations == 2
    assert "FINAL ITERATION" in provider.prompts[-1]
    assert result.notes == ["Final iteration asked for tool 'echo' instead of deciding; treated as HOLD"]


def test_unknown_tool_result_is_fed_back() -> None:
    tools = ToolRegistry({})
    provider = _ScriptedProvider(
        ['{"action": "ANALYZE", "tool": "astrology", "parameters": {}}', "[]"]
    )

    result = asyncio.run(_pipeline(provider, tools=tools).run(_bot(iterative=True), NOW))

    assert result.analysis[0]["result"]["ok"] is False
    assert "unknown tool" in provider.prompts[1]
    assert result.decisions == []


def test_unparseable_iteration_is_retried_with_parse_error_in_history() -> None:
    tools = ToolRegistry({"echo": lambda params: params})
    provider = _ScriptedProvider(
        [
            "Let me think about this first...",
            '[{"action": "LONG", "symbol": "BTCUSDT", "size": 100, "leverage": 5}]',
        ]
    )

    result = asyncio.run(_pipeline(provider, tools=tools).run(_bot(iterative=True), NOW))

    assert result.success
    assert result.iterations == 2
    assert [d.action for d in result.decisions] == ["LONG"]
    assert result.analysis[0]["tool"] is None
    assert "[Iteration 1 - Parse Error]" in provider.prompts[1]
    assert "Let me think about this first..." in provider.prompts[1]


def test_unparseable_final_iteration_is_a_parse_error() -> None:
    settings = ArenaSettings()
    settings.decision.max_iterations = 2
    tools = ToolRegistry({"echo": lambda params: params})
    provider = _ScriptedProvider(["still thinking", "no idea"])

    result = asyncio.run(_pipeline(provider, tools=tools, settings=settings).run(_bot(iterative=True), NOW))

    assert not result.success
    assert isinstance(result.error, ParseError)
    assert result.iterations == 2
    assert result.decisions == []
