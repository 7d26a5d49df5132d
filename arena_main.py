#!/usr/bin/env python3
"""
Bot arena entrypoint.

Runs the orchestration engine (`run`) or applies one imperative command to
the durable store and exits. Commands that need prices (`turn`, `close`)
pull one market snapshot first.

Usage:
    python3 arena_main.py run
    python3 arena_main.py turn --bot bot_degen
    python3 arena_main.py pause bot_degen
    python3 arena_main.py close bot_degen pos_0123abcd
    python3 arena_main.py status --json
    python3 arena_main.py seed bots.example.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
import yaml

from analysis_tools import build_default_tools
from arena_config import ArenaSettings, load_settings
from arena_db import ArenaDB
from decision_pipeline import DecisionPipeline
from env_utils import resolve_secret
from errors import ArenaError
from exchanges import AsterdexAdapter, ExchangeAdapter
from history_manager import HistoryManager
from logging_utils import get_logger, setup_logging
from market_cache import MarketDataFeed, MarketSnapshotCache, load_symbol_precisions_sync
from models import Bot, ProviderConfig
from providers import ProviderAdapter, build_provider
from reconciler import PersistenceReconciler
from scheduler import BotRegistry, Scheduler
from state_events import StateBroadcaster, StateEvent
from trade_executor import TradeExecutor

log = get_logger("arena")


class ArenaRuntime:
    """Owns the store, HTTP session, adapters and the scheduler built on them."""

    def __init__(self, settings: ArenaSettings, db: Optional[ArenaDB] = None) -> None:
        self.settings = settings
        self.db = db or ArenaDB(settings.db_path)
        self.settings.apply_system_settings(self.db.get_system_settings())

        self.market = MarketSnapshotCache()
        self.broadcaster = StateBroadcaster()
        self.registry = BotRegistry()
        self._session: Optional[aiohttp.ClientSession] = None
        self._provider_configs: Dict[str, ProviderConfig] = {}
        self._providers: Dict[str, ProviderAdapter] = {}
        self._exchanges: Dict[str, ExchangeAdapter] = {}
        self._precisions: Optional[Dict[str, int]] = None

        self.feed = MarketDataFeed(settings.market, self.market)
        self.tools = build_default_tools(self.market, timeout_sec=settings.decision.tool_timeout_sec)
        self.reconciler = PersistenceReconciler(self.db, settings.trading)
        self.history = HistoryManager(self.db, settings.history, self.provider_for)
        self.executor = TradeExecutor(settings.trading, self.market, exchange_for=self.exchange_for)
        self.pipeline = DecisionPipeline(
            settings, self.market, self.provider_for, history=self.history, tools=self.tools
        )
        self.scheduler = Scheduler(
            settings,
            self.registry,
            self.pipeline,
            self.executor,
            self.reconciler,
            history=self.history,
            broadcaster=self.broadcaster,
            market=self.market,
            market_feed=self.feed,
        )

    # ------------------------------------------------------------ adapters
    def provider_for(self, bot: Bot) -> Optional[ProviderAdapter]:
        adapter = self._providers.get(bot.provider_id)
        if adapter is not None:
            return adapter
        config = self._provider_configs.get(bot.provider_id)
        if config is None:
            return None
        try:
            adapter = build_provider(config, session=self._session)
        except ValueError as exc:
            log.warning(f"Provider {config.id} unusable: {exc}")
            return None
        self._providers[bot.provider_id] = adapter
        return adapter

    def exchange_for(self, bot: Bot) -> Optional[ExchangeAdapter]:
        if not bot.is_real:
            return None
        adapter = self._exchanges.get(bot.id)
        if adapter is not None:
            return adapter
        api_key = resolve_secret(bot.exchange_key_env)
        api_secret = resolve_secret(bot.exchange_secret_env)
        if not api_key or not api_secret:
            log.warning(f"Bot {bot.id} is in real mode but has no exchange credentials")
            return None
        if self._precisions is None:
            self._precisions = load_symbol_precisions_sync(self.settings.market)
        adapter = AsterdexAdapter(
            api_key,
            api_secret,
            self.settings.exchange,
            precisions=self._precisions,
            log=get_logger(f"exchange.{bot.id}"),
            session=self._session,
        )
        self._exchanges[bot.id] = adapter
        return adapter

    # ------------------------------------------------------------ lifecycle
    async def open(self) -> List[Bot]:
        self._session = aiohttp.ClientSession()
        self.feed = MarketDataFeed(self.settings.market, self.market, session=self._session)
        self.scheduler.market_feed = self.feed
        self._provider_configs = await asyncio.to_thread(self.db.get_providers)
        bots = await self.reconciler.load_bots()
        for bot in bots:
            self.registry.add(bot)
        log.info(
            f"Initialized {len(bots)} bot(s) across {len(self.registry.owners())} owner(s), "
            f"{len(self._provider_configs)} provider(s)"
        )
        return bots

    async def close(self) -> None:
        for adapter in self._exchanges.values():
            await adapter.close()
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self.db.close()


# ============================================================================
# Commands
# ============================================================================

async def _log_event(event: StateEvent) -> None:
    if event.type == "turn_completed":
        entry = event.payload.get("entry") or {}
        for note in entry.get("notes") or []:
            log.info(f"[{event.bot_id}] {note}")


async def cmd_run(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    runtime.broadcaster.subscribe(_log_event)
    try:
        await runtime.open()
        await runtime.scheduler.start()
        await runtime.scheduler.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await runtime.scheduler.stop()
        await runtime.close()
    return 0


async def cmd_turn(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    runtime.broadcaster.subscribe(_log_event)
    try:
        await runtime.open()
        if not await runtime.feed.refresh():
            print("Market data unavailable; no turn run.")
            return 1
        if args.bot:
            entry = await runtime.scheduler.force_turn(args.bot)
            if entry is None:
                print(f"Turn for {args.bot} did not complete (see log).")
                return 1
            _print_entry(entry.to_dict())
        else:
            ran = await runtime.scheduler.run_cycle()
            print(f"Ran {len(ran)} turn(s): {', '.join(ran) or '-'}")
        await runtime.scheduler.wait_for_summaries()
        await runtime.reconciler.record_snapshots(runtime.registry.bots(), runtime.scheduler.clock())
        return 0
    finally:
        await runtime.close()


async def cmd_pause(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    try:
        await runtime.open()
        bot = await runtime.scheduler.set_paused(args.bot_id, args.command == "pause")
        print(f"{bot.name}: {'PAUSED' if bot.is_paused else 'ACTIVE'}")
        return 0
    finally:
        await runtime.close()


async def cmd_reset(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    try:
        await runtime.open()
        bot = await runtime.scheduler.reset(args.bot_id)
        print(f"{bot.name}: reset to ${bot.balance:,.2f}")
        return 0
    finally:
        await runtime.close()


async def cmd_close(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    try:
        await runtime.open()
        await runtime.feed.refresh()
        report = await runtime.scheduler.manual_close(args.bot_id, args.position_id)
        for note in report.notes:
            print(note)
        return 0 if report.executed else 1
    finally:
        await runtime.close()


async def cmd_summarize(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    try:
        await runtime.open()
        await runtime.scheduler.summarize(args.bot_id, force=not args.if_due)
        bot = runtime.registry.get(args.bot_id)
        summary = bot.history_summary if bot else None
        if summary is None:
            print("No summary produced.")
            return 1
        print(f"Summary covers {summary.count} decisions (~{summary.token_estimate} tokens):\n")
        print(summary.text)
        return 0
    finally:
        await runtime.close()


def _fmt_ts(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _print_entry(entry: Dict[str, Any]) -> None:
    print(f"Decision at {_fmt_ts(entry.get('timestamp'))} (success={entry.get('success')})")
    for decision in entry.get("decisions") or []:
        print(f"  {json.dumps(decision)}")
    for note in entry.get("notes") or []:
        print(f"  - {note}")


async def cmd_status(args, settings: ArenaSettings) -> int:
    runtime = ArenaRuntime(settings)
    try:
        bots = await runtime.open()
        latest = await asyncio.to_thread(runtime.db.latest_decision_timestamp)
        if args.json:
            print(json.dumps({"latest_decision_at": latest, "bots": [b.to_state() for b in bots]}, indent=2))
            return 0
        print(f"Bots: {len(bots)}   last decision: {_fmt_ts(latest)}")
        print(f"{'ID':<24} {'OWNER':<12} {'MODE':<6} {'STATE':<7} {'BALANCE':>12} {'VALUE':>12} {'OPEN':>4} {'TRADES':>6} {'WIN%':>6}")
        for bot in bots:
            state = "paused" if bot.is_paused else "active"
            print(
                f"{bot.id:<24} {bot.owner_id:<12} {bot.trading_mode:<6} {state:<7} "
                f"{bot.balance:>12,.2f} {bot.total_value:>12,.2f} {len(bot.open_positions):>4} "
                f"{bot.trade_count:>6} {bot.win_rate * 100:>5.1f}%"
            )
            for position in bot.open_positions:
                print(
                    f"    {position.id} {position.side} {position.symbol} ${position.size:,.2f} "
                    f"@ {position.entry_price:g} x{position.leverage:g}"
                )
        return 0
    finally:
        await runtime.close()


def _load_prompt(entry: Dict[str, Any], base_dir: Path) -> str:
    if entry.get("prompt_file"):
        return (base_dir / str(entry["prompt_file"])).read_text()
    return str(entry.get("prompt") or "")


def cmd_seed(args, settings: ArenaSettings) -> int:
    """Upsert providers and bots from a YAML file."""
    path = Path(args.file)
    if not path.exists():
        print(f"Seed file not found: {path}")
        return 1
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    db = ArenaDB(settings.db_path)
    try:
        for raw in data.get("providers") or []:
            db.upsert_provider(ProviderConfig.from_dict(raw))
            print(f"provider {raw.get('id')}")
        for raw in data.get("bots") or []:
            row = dict(raw)
            row["prompt"] = _load_prompt(raw, path.parent)
            row.pop("prompt_file", None)
            db.upsert_bot(row)
            print(f"bot {row.get('id')} (owner {row.get('owner_id')})")
        for key, value in (data.get("system_settings") or {}).items():
            db.set_system_setting(key, value)
            print(f"setting {key}={value}")
    finally:
        db.close()
    return 0


# ============================================================================
# Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bot arena orchestration engine")
    parser.add_argument("--config", default=None, help="Path to arena.yaml")
    parser.add_argument("--db", default=None, help="Override the SQLite database path")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--log-file", default=None, help="Also log to this file")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("run", help="Run the scheduler until interrupted")

    turn = subparsers.add_parser("turn", help="Run one turn tick (or one bot's turn) and exit")
    turn.add_argument("--bot", default=None, help="Run only this bot")

    for name, help_text in (("pause", "Pause a bot"), ("resume", "Resume a paused bot"), ("reset", "Reset a paper bot")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("bot_id")

    close = subparsers.add_parser("close", help="Manually close an open position")
    close.add_argument("bot_id")
    close.add_argument("position_id")

    status = subparsers.add_parser("status", help="Show bots and open positions")
    status.add_argument("--json", action="store_true")

    summarize = subparsers.add_parser("summarize", help="Compress a bot's older decision history")
    summarize.add_argument("bot_id")
    summarize.add_argument("--if-due", action="store_true", help="Only if budget and batch thresholds are met")

    seed = subparsers.add_parser("seed", help="Upsert providers/bots/settings from a YAML file")
    seed.add_argument("file")
    return parser


_ASYNC_COMMANDS = {
    "run": cmd_run,
    "turn": cmd_turn,
    "pause": cmd_pause,
    "resume": cmd_pause,
    "reset": cmd_reset,
    "close": cmd_close,
    "status": cmd_status,
    "summarize": cmd_summarize,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging("arena", log_file=args.log_file, verbose=args.verbose)

    settings = load_settings(args.config)
    if args.db:
        settings.db_path = str(Path(args.db).expanduser().resolve())

    if args.command == "seed":
        return cmd_seed(args, settings)
    try:
        return asyncio.run(_ASYNC_COMMANDS[args.command](args, settings))
    except KeyboardInterrupt:
        return 130
    except ArenaError as exc:
        print(exc.as_note())
        return 1


if __name__ == "__main__":
    sys.exit(main())
