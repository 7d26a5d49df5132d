#!/usr/bin/env python3
"""
Scheduler: bot registry, turn/refresh timers and imperative commands.

Fairness is per owner. Each turn tick walks owners round-robin and, within
an owner, rotates through that owner's eligible bots, so an owner with many
bots cannot crowd out an owner with one. Turns run one at a time; a single
bot never has two turns in flight.

A bot's turn never takes the loop down with it: a decision pipeline that
overruns the turn timeout degrades to a logged HOLD entry, exchange failures
abort that bot's turn with its prior state intact, and anything unexpected
is logged as a SchedulerFault. The timeout never cancels trade execution.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Iterable, List, Optional, Set

from arena_config import ArenaSettings
from decision_pipeline import DecisionPipeline
from errors import ExchangeError, SchedulerFault, ValidationError
from history_manager import HistoryManager
from logging_utils import bot_logger, get_logger
from market_cache import MarketDataFeed, MarketSnapshotCache
from models import Bot, DecisionLogEntry
from reconciler import PersistenceReconciler
from state_events import EVENT_BOT_STATE, EVENT_TURN_COMPLETED, StateBroadcaster, StateEvent
from trade_executor import ExecutionReport, TradeExecutor

log = get_logger("scheduler")


class BotRegistry:
    """Owner id -> ordered bot ids, with an owner cursor and one bot cursor per owner."""

    def __init__(self, bots: Iterable[Bot] = ()) -> None:
        self._bots: Dict[str, Bot] = {}
        self._owners: List[str] = []
        self._by_owner: Dict[str, List[str]] = {}
        self._owner_cursor = 0
        self._bot_cursor: Dict[str, int] = {}
        for bot in bots:
            self.add(bot)

    def __len__(self) -> int:
        return len(self._bots)

    def __contains__(self, bot_id: object) -> bool:
        return bot_id in self._bots

    def add(self, bot: Bot) -> None:
        """Register or replace a bot; replacing keeps its place in rotation."""
        existing = self._bots.get(bot.id)
        if existing is not None and existing.owner_id != bot.owner_id:
            self.remove(bot.id)
        self._bots[bot.id] = bot
        if bot.owner_id not in self._by_owner:
            self._owners.append(bot.owner_id)
            self._by_owner[bot.owner_id] = []
            self._bot_cursor[bot.owner_id] = 0
        ids = self._by_owner[bot.owner_id]
        if bot.id not in ids:
            ids.append(bot.id)

    def remove(self, bot_id: str) -> Optional[Bot]:
        bot = self._bots.pop(bot_id, None)
        if bot is None:
            return None
        ids = self._by_owner.get(bot.owner_id, [])
        if bot_id in ids:
            idx = ids.index(bot_id)
            ids.remove(bot_id)
            if self._bot_cursor.get(bot.owner_id, 0) > idx:
                self._bot_cursor[bot.owner_id] -= 1
        if not ids:
            pos = self._owners.index(bot.owner_id)
            self._owners.remove(bot.owner_id)
            self._by_owner.pop(bot.owner_id, None)
            self._bot_cursor.pop(bot.owner_id, None)
            if self._owner_cursor > pos:
                self._owner_cursor -= 1
            if self._owners:
                self._owner_cursor %= len(self._owners)
            else:
                self._owner_cursor = 0
        else:
            self._bot_cursor[bot.owner_id] %= len(ids)
        return bot

    def get(self, bot_id: str) -> Optional[Bot]:
        return self._bots.get(bot_id)

    def bots(self) -> List[Bot]:
        return [self._bots[bid] for owner in self._owners for bid in self._by_owner[owner]]

    def owners(self) -> List[str]:
        return list(self._owners)

    def bots_for(self, owner_id: str) -> List[Bot]:
        return [self._bots[bid] for bid in self._by_owner.get(owner_id, [])]

    @staticmethod
    def is_eligible(bot: Bot) -> bool:
        return bot.is_active and not bot.is_paused and not bot.is_busy

    def active_owners(self) -> List[str]:
        """Owners with at least one active, unpaused bot."""
        return [
            owner for owner in self._owners
            if any(b.is_active and not b.is_paused for b in self.bots_for(owner))
        ]

    def _pick_for_owner(self, owner_id: str, exclude: Set[str]) -> Optional[Bot]:
        ids = self._by_owner.get(owner_id) or []
        start = self._bot_cursor.get(owner_id, 0)
        for step in range(len(ids)):
            idx = (start + step) % len(ids)
            bot = self._bots[ids[idx]]
            if bot.id in exclude or not self.is_eligible(bot):
                continue
            self._bot_cursor[owner_id] = (idx + 1) % len(ids)
            return bot
        return None

    def next_bot(self, exclude: Optional[Iterable[str]] = None) -> Optional[Bot]:
        """Next eligible bot, advancing the owner cursor past the owner it came from."""
        skip = set(exclude or ())
        count = len(self._owners)
        for step in range(count):
            idx = (self._owner_cursor + step) % count
            bot = self._pick_for_owner(self._owners[idx], skip)
            if bot is not None:
                self._owner_cursor = (idx + 1) % count
                return bot
        return None


class Scheduler:
    def __init__(
        self,
        settings: ArenaSettings,
        registry: BotRegistry,
        pipeline: DecisionPipeline,
        executor: TradeExecutor,
        reconciler: PersistenceReconciler,
        history: Optional[HistoryManager] = None,
        broadcaster: Optional[StateBroadcaster] = None,
        market: Optional[MarketSnapshotCache] = None,
        market_feed: Optional[MarketDataFeed] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.pipeline = pipeline
        self.executor = executor
        self.reconciler = reconciler
        self.history = history
        self.broadcaster = broadcaster or StateBroadcaster()
        self.market = market if market is not None else executor.market
        self.market_feed = market_feed
        self.clock = clock

        self._locks: Dict[str, asyncio.Lock] = {}
        self._summaries: Dict[str, asyncio.Task] = {}
        self._loops: List[asyncio.Task] = []
        self._running = False
        self._last_snapshot_at = 0.0
        self._last_cleanup_at = 0.0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_for(self, bot_id: str) -> asyncio.Lock:
        lock = self._locks.get(bot_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[bot_id] = lock
        return lock

    def _require(self, bot_id: str) -> Bot:
        bot = self.registry.get(bot_id)
        if bot is None:
            raise ValidationError(f"Bot {bot_id} not found", kind="unknown_bot")
        return bot

    async def _publish(self, bot: Bot, event_type: str = EVENT_BOT_STATE, **extra) -> None:
        payload = {"state": bot.to_state()}
        payload.update(extra)
        await self.broadcaster.publish(
            StateEvent(type=event_type, bot_id=bot.id, owner_id=bot.owner_id, payload=payload, timestamp=self.clock())
        )

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def run_turn(self, bot: Bot) -> Optional[DecisionLogEntry]:
        """One full decision cycle for a bot. Never raises."""
        blog = bot_logger(log, bot.id, bot.owner_id)
        lock = self._lock_for(bot.id)
        if lock.locked():
            blog.info("Turn skipped: previous turn still in flight")
            return None

        async with lock:
            bot.is_busy = True
            try:
                return await self._execute_turn(bot)
            except ExchangeError as exc:
                blog.warning(f"Turn aborted, keeping prior state: {exc.as_note()}")
                return None
            except Exception as exc:
                fault = SchedulerFault(f"turn for {bot.id} failed: {exc}")
                blog.error(fault.as_note(), exc_info=True)
                return None
            finally:
                bot.is_busy = False

    async def _execute_turn(self, bot: Bot) -> DecisionLogEntry:
        now = self.clock()
        notes: List[str] = []

        if bot.is_real:
            sync = await self.executor.sync_real_account(bot, now)
            notes.extend(sync.notes)
            await self.reconciler.record_execution(bot, sync)

        # Only the decision pipeline is bounded; execution and persistence always complete.
        timeout = float(self.settings.scheduler.turn_timeout_sec)
        try:
            result = await asyncio.wait_for(self.pipeline.run(bot, now), timeout=timeout)
        except asyncio.TimeoutError:
            bot_logger(log, bot.id, bot.owner_id).error(f"Turn timed out after {timeout:g}s")
            notes.append(f"Turn timed out after {timeout:g}s; treated as HOLD.")
            entry = DecisionLogEntry(bot_id=bot.id, prompt="", notes=notes, success=False, timestamp=now)
            await self._log_entry(bot, entry)
            return entry

        report = await self.executor.apply(bot, result.decisions, self.pipeline.permitted_symbols(bot), now)
        notes.extend(result.notes)
        notes.extend(report.notes)

        entry = DecisionLogEntry(
            bot_id=bot.id,
            prompt=result.base_prompt,
            decisions=[d.to_dict() for d in result.decisions],
            notes=notes,
            success=result.success,
            timestamp=now,
        )
        await self.reconciler.record_execution(bot, report)
        await self._log_entry(bot, entry)
        self._schedule_summarization(bot)
        bot_logger(log, bot.id, bot.owner_id).info(
            f"Turn complete: {report.executed} executed, {len(report.rejected)} rejected"
        )
        return entry

    async def _log_entry(self, bot: Bot, entry: DecisionLogEntry) -> None:
        await self.reconciler.record_decision(bot, entry)
        bot.remember_log(entry, self.settings.trading.max_bot_logs)
        bot.last_decision_at = entry.timestamp
        await self._publish(bot, EVENT_TURN_COMPLETED, entry=entry.to_dict())

    async def run_cycle(self) -> List[str]:
        """One turn tick: every eligible bot once, owners interleaved."""
        if self.market is not None and len(self.market.snapshot) == 0:
            log.warning("Market data not loaded yet, skipping trading turn")
            return []
        cap = int(self.settings.scheduler.max_turns_per_tick or 0)
        ran: List[str] = []
        while not cap or len(ran) < cap:
            bot = self.registry.next_bot(exclude=ran)
            if bot is None:
                break
            ran.append(bot.id)
            await self.run_turn(bot)
        if ran:
            log.info(f"Turn tick complete: {len(ran)} bot(s) across {len(self.registry.active_owners())} owner(s)")
        return ran

    def needs_immediate_turn(self, now: Optional[float] = None) -> bool:
        """True when no bot has decided within the last turn interval."""
        ts = self.clock() if now is None else now
        interval = self.settings.scheduler.turn_interval_ms / 1000.0
        latest = max((b.last_decision_at for b in self.registry.bots() if b.last_decision_at), default=None)
        return latest is None or ts - latest >= interval

    # ------------------------------------------------------------------
    # Summarization
    # ------------------------------------------------------------------

    def _schedule_summarization(self, bot: Bot, force: bool = False) -> Optional[asyncio.Task]:
        if self.history is None:
            return None
        running = self._summaries.get(bot.id)
        if running is not None and not running.done():
            return running
        task = asyncio.create_task(self._summarize(bot, force))
        self._summaries[bot.id] = task
        return task

    async def _summarize(self, bot: Bot, force: bool) -> None:
        try:
            await self.history.maybe_summarize(bot, force=force)
        except Exception as exc:
            bot_logger(log, bot.id, bot.owner_id).warning(f"Summarization pass failed: {exc}", exc_info=True)

    async def _cancel_summarization(self, bot: Bot) -> None:
        task = self._summaries.pop(bot.id, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        bot_logger(log, bot.id, bot.owner_id).info("Cancelled in-flight summarization")

    async def wait_for_summaries(self) -> None:
        pending = [t for t in self._summaries.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_tick(self) -> None:
        """Market refresh, mark-to-market (or exchange sync), snapshots, broadcast."""
        if self.market_feed is not None:
            await self.market_feed.refresh()
        now = self.clock()

        for bot in self.registry.bots():
            if bot.is_busy:
                continue
            blog = bot_logger(log, bot.id, bot.owner_id)
            try:
                if bot.is_real:
                    report = await self.executor.sync_real_account(bot, now)
                    for note in report.notes:
                        blog.info(note)
                    await self.reconciler.record_execution(bot, report)
                else:
                    updates = self.executor.mark_to_market(bot, now)
                    await self.reconciler.record_mark_to_market(updates)
            except ExchangeError as exc:
                blog.warning(f"Exchange sync failed, keeping prior state: {exc.message}")
            except Exception as exc:
                blog.error(f"Portfolio refresh failed: {exc}", exc_info=True)

        interval = float(self.settings.scheduler.snapshot_interval_sec)
        if now - self._last_snapshot_at >= interval:
            await self.reconciler.record_snapshots(self.registry.bots(), now)
            self._last_snapshot_at = now

        cleanup_every = float(self.settings.scheduler.snapshot_cleanup_interval_sec)
        if cleanup_every > 0 and now - self._last_cleanup_at >= cleanup_every:
            await self.reconciler.prune_snapshots(now)
            self._last_cleanup_at = now

        for bot in self.registry.bots():
            await self._publish(bot)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _turn_loop(self, run_now: bool) -> None:
        interval = self.settings.scheduler.turn_interval_ms / 1000.0
        if run_now:
            log.info("Executing first trading turn immediately")
            delay = 0.0
        else:
            log.info("Recent decisions detected, waiting for next interval")
            delay = interval
        while self._running:
            await asyncio.sleep(delay)
            if not self._running:
                break
            started = time.monotonic()
            await self.run_cycle()
            took = time.monotonic() - started
            if took > interval:
                log.warning(f"Turn tick took {took:.1f}s, longer than the {interval:g}s interval")
            delay = max(0.0, interval - took)

    async def _refresh_loop(self) -> None:
        interval = max(0.1, self.settings.scheduler.refresh_interval_ms / 1000.0)
        while self._running:
            await asyncio.sleep(interval)
            if not self._running:
                break
            try:
                await self.refresh_tick()
            except Exception as exc:
                log.error(f"Refresh tick failed: {exc}", exc_info=True)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self.refresh_tick()
        run_now = self.needs_immediate_turn()
        self._loops = [
            asyncio.create_task(self._refresh_loop()),
            asyncio.create_task(self._turn_loop(run_now)),
        ]
        sched = self.settings.scheduler
        log.info(
            f"Trading intervals started (refresh: {sched.refresh_interval_ms}ms, turn: {sched.turn_interval_ms}ms) "
            f"for {len(self.registry)} bot(s)"
        )

    async def wait(self) -> None:
        if self._loops:
            await asyncio.gather(*self._loops)

    async def stop(self) -> None:
        self._running = False
        for task in self._loops:
            task.cancel()
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        self._loops = []
        await self.wait_for_summaries()
        log.info("Scheduler stopped")

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def set_paused(self, bot_id: str, paused: bool) -> Bot:
        bot = self._require(bot_id)
        bot.is_paused = bool(paused)
        await self.reconciler.record_pause(bot)
        log.info(f"Bot {bot.name} {'PAUSED' if bot.is_paused else 'RESUMED'}")
        await self._publish(bot)
        return bot

    async def pause(self, bot_id: str) -> Bot:
        return await self.set_paused(bot_id, True)

    async def resume(self, bot_id: str) -> Bot:
        return await self.set_paused(bot_id, False)

    async def toggle_pause(self, bot_id: str) -> Bot:
        bot = self._require(bot_id)
        return await self.set_paused(bot_id, not bot.is_paused)

    async def force_turn(self, bot_id: str) -> Optional[DecisionLogEntry]:
        bot = self._require(bot_id)
        if bot.is_paused:
            raise ValidationError(f"Bot {bot.name} is paused")
        return await self.run_turn(bot)

    async def manual_close(self, bot_id: str, position_id: str) -> ExecutionReport:
        """Close one position outside a turn; waits for any turn in flight."""
        bot = self._require(bot_id)
        async with self._lock_for(bot.id):
            report = ExecutionReport(bot_id=bot.id)
            await self.executor.close_position(
                bot, report, position_id=position_id, now=self.clock(), reason="manual close"
            )
            await self.reconciler.record_execution(bot, report)
        await self._publish(bot)
        return report

    async def reset(self, bot_id: str) -> Bot:
        """Paper bots only; raises ValidationError for real-mode bots."""
        bot = self._require(bot_id)
        async with self._lock_for(bot.id):
            await self._cancel_summarization(bot)
            self.executor.reset_bot(bot)
            bot.record_value(self.clock(), self.settings.trading.max_value_history)
            await self.reconciler.record_reset(bot)
        log.info(f"Bot {bot.name} RESET to ${bot.initial_balance:.2f}")
        await self._publish(bot)
        return bot

    async def summarize(self, bot_id: str, force: bool = True) -> None:
        bot = self._require(bot_id)
        task = self._schedule_summarization(bot, force=force)
        if task is not None:
            await task

    async def reload_bots(self) -> List[str]:
        """Re-read bot rows; new bots join, removed/deactivated bots leave rotation."""
        loaded = await self.reconciler.load_bots()
        seen = set()
        for fresh in loaded:
            seen.add(fresh.id)
            current = self.registry.get(fresh.id)
            if current is None:
                self.registry.add(fresh)
                log.info(f"Loaded bot {fresh.name} ({fresh.trading_mode} mode)")
                continue
            current.name = fresh.name
            current.prompt = fresh.prompt
            current.provider_id = fresh.provider_id
            current.is_paused = fresh.is_paused
            current.iterative = fresh.iterative
            current.trading_symbols = fresh.trading_symbols
            current.exchange_key_env = fresh.exchange_key_env
            current.exchange_secret_env = fresh.exchange_secret_env
        for bot in list(self.registry.bots()):
            if bot.id not in seen:
                self.registry.remove(bot.id)
                log.info(f"Removed bot {bot.name} from rotation")
        return sorted(seen)
