#!/usr/bin/env python3
"""
Arena Database Module.

SQLite database with WAL mode, the system of record for bots, positions,
trades, decision logs, history summaries and portfolio snapshots. Writes are
per-entity; there are no multi-table transactions.

Accessed from worker threads (asyncio.to_thread) by the reconciler, the
history manager and the CLI.
"""

import json
import os
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from env_utils import ARENA_DB_PATH
from logging_utils import get_logger
from models import (
    ACTION_CLOSE,
    ACTION_OPEN,
    STATUS_OPEN,
    DecisionLogEntry,
    HistorySummary,
    PortfolioSnapshot,
    Position,
    ProviderConfig,
    Trade,
)

# Snapshot retention windows (seconds back from now).
SNAPSHOT_KEEP_ALL_SEC = 7 * 86400
SNAPSHOT_HOURLY_UNTIL_SEC = 30 * 86400
SNAPSHOT_DAILY_UNTIL_SEC = 90 * 86400


# =============================================================================
# Database Class
# =============================================================================

class ArenaDB:
    """
    SQLite store for the bot arena.

    Features:
    - WAL mode for concurrent readers (CLI, analytics) while the engine writes
    - Per-thread connections, reset after fork
    - Rows keyed by bot id and owner id
    """

    def __init__(self, db_path: str = ARENA_DB_PATH):
        self.db_path = Path(db_path)
        self.log = get_logger("arena_db")
        self._local = threading.local()
        self._conn_lock = threading.Lock()
        self._conn_by_tid: Dict[int, sqlite3.Connection] = {}
        self._conn_pid: int = int(os.getpid())
        self._init_db()

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a per-thread database connection."""
        tid = int(threading.get_ident())
        current_pid = int(os.getpid())
        with self._conn_lock:
            # After fork, inherited sqlite handles are unsafe in the child.
            if current_pid != int(self._conn_pid):
                for conn in self._conn_by_tid.values():
                    try:
                        conn.close()
                    except Exception:
                        pass
                self._conn_by_tid.clear()
                self._local.conn = None
                self._conn_pid = current_pid
            self._cleanup_stale_connections_locked()
            conn = self._conn_by_tid.get(tid)
            if conn is None:
                conn = self._open_connection()
                self._conn_by_tid[tid] = conn
                self._local.conn = conn
            return conn

    def _cleanup_stale_connections_locked(self) -> None:
        alive = {int(t.ident) for t in threading.enumerate() if t.ident is not None}
        stale_tids = [tid for tid in self._conn_by_tid.keys() if tid not in alive]
        for tid in stale_tids:
            conn = self._conn_by_tid.pop(tid, None)
            if conn is None:
                continue
            try:
                conn.close()
            except Exception:
                pass

    def close(self) -> None:
        with self._conn_lock:
            for conn in self._conn_by_tid.values():
                try:
                    conn.close()
                except Exception:
                    pass
            self._conn_by_tid.clear()

    def _init_db(self) -> None:
        """Initialize database with WAL mode and all tables."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS llm_providers (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    name TEXT NOT NULL,
                    provider_type TEXT NOT NULL,
                    endpoint TEXT NOT NULL DEFAULT '',
                    model TEXT NOT NULL DEFAULT '',
                    api_key_env TEXT,
                    max_tokens INTEGER NOT NULL DEFAULT 4096,
                    extra_json TEXT NOT NULL DEFAULT '{}',
                    updated_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bots (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    prompt TEXT NOT NULL DEFAULT '',
                    provider_id TEXT NOT NULL,
                    trading_mode TEXT NOT NULL DEFAULT 'paper',
                    is_paused INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    iterative INTEGER NOT NULL DEFAULT 0,
                    trading_symbols TEXT NOT NULL DEFAULT '[]',
                    exchange_key_env TEXT,
                    exchange_secret_env TEXT,
                    initial_balance REAL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_bots_owner ON bots(owner_id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS positions (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    owner_id TEXT,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    entry_price REAL NOT NULL,
                    size REAL NOT NULL,
                    leverage REAL NOT NULL,
                    stop_loss REAL,
                    take_profit REAL,
                    liquidation_price REAL NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'open',
                    opened_at REAL NOT NULL,
                    closed_at REAL,
                    exit_price REAL,
                    realized_pnl REAL,
                    unrealized_pnl REAL NOT NULL DEFAULT 0,
                    exchange_order_id TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_positions_bot_status ON positions(bot_id, status)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS trades (
                    id TEXT PRIMARY KEY,
                    bot_id TEXT NOT NULL,
                    owner_id TEXT,
                    position_id TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    action TEXT NOT NULL,
                    price REAL NOT NULL,
                    size REAL NOT NULL,
                    leverage REAL NOT NULL,
                    fee REAL NOT NULL DEFAULT 0,
                    pnl REAL NOT NULL DEFAULT 0,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_trades_bot_ts ON trades(bot_id, timestamp)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bot_decisions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bot_id TEXT NOT NULL,
                    owner_id TEXT,
                    prompt TEXT NOT NULL,
                    decisions_json TEXT NOT NULL DEFAULT '[]',
                    notes_json TEXT NOT NULL DEFAULT '[]',
                    success INTEGER NOT NULL DEFAULT 1,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_decisions_bot_id ON bot_decisions(bot_id, id)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS history_summaries (
                    bot_id TEXT PRIMARY KEY,
                    text TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    first_timestamp REAL NOT NULL,
                    last_timestamp REAL NOT NULL,
                    last_decision_id INTEGER NOT NULL,
                    token_estimate INTEGER NOT NULL DEFAULT 0,
                    generated_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bot_state_snapshots (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    bot_id TEXT NOT NULL,
                    owner_id TEXT,
                    balance REAL NOT NULL,
                    total_value REAL NOT NULL,
                    unrealized_pnl REAL NOT NULL,
                    realized_pnl REAL NOT NULL,
                    trade_count INTEGER NOT NULL,
                    win_rate REAL NOT NULL,
                    position_count INTEGER NOT NULL,
                    timestamp REAL NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_snapshots_bot_ts ON bot_state_snapshots(bot_id, timestamp)")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS arena_state (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    state_json TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS system_settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)
            conn.commit()

    # =========================================================================
    # Providers
    # =========================================================================

    def upsert_provider(self, provider: ProviderConfig) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO llm_providers (id, owner_id, name, provider_type, endpoint, model,
                                           api_key_env, max_tokens, extra_json, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    name = excluded.name,
                    provider_type = excluded.provider_type,
                    endpoint = excluded.endpoint,
                    model = excluded.model,
                    api_key_env = excluded.api_key_env,
                    max_tokens = excluded.max_tokens,
                    extra_json = excluded.extra_json,
                    updated_at = excluded.updated_at
                """,
                (
                    provider.id,
                    provider.owner_id,
                    provider.name,
                    provider.provider_type,
                    provider.endpoint,
                    provider.model,
                    provider.api_key_env,
                    int(provider.max_tokens),
                    json.dumps(provider.extra or {}),
                    time.time(),
                ),
            )
            conn.commit()

    def get_providers(self) -> Dict[str, ProviderConfig]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM llm_providers").fetchall()
        out: Dict[str, ProviderConfig] = {}
        for row in rows:
            data = dict(row)
            data["extra"] = _loads(data.pop("extra_json", "{}"), {})
            out[data["id"]] = ProviderConfig.from_dict(data)
        return out

    # =========================================================================
    # Bots
    # =========================================================================

    def upsert_bot(self, row: Dict[str, Any]) -> None:
        """Insert or update a bot configuration row."""
        now = time.time()
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO bots (id, owner_id, name, prompt, provider_id, trading_mode, is_paused,
                                  is_active, iterative, trading_symbols, exchange_key_env,
                                  exchange_secret_env, initial_balance, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    name = excluded.name,
                    prompt = excluded.prompt,
                    provider_id = excluded.provider_id,
                    trading_mode = excluded.trading_mode,
                    is_paused = excluded.is_paused,
                    is_active = excluded.is_active,
                    iterative = excluded.iterative,
                    trading_symbols = excluded.trading_symbols,
                    exchange_key_env = excluded.exchange_key_env,
                    exchange_secret_env = excluded.exchange_secret_env,
                    initial_balance = COALESCE(excluded.initial_balance, bots.initial_balance),
                    updated_at = excluded.updated_at
                """,
                (
                    row["id"],
                    row["owner_id"],
                    row.get("name") or row["id"],
                    row.get("prompt") or "",
                    row["provider_id"],
                    str(row.get("trading_mode") or "paper").lower(),
                    int(bool(row.get("is_paused", False))),
                    int(bool(row.get("is_active", True))),
                    int(bool(row.get("iterative", False))),
                    json.dumps([str(s).upper() for s in (row.get("trading_symbols") or [])]),
                    row.get("exchange_key_env"),
                    row.get("exchange_secret_env"),
                    row.get("initial_balance"),
                    now,
                    now,
                ),
            )
            conn.commit()

    def get_bots(self, active_only: bool = True) -> List[Dict[str, Any]]:
        """Bot rows ordered by owner then creation time."""
        sql = "SELECT * FROM bots"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " ORDER BY owner_id, created_at, id"
        with self._get_connection() as conn:
            rows = conn.execute(sql).fetchall()
        return [self._bot_row(r) for r in rows]

    def get_bot(self, bot_id: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM bots WHERE id = ?", (bot_id,)).fetchone()
        return self._bot_row(row) if row else None

    @staticmethod
    def _bot_row(row: sqlite3.Row) -> Dict[str, Any]:
        data = dict(row)
        data["is_paused"] = bool(data.get("is_paused"))
        data["is_active"] = bool(data.get("is_active"))
        data["iterative"] = bool(data.get("iterative"))
        data["trading_symbols"] = _loads(data.get("trading_symbols"), [])
        return data

    def set_bot_paused(self, bot_id: str, paused: bool) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE bots SET is_paused = ?, updated_at = ? WHERE id = ?",
                (int(bool(paused)), time.time(), bot_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    # =========================================================================
    # Positions & trades
    # =========================================================================

    def upsert_position(self, position: Position, owner_id: Optional[str] = None) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO positions (id, bot_id, owner_id, symbol, side, entry_price, size, leverage,
                                       stop_loss, take_profit, liquidation_price, status, opened_at,
                                       closed_at, exit_price, realized_pnl, unrealized_pnl, exchange_order_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    closed_at = excluded.closed_at,
                    exit_price = excluded.exit_price,
                    realized_pnl = excluded.realized_pnl,
                    unrealized_pnl = excluded.unrealized_pnl,
                    stop_loss = excluded.stop_loss,
                    take_profit = excluded.take_profit
                """,
                (
                    position.id,
                    position.bot_id,
                    owner_id,
                    position.symbol,
                    position.side,
                    position.entry_price,
                    position.size,
                    position.leverage,
                    position.stop_loss,
                    position.take_profit,
                    position.liquidation_price,
                    position.status,
                    position.opened_at,
                    position.closed_at,
                    position.exit_price,
                    position.realized_pnl,
                    position.unrealized_pnl,
                    position.exchange_order_id,
                ),
            )
            conn.commit()

    def update_unrealized_pnl(self, updates: Dict[str, float]) -> int:
        """Bulk mark-to-market write: {position_id: unrealized_pnl}."""
        if not updates:
            return 0
        with self._get_connection() as conn:
            cursor = conn.executemany(
                "UPDATE positions SET unrealized_pnl = ? WHERE id = ? AND status = 'open'",
                [(float(v), k) for k, v in updates.items()],
            )
            conn.commit()
            return cursor.rowcount

    def get_open_positions(self, bot_id: str) -> List[Position]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM positions WHERE bot_id = ? AND status = ? ORDER BY opened_at, id",
                (bot_id, STATUS_OPEN),
            ).fetchall()
        return [Position.from_dict(dict(r)) for r in rows]

    def insert_trade(self, trade: Trade, owner_id: Optional[str] = None) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO trades (id, bot_id, owner_id, position_id, symbol, side, action,
                                              price, size, leverage, fee, pnl, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.id,
                    trade.bot_id,
                    owner_id,
                    trade.position_id,
                    trade.symbol,
                    trade.side,
                    trade.action,
                    trade.price,
                    trade.size,
                    trade.leverage,
                    trade.fee,
                    trade.pnl,
                    trade.timestamp,
                ),
            )
            conn.commit()

    def get_recent_trades(self, bot_id: str, limit: int = 50) -> List[Trade]:
        """Most recent trades, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM trades WHERE bot_id = ? ORDER BY timestamp DESC, rowid DESC LIMIT ?",
                (bot_id, int(limit)),
            ).fetchall()
        return [Trade.from_dict(dict(r)) for r in rows]

    def get_trade_aggregates(self, bot_id: str) -> Dict[str, Any]:
        """Totals needed to rebuild balance and performance from the trade ledger."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS trade_rows,
                    COALESCE(SUM(CASE WHEN action = ? THEN size ELSE 0 END), 0) AS opened_margin,
                    COALESCE(SUM(CASE WHEN action = ? THEN size + pnl ELSE 0 END), 0) AS close_credits,
                    COALESCE(SUM(CASE WHEN action = ? THEN pnl ELSE 0 END), 0) AS realized_pnl,
                    COALESCE(SUM(CASE WHEN action = ? THEN 1 ELSE 0 END), 0) AS closes,
                    COALESCE(SUM(CASE WHEN action = ? AND pnl > 0 THEN 1 ELSE 0 END), 0) AS wins
                FROM trades WHERE bot_id = ?
                """,
                (ACTION_OPEN, ACTION_CLOSE, ACTION_CLOSE, ACTION_CLOSE, ACTION_CLOSE, bot_id),
            ).fetchone()
        return dict(row) if row else {}

    def get_last_close_times(self, bot_id: str) -> Dict[str, float]:
        """symbol -> timestamp of the latest close trade."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT symbol, MAX(timestamp) AS ts FROM trades
                WHERE bot_id = ? AND action = ?
                GROUP BY symbol
                """,
                (bot_id, ACTION_CLOSE),
            ).fetchall()
        return {str(r["symbol"]).upper(): float(r["ts"]) for r in rows}

    # =========================================================================
    # Decision log
    # =========================================================================

    def insert_decision(self, entry: DecisionLogEntry, owner_id: Optional[str] = None) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO bot_decisions (bot_id, owner_id, prompt, decisions_json, notes_json, success, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.bot_id,
                    owner_id,
                    entry.prompt,
                    json.dumps(entry.decisions, default=str),
                    json.dumps(entry.notes),
                    int(bool(entry.success)),
                    entry.timestamp,
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    @staticmethod
    def _decision_row(row: sqlite3.Row) -> DecisionLogEntry:
        return DecisionLogEntry(
            id=int(row["id"]),
            bot_id=str(row["bot_id"]),
            prompt=str(row["prompt"] or ""),
            decisions=_loads(row["decisions_json"], []),
            notes=_loads(row["notes_json"], []),
            success=bool(row["success"]),
            timestamp=float(row["timestamp"]),
        )

    def get_decisions_after(self, bot_id: str, after_id: int = 0, limit: Optional[int] = None) -> List[DecisionLogEntry]:
        """Decisions with id > after_id, oldest first."""
        sql = "SELECT * FROM bot_decisions WHERE bot_id = ? AND id > ? ORDER BY id ASC"
        params: List[Any] = [bot_id, int(after_id)]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self._get_connection() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._decision_row(r) for r in rows]

    def get_recent_decisions(self, bot_id: str, limit: int = 5) -> List[DecisionLogEntry]:
        """Most recent decisions, newest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM bot_decisions WHERE bot_id = ? ORDER BY id DESC LIMIT ?",
                (bot_id, int(limit)),
            ).fetchall()
        return [self._decision_row(r) for r in rows]

    def count_decisions(self, bot_id: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM bot_decisions WHERE bot_id = ?", (bot_id,)).fetchone()
        return int(row["n"]) if row else 0

    def decision_exists(self, bot_id: str, decision_id: int) -> bool:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM bot_decisions WHERE bot_id = ? AND id = ?", (bot_id, int(decision_id))
            ).fetchone()
        return row is not None

    def latest_decision_timestamp(self) -> Optional[float]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT MAX(timestamp) AS ts FROM bot_decisions").fetchone()
        if not row or row["ts"] is None:
            return None
        return float(row["ts"])

    # =========================================================================
    # History summaries
    # =========================================================================

    def upsert_history_summary(self, summary: HistorySummary) -> None:
        """Replace the bot's live summary (superseded, never appended)."""
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO history_summaries (bot_id, text, count, first_timestamp, last_timestamp,
                                               last_decision_id, token_estimate, generated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(bot_id) DO UPDATE SET
                    text = excluded.text,
                    count = excluded.count,
                    first_timestamp = excluded.first_timestamp,
                    last_timestamp = excluded.last_timestamp,
                    last_decision_id = excluded.last_decision_id,
                    token_estimate = excluded.token_estimate,
                    generated_at = excluded.generated_at
                """,
                (
                    summary.bot_id,
                    summary.text,
                    int(summary.count),
                    summary.first_timestamp,
                    summary.last_timestamp,
                    int(summary.last_decision_id),
                    int(summary.token_estimate),
                    summary.generated_at,
                ),
            )
            conn.commit()

    def get_history_summary(self, bot_id: str) -> Optional[HistorySummary]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM history_summaries WHERE bot_id = ?", (bot_id,)).fetchone()
        return HistorySummary.from_dict(dict(row)) if row else None

    # =========================================================================
    # Snapshots & settings
    # =========================================================================

    def insert_snapshot(self, snap: PortfolioSnapshot, owner_id: Optional[str] = None) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO bot_state_snapshots (bot_id, owner_id, balance, total_value, unrealized_pnl,
                                                 realized_pnl, trade_count, win_rate, position_count, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    snap.bot_id,
                    owner_id,
                    snap.balance,
                    snap.total_value,
                    snap.unrealized_pnl,
                    snap.realized_pnl,
                    int(snap.trade_count),
                    snap.win_rate,
                    int(snap.position_count),
                    snap.timestamp,
                ),
            )
            conn.commit()

    def get_snapshots(self, bot_id: str, limit: int = 300) -> List[Dict[str, Any]]:
        """Latest snapshots, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM (
                    SELECT * FROM bot_state_snapshots WHERE bot_id = ? ORDER BY timestamp DESC, id DESC LIMIT ?
                ) ORDER BY timestamp ASC, id ASC
                """,
                (bot_id, int(limit)),
            ).fetchall()
        return [dict(r) for r in rows]

    def prune_snapshots(
        self,
        now: Optional[float] = None,
        keep_all_sec: float = SNAPSHOT_KEEP_ALL_SEC,
        hourly_until_sec: float = SNAPSHOT_HOURLY_UNTIL_SEC,
        daily_until_sec: float = SNAPSHOT_DAILY_UNTIL_SEC,
    ) -> Dict[str, int]:
        """
        Thin out old snapshot rows per bot.

        Newer than keep_all_sec: untouched. Up to hourly_until_sec: first row
        per bot per hour. Up to daily_until_sec: first row per bot per day.
        Anything older is deleted.
        """
        ts = time.time() if now is None else float(now)
        keep_all_before = ts - keep_all_sec
        hourly_before = ts - hourly_until_sec
        daily_before = ts - daily_until_sec
        thin = """
            DELETE FROM bot_state_snapshots
            WHERE timestamp >= ? AND timestamp < ?
              AND id NOT IN (
                SELECT MIN(id) FROM bot_state_snapshots
                WHERE timestamp >= ? AND timestamp < ?
                GROUP BY bot_id, CAST(timestamp / ? AS INTEGER)
              )
        """
        with self._get_connection() as conn:
            old = conn.execute("DELETE FROM bot_state_snapshots WHERE timestamp < ?", (daily_before,)).rowcount
            daily = conn.execute(
                thin, (daily_before, hourly_before, daily_before, hourly_before, 86400)
            ).rowcount
            hourly = conn.execute(
                thin, (hourly_before, keep_all_before, hourly_before, keep_all_before, 3600)
            ).rowcount
            conn.commit()
        return {"old": old, "daily": daily, "hourly": hourly, "total": old + daily + hourly}

    def save_arena_state(self, state: Dict[str, Any]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO arena_state (id, state_json, updated_at) VALUES (1, ?, ?)
                ON CONFLICT(id) DO UPDATE SET state_json = excluded.state_json, updated_at = excluded.updated_at
                """,
                (json.dumps(state, default=str), time.time()),
            )
            conn.commit()

    def load_arena_state(self) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT state_json FROM arena_state WHERE id = 1").fetchone()
        if not row:
            return None
        state = _loads(row["state_json"], None)
        return state if isinstance(state, dict) else None

    def get_system_settings(self) -> Dict[str, str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM system_settings").fetchall()
        return {str(r["key"]): str(r["value"]) for r in rows}

    def set_system_setting(self, key: str, value: Any) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO system_settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
                """,
                (str(key), str(value), time.time()),
            )
            conn.commit()

    def reset_bot_data(self, bot_id: str) -> None:
        """Delete a bot's ledger (paper reset). Bot configuration is kept."""
        with self._get_connection() as conn:
            for table in ("positions", "trades", "bot_decisions", "history_summaries", "bot_state_snapshots"):
                conn.execute(f"DELETE FROM {table} WHERE bot_id = ?", (bot_id,))
            conn.commit()


def _loads(raw: Any, default: Any) -> Any:
    if raw is None or raw == "":
        return default
    try:
        return json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return default
