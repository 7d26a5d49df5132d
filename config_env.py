"""Apply env overrides to arena.yaml config."""

from __future__ import annotations

from copy import deepcopy
import os
from typing import Any, Dict, Tuple

from env_utils import (
    env_present,
    env_str,
    env_int,
    env_float,
    env_bool,
    env_list,
    env_json,
)


PathKey = Tuple[str, ...]

# Keep env overrides focused on deployment plumbing and a few operator knobs.
# Trading guardrails come from arena.yaml or the system_settings table.
ENV_OVERRIDES: Dict[str, Tuple[PathKey, str]] = {
    "ARENA_DB_PATH": (("config", "db_path"), "str"),
    "ARENA_TURN_INTERVAL_MS": (("config", "scheduler", "turn_interval_ms"), "int"),
    "ARENA_REFRESH_INTERVAL_MS": (("config", "scheduler", "refresh_interval_ms"), "int"),
    "ARENA_TURN_TIMEOUT_SEC": (("config", "scheduler", "turn_timeout_sec"), "float"),
    "ARENA_TRADING_SYMBOLS": (("config", "trading", "trading_symbols"), "list"),
    "ARENA_LEVERAGE_LIMITS": (("config", "trading", "leverage_limits"), "json"),
    "ARENA_MARKET_BASE_URL": (("config", "market", "base_url"), "str"),
    "ARENA_EXCHANGE_BASE_URL": (("config", "exchange", "base_url"), "str"),
    "ARENA_PAPER_FEE_RATE": (("config", "mode_fees", "paper"), "float"),
    "ARENA_REAL_FEE_RATE": (("config", "mode_fees", "real"), "float"),
    "ARENA_HISTORY_TOKEN_BUDGET": (("config", "history", "token_budget"), "int"),
}
ALLOWED_ENV_OVERRIDES = set(ENV_OVERRIDES)

# Runtime-only variables that are not config overrides.
_NON_CONFIG_ENV = {
    "ARENA_ROOT",
    "ARENA_CONFIG_PATH",
    "ARENA_LOG_LEVEL",
}

_WARNED_IGNORED_ENV_OVERRIDES = False


def _warn_ignored_env_overrides_once(names: set[str]) -> None:
    global _WARNED_IGNORED_ENV_OVERRIDES
    if _WARNED_IGNORED_ENV_OVERRIDES or not names:
        return
    listed = sorted(names)
    preview = ", ".join(listed[:12])
    if len(listed) > 12:
        preview += f", +{len(listed) - 12} more"
    print(
        "Config warning: ignoring non-whitelisted ARENA env overrides "
        f"(arena.yaml and system_settings own these). Ignored keys: {preview}"
    )
    _WARNED_IGNORED_ENV_OVERRIDES = True


def _lookup(cfg: Dict[str, Any], path: PathKey) -> Any:
    node: Any = cfg
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def _assign(cfg: Dict[str, Any], path: PathKey, value: Any) -> None:
    node = cfg
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = node[key] = {}
        node = child
    node[path[-1]] = value


def _read_env(name: str, kind: str, current: Any) -> Any:
    """Typed env value; unparseable input keeps the configured value."""
    if kind == "int":
        return env_int(name, current if isinstance(current, int) else 0)
    if kind == "float":
        return env_float(name, float(current) if current is not None else 0.0)
    if kind == "bool":
        return env_bool(name, bool(current))
    if kind == "list":
        return env_list(name, current if isinstance(current, list) else [])
    if kind == "json":
        return env_json(name, current if current is not None else {})
    return env_str(name, current if current is not None else "")


def apply_env_overrides(config: Dict[str, Any]) -> Dict[str, Any]:
    cfg = deepcopy(config) if config else {}

    for name, (path, kind) in ENV_OVERRIDES.items():
        if env_present(name):
            _assign(cfg, path, _read_env(name, kind, _lookup(cfg, path)))

    ignored = {
        name
        for name in os.environ
        if name.startswith("ARENA_")
        and name not in ALLOWED_ENV_OVERRIDES
        and name not in _NON_CONFIG_ENV
        and env_present(name)
    }
    _warn_ignored_env_overrides_once(ignored)

    return cfg
