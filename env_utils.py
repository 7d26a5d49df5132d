"""Environment helpers for the bot arena (loads .env + typed accessors).

Credentials never live in the database: provider and bot rows store the
*name* of an environment variable and `resolve_secret` reads it here.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, TypeVar

from dotenv import load_dotenv

T = TypeVar("T")

# Load .env early for any module importing env_utils.
load_dotenv(Path(__file__).parent / ".env")

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _raw(name: str) -> str:
    return str(os.getenv(name) or "").strip()


def env_present(name: str) -> bool:
    return bool(_raw(name))


def _typed(name: str, default: T, cast: Callable[[str], T]) -> T:
    if not env_present(name):
        return default
    try:
        return cast(_raw(name))
    except (TypeError, ValueError):
        return default


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    return _raw(name) if env_present(name) else default


def env_int(name: str, default: int) -> int:
    return _typed(name, default, int)


def env_float(name: str, default: float) -> float:
    return _typed(name, default, float)


def env_bool(name: str, default: bool) -> bool:
    value = _raw(name).lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    return default


def env_json(name: str, default: Any) -> Any:
    # JSONDecodeError is a ValueError
    return _typed(name, default, json.loads)


def env_list(name: str, default: Iterable[str]) -> list:
    """Comma-separated or JSON-array list ("BTCUSDT,ETHUSDT" or '["BTCUSDT"]')."""
    fallback = list(default)
    raw = _raw(name)
    if not raw:
        return fallback
    if raw.startswith("["):
        parsed = env_json(name, fallback)
        return list(parsed) if isinstance(parsed, list) else fallback
    parts = [p.strip() for p in raw.split(",") if p.strip()]
    return parts or fallback


def resolve_secret(env_name: Optional[str]) -> str:
    """Resolve a credential stored by env-var name (provider keys, exchange keys)."""
    if not env_name:
        return ""
    return env_str(str(env_name), "") or ""


def _resolve_root() -> Path:
    default = Path(__file__).resolve().parent
    root = Path(env_str("ARENA_ROOT", str(default)) or str(default)).expanduser()
    return root if root.is_absolute() else (default / root).resolve()


ARENA_ROOT = str(_resolve_root())
ARENA_CONFIG_PATH = env_str("ARENA_CONFIG_PATH", str(Path(ARENA_ROOT) / "arena.yaml"))
ARENA_DB_PATH = env_str("ARENA_DB_PATH", str(Path(ARENA_ROOT) / "arena.db"))
