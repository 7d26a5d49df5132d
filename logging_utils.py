#!/usr/bin/env python3
"""Shared logging helpers for the bot arena.

Component loggers live under one `arena` parent so the CLI can route every
component to the console and an optional file with a single setup call.
"""

from __future__ import annotations

import logging
from typing import Optional

from env_utils import env_str

ROOT_LOGGER = "arena"
_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _level_from_env(default: int) -> int:
    raw = (env_str("ARENA_LOG_LEVEL") or "").strip().upper()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt=_DATEFMT))
    return handler


def _qualified(name: str) -> str:
    if name == ROOT_LOGGER or name.startswith(ROOT_LOGGER + "."):
        return name
    return f"{ROOT_LOGGER}.{name}"


def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """Component logger; the arena parent gets a console handler on first use."""
    root = logging.getLogger(ROOT_LOGGER)
    if not root.handlers:
        root.addHandler(_handler(logging.StreamHandler(), logging.NOTSET))
        root.setLevel(_level_from_env(logging.INFO))
        root.propagate = False
    logger = logging.getLogger(_qualified(name))
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_logging(
    name: str = ROOT_LOGGER,
    log_file: Optional[str] = None,
    verbose: bool = False,
    level: Optional[int] = None,
) -> logging.Logger:
    """Configure the arena parent logger for a CLI run (console + optional file)."""
    logger = logging.getLogger(_qualified(name))
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    console_level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(_level_from_env(console_level) if level is None else level)
    logger.propagate = False

    logger.addHandler(_handler(logging.StreamHandler(), console_level))
    if log_file:
        logger.addHandler(_handler(logging.FileHandler(log_file), logging.DEBUG))
    return logger


class BotLogAdapter(logging.LoggerAdapter):
    """Prefix records with the bot (and owner) they concern."""

    def process(self, msg, kwargs):
        bot_id = self.extra.get("bot_id", "?")
        owner_id = self.extra.get("owner_id")
        if owner_id:
            return f"[bot={bot_id} owner={owner_id}] {msg}", kwargs
        return f"[bot={bot_id}] {msg}", kwargs


def bot_logger(logger: logging.Logger, bot_id: str, owner_id: Optional[str] = None) -> BotLogAdapter:
    return BotLogAdapter(logger, {"bot_id": bot_id, "owner_id": owner_id})
