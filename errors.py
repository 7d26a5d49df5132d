#!/usr/bin/env python3
"""Error taxonomy for the arena engine.

Lower layers raise these; the decision pipeline and trade executor hand them
back as values so a bad model response or a rejected decision never needs to
be caught by the scheduler.
"""

from __future__ import annotations

from typing import Optional


class ArenaError(Exception):
    """Base class for arena errors."""

    kind = "error"

    def __init__(self, message: str = "", kind: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if kind:
            self.kind = kind

    def as_note(self) -> str:
        return f"{self.__class__.__name__}: {self.message}"


class ProviderError(ArenaError):
    """The language-model call failed or timed out."""

    kind = "provider_error"


class ParseError(ArenaError):
    """The model answered, but not with decision JSON."""

    kind = "parse_error"


class ValidationError(ArenaError):
    """A decision violated a trading guardrail; carries the rejection note."""

    kind = "validation_error"

    def as_note(self) -> str:
        return self.message


class ExchangeError(ArenaError):
    """A real-mode account or order call failed."""

    kind = "exchange_error"


class PersistenceError(ArenaError):
    """A durable write failed."""

    kind = "persistence_error"


class SchedulerFault(ArenaError):
    """Unexpected failure anywhere inside one bot's turn."""

    kind = "scheduler_fault"
