#!/usr/bin/env python3
"""Decision JSON parsing for model responses.

Models wrap their answer in prose, markdown fences or logs. We salvage the
first balanced JSON value that looks like a decision array (or a single
decision object) and normalize each entry. Nothing here raises: callers get
a ParseOutcome whose `error` is a ParseError value on failure.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import ParseError

ACTION_LONG = "LONG"
ACTION_SHORT = "SHORT"
ACTION_CLOSE = "CLOSE"
ACTION_HOLD = "HOLD"
ACTION_ANALYZE = "ANALYZE"
TRADE_ACTIONS = (ACTION_LONG, ACTION_SHORT, ACTION_CLOSE, ACTION_HOLD)

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*|\s*```\s*$", flags=re.IGNORECASE | re.DOTALL)
_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\[{][\s\S]*?[\]}])\s*```", flags=re.IGNORECASE)
_MAX_SCAN_STARTS = 64


@dataclass
class Decision:
    action: str
    symbol: Optional[str] = None
    size: Optional[float] = None
    leverage: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    close_position_id: Optional[str] = None
    reasoning: str = ""

    @property
    def is_open(self) -> bool:
        return self.action in (ACTION_LONG, ACTION_SHORT)

    def label(self) -> str:
        return f"{self.action} {self.symbol or self.close_position_id or ''}".strip()

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"action": self.action}
        if self.symbol:
            out["symbol"] = self.symbol
        if self.size is not None:
            out["size"] = self.size
        if self.leverage is not None:
            out["leverage"] = self.leverage
        if self.stop_loss is not None:
            out["stopLoss"] = self.stop_loss
        if self.take_profit is not None:
            out["takeProfit"] = self.take_profit
        if self.close_position_id:
            out["closePositionId"] = self.close_position_id
        if self.reasoning:
            out["reasoning"] = self.reasoning
        return out


@dataclass
class AnalysisRequest:
    tool: str
    parameters: Dict[str, Any]
    reasoning: str = ""


@dataclass
class ParseOutcome:
    decisions: List[Decision] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    error: Optional[ParseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _extract_balanced(text: str, start: int) -> Optional[str]:
    depth = 0
    in_str = False
    escape = False
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_str:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == "\"":
                in_str = False
            continue
        if ch == "\"":
            in_str = True
            continue
        if ch in "[{":
            depth += 1
        elif ch in "]}":
            depth -= 1
            if depth == 0:
                return text[start : idx + 1]
    return None


def safe_json_loads(text: Optional[str]) -> Optional[Any]:
    """Best-effort decode of the first JSON array/object inside `text`."""
    if text is None:
        return None
    raw = str(text).strip()
    if not raw:
        return None
    candidates: List[str] = [raw]
    no_fence = _FENCE_RE.sub("", raw).strip()
    if no_fence and no_fence not in candidates:
        candidates.append(no_fence)
    for match in _FENCED_BLOCK_RE.finditer(raw):
        block = match.group(1).strip()
        if block not in candidates:
            candidates.append(block)
    for cand in candidates:
        try:
            return json.loads(cand)
        except Exception:
            continue

    starts = [i for i, ch in enumerate(raw) if ch in "[{"][:_MAX_SCAN_STARTS]
    for start in starts:
        chunk = _extract_balanced(raw, start)
        if not chunk:
            continue
        try:
            parsed = json.loads(chunk)
        except Exception:
            continue
        if isinstance(parsed, (list, dict)):
            return parsed
    return None


def _num(raw: Dict[str, Any], *keys: str) -> Optional[float]:
    for key in keys:
        if key in raw and raw[key] not in (None, ""):
            try:
                return float(raw[key])
            except (TypeError, ValueError):
                raise ValueError(f"{key} must be numeric, got {raw[key]!r}")
    return None


def normalize_decision(raw: Any) -> Decision:
    """Validate one decision object. Raises ValueError describing the problem."""
    if not isinstance(raw, dict):
        raise ValueError(f"decision must be an object, got {type(raw).__name__}")
    action = str(raw.get("action") or "").strip().upper()
    if action not in TRADE_ACTIONS:
        raise ValueError(f"unknown action {raw.get('action')!r}")

    symbol_raw = raw.get("symbol")
    symbol = str(symbol_raw).strip().upper() if symbol_raw else None
    close_id_raw = raw.get("closePositionId", raw.get("close_position_id", raw.get("positionId")))
    close_id = str(close_id_raw).strip() if close_id_raw not in (None, "") else None
    reasoning = str(raw.get("reasoning") or raw.get("reason") or "")

    decision = Decision(
        action=action,
        symbol=symbol,
        size=_num(raw, "size", "margin"),
        leverage=_num(raw, "leverage"),
        stop_loss=_num(raw, "stopLoss", "stop_loss"),
        take_profit=_num(raw, "takeProfit", "take_profit"),
        close_position_id=close_id,
        reasoning=reasoning,
    )

    if decision.is_open:
        if not decision.symbol:
            raise ValueError(f"{action} requires a symbol")
        if decision.size is None or decision.size <= 0:
            raise ValueError(f"{action} {decision.symbol} requires a positive size")
        if decision.leverage is None:
            decision.leverage = 1.0
        if decision.leverage <= 0:
            raise ValueError(f"{action} {decision.symbol} requires a positive leverage")
    elif action == ACTION_CLOSE and not (decision.close_position_id or decision.symbol):
        raise ValueError("CLOSE requires closePositionId or symbol")
    return decision


def parse_decisions(text: Optional[str]) -> ParseOutcome:
    """Parse a model answer into trade decisions. HOLD entries are dropped."""
    parsed = safe_json_loads(text)
    if parsed is None:
        preview = str(text or "").strip().replace("\n", " ")[:120]
        return ParseOutcome(error=ParseError(f"response is not decision JSON: {preview!r}"))

    if isinstance(parsed, dict):
        if isinstance(parsed.get("decisions"), list):
            parsed = parsed["decisions"]
        elif parsed.get("action"):
            parsed = [parsed]
        else:
            return ParseOutcome(error=ParseError("JSON object has no action field"))
    if not isinstance(parsed, list):
        return ParseOutcome(error=ParseError("decision JSON is not an array"))

    outcome = ParseOutcome()
    for idx, item in enumerate(parsed):
        try:
            decision = normalize_decision(item)
        except ValueError as exc:
            outcome.notes.append(f"Ignored decision #{idx + 1}: {exc}")
            continue
        if decision.action == ACTION_HOLD:
            continue
        outcome.decisions.append(decision)
    return outcome


def parse_analysis_request(text: Optional[str]) -> Optional[AnalysisRequest]:
    """Return the tool request if the answer is an ANALYZE object, else None."""
    parsed = safe_json_loads(text)
    if isinstance(parsed, list) and len(parsed) == 1 and isinstance(parsed[0], dict):
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        return None
    if str(parsed.get("action") or "").upper() != ACTION_ANALYZE:
        return None
    tool = parsed.get("tool")
    params = parsed.get("parameters")
    if not tool or not isinstance(params, dict):
        return None
    return AnalysisRequest(
        tool=str(tool),
        parameters=params,
        reasoning=str(parsed.get("reasoning") or "No reasoning provided"),
    )
