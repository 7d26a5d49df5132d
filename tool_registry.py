#!/usr/bin/env python3
"""Analytical tool registry used by the iterative decision mode.

Tools are plain callables (sync or async) taking a parameters dict and
returning something JSON-serializable. The registry only guarantees the
`call(name, params)` contract and a per-call timeout; a failing tool yields
an error payload instead of an exception so the analysis loop keeps going.
"""

from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from logging_utils import get_logger

ToolFn = Callable[[Dict[str, Any]], Union[Any, Awaitable[Any]]]

log = get_logger("tool_registry")


class ToolRegistry:
    def __init__(self, tools: Optional[Dict[str, ToolFn]] = None, timeout_sec: float = 5.0) -> None:
        self._tools: Dict[str, ToolFn] = dict(tools or {})
        self.timeout_sec = float(timeout_sec)

    def register(self, name: str, fn: ToolFn) -> None:
        self._tools[str(name)] = fn

    def names(self) -> List[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    async def call(self, name: str, params: Dict[str, Any], timeout_sec: Optional[float] = None) -> Dict[str, Any]:
        fn = self._tools.get(name)
        if fn is None:
            return {"ok": False, "error": f"unknown tool '{name}'", "available": self.names()}
        limit = float(timeout_sec if timeout_sec is not None else self.timeout_sec)
        try:
            if inspect.iscoroutinefunction(fn):
                result = await asyncio.wait_for(fn(params), timeout=limit)
            else:
                result = await asyncio.wait_for(asyncio.to_thread(fn, params), timeout=limit)
        except asyncio.TimeoutError:
            log.warning(f"Tool {name} timed out after {limit:.1f}s")
            return {"ok": False, "error": f"tool '{name}' timed out after {limit:.1f}s"}
        except Exception as exc:
            log.warning(f"Tool {name} failed: {exc}")
            return {"ok": False, "error": f"tool '{name}' failed: {exc}"}
        try:
            json.dumps(result, default=str)
        except (TypeError, ValueError):
            result = str(result)
        return {"ok": True, "result": result}
