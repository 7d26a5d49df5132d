#!/usr/bin/env python3
"""
Shared language-model provider interface.

Every provider family exposes the same `send(prompt) -> text` capability;
only the request/response shape differs between implementations.
"""

from __future__ import annotations

import abc
import asyncio
from typing import Any, Dict, Optional, Tuple

import aiohttp

from env_utils import resolve_secret
from errors import ProviderError
from logging_utils import get_logger
from models import ProviderConfig

_ERROR_BODY_PREVIEW = 300


class ProviderAdapter(abc.ABC):
    """Base class for provider adapters."""

    def __init__(
        self,
        config: ProviderConfig,
        session: Optional[aiohttp.ClientSession] = None,
        log=None,
    ) -> None:
        self.config = config
        self.log = log or get_logger("providers")
        self._session = session
        self._owns_session = session is None

    @property
    def name(self) -> str:
        return self.config.name or self.__class__.__name__

    @property
    def api_key(self) -> str:
        return resolve_secret(self.config.api_key_env)

    @abc.abstractmethod
    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        """Return (url, headers, json_payload) for a single-turn prompt."""
        raise NotImplementedError

    @abc.abstractmethod
    def extract_text(self, data: Any) -> str:
        """Pull the assistant text out of the decoded response body."""
        raise NotImplementedError

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def post_json(
        self,
        url: str,
        headers: Dict[str, str],
        payload: Dict[str, Any],
        timeout_sec: float,
    ) -> Any:
        session = await self._get_session()
        async with session.post(
            url,
            json=payload,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout_sec),
        ) as resp:
            if resp.status != 200:
                body = await resp.text()
                raise ProviderError(
                    f"{self.name} HTTP {resp.status}: {body[:_ERROR_BODY_PREVIEW]}",
                    kind="http_error",
                )
            return await resp.json(content_type=None)

    async def send(self, prompt: str, timeout_sec: float = 30.0) -> str:
        """Send one prompt and return the assistant text.

        Raises ProviderError (kind: timeout, http_error, transport,
        empty_response, bad_response).
        """
        url, headers, payload = self.build_request(prompt)
        try:
            data = await asyncio.wait_for(
                self.post_json(url, headers, payload, timeout_sec),
                timeout=timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"{self.name} timed out after {timeout_sec:.0f}s", kind="timeout") from exc
        except ProviderError:
            raise
        except aiohttp.ClientError as exc:
            raise ProviderError(f"{self.name} transport error: {exc}", kind="transport") from exc

        try:
            text = self.extract_text(data)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as exc:
            raise ProviderError(f"{self.name} returned an unexpected body: {exc}", kind="bad_response") from exc
        text = str(text or "").strip()
        if not text:
            raise ProviderError(f"{self.name} returned an empty response", kind="empty_response")
        return text
