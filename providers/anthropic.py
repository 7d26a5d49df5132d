#!/usr/bin/env python3
"""Anthropic messages API provider."""

from __future__ import annotations

from typing import Any, Dict, Tuple

from .base import ProviderAdapter

ANTHROPIC_ENDPOINT = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(ProviderAdapter):
    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        payload = {
            "model": self.config.model,
            "max_tokens": int(self.config.max_tokens or 4096),
            "messages": [{"role": "user", "content": prompt}],
        }
        return self.config.endpoint or ANTHROPIC_ENDPOINT, headers, payload

    def extract_text(self, data: Any) -> str:
        blocks = data["content"]
        texts = [b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text"]
        return "".join(texts) if texts else blocks[0]["text"]
