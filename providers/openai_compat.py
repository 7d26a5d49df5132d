#!/usr/bin/env python3
"""OpenAI-compatible chat completions (OpenAI, Grok, local servers)."""

from __future__ import annotations

from typing import Any, Dict, Tuple

from .base import ProviderAdapter

DEFAULT_OPENAI_ENDPOINT = "https://api.openai.com/v1/chat/completions"


class OpenAICompatibleProvider(ProviderAdapter):
    """Bearer-token chat completions; reads choices[0].message.content."""

    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        headers = {"Content-Type": "application/json"}
        key = self.api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        payload: Dict[str, Any] = {
            "model": self.config.model,
            "messages": [{"role": "user", "content": prompt}],
        }
        temperature = self.config.extra.get("temperature")
        if temperature is not None:
            payload["temperature"] = float(temperature)
        return self.config.endpoint or DEFAULT_OPENAI_ENDPOINT, headers, payload

    def extract_text(self, data: Any) -> str:
        return data["choices"][0]["message"]["content"]
