#!/usr/bin/env python3
"""Gemini generateContent provider."""

from __future__ import annotations

from typing import Any, Dict, Tuple
from urllib.parse import urlencode

from .base import ProviderAdapter

GEMINI_BASE = "https://generativelanguage.googleapis.com/v1beta/models"


class GeminiProvider(ProviderAdapter):
    """API key goes in the query string; reads candidates[0].content.parts[0].text."""

    def _url(self) -> str:
        endpoint = self.config.endpoint or f"{GEMINI_BASE}/{self.config.model}:generateContent"
        key = self.api_key
        if not key:
            return endpoint
        sep = "&" if "?" in endpoint else "?"
        return f"{endpoint}{sep}{urlencode({'key': key})}"

    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        payload = {"contents": [{"parts": [{"text": prompt}]}]}
        return self._url(), {"Content-Type": "application/json"}, payload

    def extract_text(self, data: Any) -> str:
        return data["candidates"][0]["content"]["parts"][0]["text"]
