#!/usr/bin/env python3
"""
Custom HTTP provider driven by provider-row settings.

extra:
  body_template: JSON object; string values may contain {{prompt}} / {{model}}
  response_path: dotted path into the response, e.g. "output.0.text"
  auth_header:   header name for the key (default Authorization, Bearer scheme)
"""

from __future__ import annotations

import copy
from typing import Any, Dict, Tuple

from .base import ProviderAdapter

_DEFAULT_BODY = {"model": "{{model}}", "prompt": "{{prompt}}"}


def _fill(template: Any, values: Dict[str, str]) -> Any:
    if isinstance(template, str):
        out = template
        for key, val in values.items():
            out = out.replace("{{" + key + "}}", val)
        return out
    if isinstance(template, dict):
        return {k: _fill(v, values) for k, v in template.items()}
    if isinstance(template, list):
        return [_fill(v, values) for v in template]
    return template


def _dig(data: Any, path: str) -> Any:
    cur = data
    for part in [p for p in path.split(".") if p]:
        if isinstance(cur, list):
            cur = cur[int(part)]
        else:
            cur = cur[part]
    return cur


class CustomProvider(ProviderAdapter):
    def build_request(self, prompt: str) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
        template = copy.deepcopy(self.config.extra.get("body_template") or _DEFAULT_BODY)
        payload = _fill(template, {"prompt": prompt, "model": self.config.model})
        headers = {"Content-Type": "application/json"}
        key = self.api_key
        if key:
            header = str(self.config.extra.get("auth_header") or "Authorization")
            headers[header] = f"Bearer {key}" if header == "Authorization" else key
        return self.config.endpoint, headers, payload

    def extract_text(self, data: Any) -> str:
        path = str(self.config.extra.get("response_path") or "")
        if not path:
            if isinstance(data, dict):
                for field in ("text", "output", "response", "content"):
                    if isinstance(data.get(field), str):
                        return data[field]
            return str(data)
        return str(_dig(data, path))
