"""
brain/openrouter_client.py — OpenRouter Client

OpenRouter is a unified gateway for many hosted models (DeepSeek, Qwen,
Gemma, Llama, ...). It speaks the OpenAI chat-completions protocol, so this
is OpenAIClient pointed at openrouter.ai with the attribution headers
OpenRouter asks for.

Model ids carry the vendor prefix and the free-tier suffix:
  - deepseek/deepseek-r1-0528:free
  - qwen/qwen3-coder:free
  - google/gemma-3-27b-it:free
"""

from __future__ import annotations

from typing import Optional

from relaymind.brain.openai_client import OpenAIClient
from relaymind.brain.types import ProviderFamily

_OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


class OpenRouterClient(OpenAIClient):
    """OpenRouter client — one key reaches every model on the gateway."""

    family = ProviderFamily.OPENROUTER

    def __init__(
        self,
        base_url: Optional[str] = None,
        app_name: str = "RelayMind",
        site_url: str = "https://github.com/relaymind",
        extra_headers: Optional[dict[str, str]] = None,
        timeout_seconds: float = 60.0,
    ):
        headers = {"HTTP-Referer": site_url, "X-Title": app_name}
        headers.update(extra_headers or {})
        super().__init__(
            base_url=base_url or _OPENROUTER_BASE_URL,
            default_headers=headers,
            timeout_seconds=timeout_seconds,
        )
