"""
brain/groq_client.py — Groq Client

Groq serves open-weight models (Llama, Qwen, Gemma) on its own inference
hardware behind an OpenAI-compatible endpoint. It is the fast tier: short
greetings and simple questions land here first.
"""

from __future__ import annotations

from typing import Optional

from relaymind.brain.openai_client import OpenAIClient
from relaymind.brain.types import ProviderFamily

_GROQ_BASE_URL = "https://api.groq.com/openai/v1"


class GroqClient(OpenAIClient):
    family = ProviderFamily.GROQ

    def __init__(
        self,
        base_url: Optional[str] = None,
        extra_headers: Optional[dict[str, str]] = None,
        timeout_seconds: float = 60.0,
    ):
        super().__init__(
            base_url=base_url or _GROQ_BASE_URL,
            default_headers=extra_headers,
            timeout_seconds=timeout_seconds,
        )
