"""
brain/__init__.py — RelayMind Provider Layer
"""

from __future__ import annotations

from relaymind.brain.llm_client import (
    BaseLLMClient,
    LLMAuthError,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    LLMUnavailableError,
    classify_status,
)
from relaymind.brain.types import (
    Attachment,
    ErrorKind,
    GroundingTool,
    LLMConfig,
    LLMResponse,
    Message,
    ModelTier,
    ProviderCallResult,
    ProviderChoice,
    ProviderFamily,
    Role,
    Source,
)

__all__ = [
    "LLMClientFactory",
    "BaseLLMClient",
    "LLMError",
    "LLMConnectionError",
    "LLMUnavailableError",
    "LLMRateLimitError",
    "LLMAuthError",
    "LLMContextError",
    "LLMInvalidRequestError",
    "classify_status",
    "Attachment",
    "ErrorKind",
    "GroundingTool",
    "Message",
    "LLMConfig",
    "LLMResponse",
    "ModelTier",
    "ProviderCallResult",
    "ProviderChoice",
    "ProviderFamily",
    "Role",
    "Source",
]


class LLMClientFactory:

    @staticmethod
    def create(family: str, provider_cfg=None) -> BaseLLMClient:
        """
        Build the client for one provider family.

        provider_cfg is a config.settings.ProviderFamilyConfig; None means
        built-in defaults. Clients hold no credentials: keys come per call.
        """
        family = family.lower().strip()
        base_url = getattr(provider_cfg, "base_url", None)
        headers = dict(getattr(provider_cfg, "headers", None) or {})
        timeout = getattr(provider_cfg, "timeout_seconds", 60.0)
        kind = getattr(provider_cfg, "kind", None)

        if family == "gemini" or kind == "gemini":
            from relaymind.brain.gemini_client import GeminiClient
            return GeminiClient(timeout_seconds=timeout)

        elif family == "openrouter":
            from relaymind.brain.openrouter_client import OpenRouterClient
            return OpenRouterClient(
                base_url=base_url,
                app_name=headers.pop("X-Title", "RelayMind"),
                site_url=headers.pop("HTTP-Referer", "https://github.com/relaymind"),
                extra_headers=headers,
                timeout_seconds=timeout,
            )

        elif family == "groq":
            from relaymind.brain.groq_client import GroqClient
            return GroqClient(base_url=base_url, extra_headers=headers, timeout_seconds=timeout)

        elif family == "openai":
            from relaymind.brain.openai_client import OpenAIClient
            return OpenAIClient(base_url=base_url, default_headers=headers, timeout_seconds=timeout)

        else:
            raise ValueError(
                f"Unknown provider family: '{family}'. "
                f"Valid options: {', '.join(f.value for f in ProviderFamily)}"
            )
