"""
brain/openai_client.py — OpenAI-compatible Chat Completions Client

Serves the OpenAI API itself and every OpenAI-compatible family
(OpenRouter, Groq) via base_url + default headers. Images are sent as data
URLs; video input and grounding tools are not supported here.

One AsyncOpenAI instance is cached per API key, so the credential pool can
rotate keys without rebuilding HTTP connection pools on every call.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from relaymind.brain.llm_client import (
    BaseLLMClient,
    LLMAuthError,
    LLMConnectionError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    error_for_status,
)
from relaymind.brain.types import (
    FinishReason,
    LLMConfig,
    LLMResponse,
    Message,
    ProviderFamily,
    Role,
    TokenUsage,
)
from relaymind.observability.logger import get_logger

log = get_logger(__name__)


class OpenAIClient(BaseLLMClient):
    """
    OpenAI API client (also works with any OpenAI-compatible endpoint).
    """

    family = ProviderFamily.OPENAI

    def __init__(
        self,
        base_url: Optional[str] = None,     # None = official OpenAI endpoint
        default_headers: Optional[dict[str, str]] = None,
        timeout_seconds: float = 60.0,
    ):
        self.base_url = base_url
        self._default_headers = dict(default_headers or {})
        self._timeout = timeout_seconds
        self._clients: dict[str, AsyncOpenAI] = {}

    # ── Public API ────────────────────────────────────────────────────────────

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        api_key: str,
    ) -> LLMResponse:
        self._check_supported(config, messages)
        client = self._client_for(api_key)

        log.debug(
            f"{self.family.value}.generate.start",
            model=config.model,
            message_count=len(messages),
        )

        extra: dict = {}
        if config.json_output:
            extra["response_format"] = {"type": "json_object"}

        try:
            response = await client.chat.completions.create(
                model=config.model,
                messages=self._to_provider_messages(messages),
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                top_p=config.top_p,
                timeout=config.timeout_seconds,
                **extra,
            )
        except openai.APIError as e:
            raise self._normalise_error(e) from e

        result = self._from_provider_response(response, config.model)
        log.debug(
            f"{self.family.value}.generate.complete",
            model=result.model,
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            finish_reason=result.finish_reason,
        )
        return result

    async def stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        api_key: str,
    ) -> AsyncIterator[str]:
        self._check_supported(config, messages)
        client = self._client_for(api_key)

        log.debug(f"{self.family.value}.stream.start", model=config.model)
        try:
            response = await client.chat.completions.create(
                model=config.model,
                messages=self._to_provider_messages(messages),
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                top_p=config.top_p,
                timeout=config.timeout_seconds,
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is not None and delta.content:
                    yield delta.content
        except openai.APIError as e:
            raise self._normalise_error(e) from e

    # ── Private helpers ───────────────────────────────────────────────────────

    def _client_for(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                default_headers=self._default_headers or None,
                timeout=self._timeout,
                max_retries=0,      # retries belong to the router, not the SDK
            )
            self._clients[api_key] = client
        return client

    def _check_supported(self, config: LLMConfig, messages: list[Message]) -> None:
        reason = self.can_serve(config, messages)
        if reason:
            raise LLMInvalidRequestError(reason, provider=self.family.value)

    def _to_provider_messages(self, messages: list[Message]) -> list[dict]:
        """Translate internal Message list → OpenAI chat message format."""
        result = []
        for msg in messages:
            if msg.role == Role.SYSTEM:
                result.append({"role": "system", "content": msg.content})

            elif msg.role == Role.USER:
                images = [a for a in msg.attachments if a.is_image]
                if not images:
                    result.append({"role": "user", "content": msg.content})
                    continue
                parts: list[dict] = [{"type": "text", "text": msg.content}]
                for img in images:
                    parts.append({
                        "type": "image_url",
                        "image_url": {"url": img.as_data_url()},
                    })
                result.append({"role": "user", "content": parts})

            elif msg.role == Role.ASSISTANT:
                result.append({"role": "assistant", "content": msg.content})

        return result

    def _from_provider_response(self, response, requested_model: str) -> LLMResponse:
        """Translate OpenAI ChatCompletion → internal LLMResponse."""
        if not response.choices:
            raise LLMError("Provider returned no choices", provider=self.family.value)
        choice = response.choices[0]

        finish_map = {
            "stop": FinishReason.STOP,
            "length": FinishReason.LENGTH,
            "content_filter": FinishReason.SAFETY,
        }
        finish_reason = finish_map.get(choice.finish_reason or "stop", FinishReason.STOP)

        usage = TokenUsage(
            input_tokens=response.usage.prompt_tokens if response.usage else 0,
            output_tokens=response.usage.completion_tokens if response.usage else 0,
        )

        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=finish_reason,
            usage=usage,
            model=response.model or requested_model,
            provider=self.family,
        )

    def _normalise_error(self, e: openai.APIError) -> LLMError:
        """Map an openai SDK exception to the RelayMind error taxonomy."""
        provider = self.family.value
        if isinstance(e, openai.RateLimitError):
            retry_after = None
            headers = getattr(getattr(e, "response", None), "headers", None)
            if headers is not None:
                try:
                    retry_after = float(headers.get("retry-after"))
                except (TypeError, ValueError):
                    retry_after = None
            return LLMRateLimitError(str(e), provider=provider, retry_after=retry_after)
        if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return LLMAuthError(str(e), provider=provider, status_code=e.status_code)
        if isinstance(e, openai.APIConnectionError):   # includes APITimeoutError
            return LLMConnectionError(str(e), provider=provider)
        if isinstance(e, openai.APIStatusError):
            return error_for_status(e.status_code, str(e), provider=provider)
        return LLMError(str(e), provider=provider)
