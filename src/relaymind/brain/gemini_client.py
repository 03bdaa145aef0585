"""
brain/gemini_client.py — Google Gemini Client

The primary family: the only one with grounded web search, Maps grounding,
video understanding and image output. Uses the `google-genai` SDK
(google.genai), not the deprecated `google-generativeai` package.

One genai.Client is cached per API key.
"""

from __future__ import annotations

import asyncio
import base64
from typing import AsyncIterator, Optional

from google import genai
from google.genai import types as genai_types

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
    GeneratedImage,
    GroundingTool,
    LLMConfig,
    LLMResponse,
    Message,
    ProviderFamily,
    Role,
    Source,
    TokenUsage,
)
from relaymind.observability.logger import get_logger

log = get_logger(__name__)


class GeminiClient(BaseLLMClient):
    """
    Google Gemini API client using the google-genai SDK.
    """

    family = ProviderFamily.GEMINI
    supports_grounding = True
    supports_video = True
    supports_image_output = True

    def __init__(self, timeout_seconds: float = 60.0):
        self._timeout_ms = int(timeout_seconds * 1000)
        self._clients: dict[str, genai.Client] = {}

    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        api_key: str,
    ) -> LLMResponse:
        system_instruction, contents = self._to_provider_messages(messages)
        gen_config = self._build_config(config, system_instruction)

        log.debug(
            "gemini.generate.start",
            model=config.model,
            message_count=len(messages),
            tools=[t.value for t in config.tools],
        )

        try:
            response = await self._client_for(api_key).aio.models.generate_content(
                model=config.model,
                contents=contents,
                config=gen_config,
            )
        except Exception as e:
            raise self._normalise_error(e) from e

        result = self._from_provider_response(response, config.model)
        log.debug(
            "gemini.generate.complete",
            model=result.model,
            finish_reason=result.finish_reason,
            sources=len(result.sources),
            images=len(result.images),
        )
        return result

    async def stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        api_key: str,
    ) -> AsyncIterator[str]:
        system_instruction, contents = self._to_provider_messages(messages)
        gen_config = self._build_config(config, system_instruction)

        log.debug("gemini.stream.start", model=config.model)
        try:
            response = await self._client_for(api_key).aio.models.generate_content_stream(
                model=config.model,
                contents=contents,
                config=gen_config,
            )
            async for chunk in response:
                text = _chunk_text(chunk)
                if text:
                    yield text
        except LLMError:
            raise
        except Exception as e:
            raise self._normalise_error(e) from e

    # ── Private helpers ───────────────────────────────────────────────────────

    def _client_for(self, api_key: str) -> genai.Client:
        client = self._clients.get(api_key)
        if client is None:
            client = genai.Client(
                api_key=api_key,
                http_options=genai_types.HttpOptions(timeout=self._timeout_ms),
            )
            self._clients[api_key] = client
        return client

    def _build_config(
        self, config: LLMConfig, system_instruction: Optional[str]
    ) -> genai_types.GenerateContentConfig:
        tools: list[genai_types.Tool] = []
        if GroundingTool.WEB_SEARCH in config.tools:
            tools.append(genai_types.Tool(google_search=genai_types.GoogleSearch()))
        if GroundingTool.MAPS in config.tools:
            tools.append(genai_types.Tool(google_maps=genai_types.GoogleMaps()))

        tool_config = None
        if GroundingTool.MAPS in config.tools and config.latitude is not None and config.longitude is not None:
            tool_config = genai_types.ToolConfig(
                retrieval_config=genai_types.RetrievalConfig(
                    lat_lng=genai_types.LatLng(
                        latitude=config.latitude,
                        longitude=config.longitude,
                    )
                )
            )

        kwargs: dict = {
            "temperature": config.temperature,
            "max_output_tokens": config.max_tokens,
            "top_p": config.top_p,
            "system_instruction": system_instruction,
        }
        if tools:
            kwargs["tools"] = tools
        if tool_config is not None:
            kwargs["tool_config"] = tool_config
        if config.image_output:
            kwargs["response_modalities"] = ["TEXT", "IMAGE"]
        # JSON mime type is rejected when grounding tools are attached
        if config.json_output and not tools:
            kwargs["response_mime_type"] = "application/json"
        return genai_types.GenerateContentConfig(**kwargs)

    def _to_provider_messages(
        self, messages: list[Message]
    ) -> tuple[Optional[str], list[genai_types.Content]]:
        """Translate internal Message list → Gemini Contents + system instruction."""
        system_instruction: Optional[str] = None
        contents: list[genai_types.Content] = []

        for msg in messages:
            if msg.role == Role.SYSTEM:
                system_instruction = (
                    system_instruction + "\n\n" + msg.content
                ) if system_instruction else msg.content

            elif msg.role == Role.USER:
                parts = [
                    genai_types.Part.from_bytes(data=a.data, mime_type=a.mime_type)
                    for a in msg.attachments
                ]
                parts.append(genai_types.Part(text=msg.content))
                contents.append(genai_types.Content(role="user", parts=parts))

            elif msg.role == Role.ASSISTANT:
                contents.append(genai_types.Content(
                    role="model",
                    parts=[genai_types.Part(text=msg.content)],
                ))

        return system_instruction, contents

    def _from_provider_response(self, response, model_name: str) -> LLMResponse:
        """Translate Gemini GenerateContentResponse → internal LLMResponse."""
        if not response.candidates:
            feedback = getattr(response, "prompt_feedback", None)
            raise LLMInvalidRequestError(
                f"Gemini returned no candidates (prompt_feedback={feedback})",
                provider="gemini",
            )
        candidate = response.candidates[0]

        finish_reason = FinishReason.STOP
        if candidate.finish_reason:
            reason_str = str(candidate.finish_reason).upper()
            if "MAX_TOKENS" in reason_str:
                finish_reason = FinishReason.LENGTH
            elif "SAFETY" in reason_str or "PROHIBITED" in reason_str:
                finish_reason = FinishReason.SAFETY

        texts: list[str] = []
        images: list[GeneratedImage] = []
        parts = candidate.content.parts if candidate.content and candidate.content.parts else []
        for part in parts:
            if getattr(part, "thought", False):
                continue
            if part.text:
                texts.append(part.text)
            elif part.inline_data and part.inline_data.data:
                raw = part.inline_data.data
                encoded = raw if isinstance(raw, str) else base64.b64encode(raw).decode("ascii")
                images.append(GeneratedImage(
                    mime_type=part.inline_data.mime_type or "image/png",
                    data_base64=encoded,
                ))

        usage = TokenUsage()
        um = getattr(response, "usage_metadata", None)
        if um:
            usage = TokenUsage(
                input_tokens=getattr(um, "prompt_token_count", 0) or 0,
                output_tokens=getattr(um, "candidates_token_count", 0) or 0,
            )

        return LLMResponse(
            content="".join(texts),
            finish_reason=finish_reason,
            usage=usage,
            model=model_name,
            provider=ProviderFamily.GEMINI,
            sources=_extract_sources(candidate),
            images=images,
        )

    def _normalise_error(self, exc: Exception) -> LLMError:
        """
        Map google-genai errors onto the error taxonomy.

        genai.errors.APIError carries the HTTP status as `.code`; anything
        else (transport errors, SDK bugs) falls back to message sniffing.
        """
        code = getattr(exc, "code", None)
        if isinstance(code, int):
            return error_for_status(code, str(exc), provider="gemini")

        err_str = str(exc).lower()
        if "resource_exhausted" in err_str or "quota" in err_str or "429" in err_str:
            return LLMRateLimitError(str(exc), provider="gemini")
        if isinstance(exc, (asyncio.TimeoutError, ConnectionError, OSError)) or "timed out" in err_str:
            return LLMConnectionError(str(exc), provider="gemini")
        if "api key" in err_str or "permission_denied" in err_str:
            return LLMAuthError(str(exc), provider="gemini", status_code=403)
        return LLMError(str(exc), provider="gemini")


def _chunk_text(chunk) -> str:
    """Text of one streamed chunk, skipping thought and non-text parts."""
    candidates = getattr(chunk, "candidates", None)
    if not candidates or not candidates[0].content or not candidates[0].content.parts:
        return ""
    return "".join(
        p.text for p in candidates[0].content.parts
        if p.text and not getattr(p, "thought", False)
    )


def _extract_sources(candidate) -> list[Source]:
    """Collect web and Maps citations from grounding metadata, de-duplicated by uri."""
    metadata = getattr(candidate, "grounding_metadata", None)
    chunks = getattr(metadata, "grounding_chunks", None) or []
    sources: list[Source] = []
    seen: set[str] = set()
    for chunk in chunks:
        ref = getattr(chunk, "web", None) or getattr(chunk, "maps", None)
        uri = getattr(ref, "uri", None)
        if not uri or uri in seen:
            continue
        seen.add(uri)
        sources.append(Source(title=getattr(ref, "title", None) or uri, uri=uri))
    return sources
