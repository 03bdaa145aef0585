"""
brain/llm_client.py — Abstract Provider Client + Error Taxonomy

Every provider family (Gemini, OpenRouter, Groq, OpenAI) subclasses
BaseLLMClient and implements generate() and stream().

Clients are credential-agnostic: one client instance serves every key of its
family and the key is passed per call. Which key to use, when to back off and
when to try another family is the router's and the credential pool's job,
not the client's.

Every error a client raises is an LLMError subclass carrying an ErrorKind so
the router can decide between "next credential", "next family" and "give up"
without inspecting provider-specific exceptions.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from relaymind.brain.types import ErrorKind, LLMConfig, LLMResponse, Message, ProviderFamily


class BaseLLMClient(ABC):
    """
    Abstract base for all provider clients.

    Subclasses must implement:
      - generate()     -> call the provider, return normalised LLMResponse
      - stream()       -> async iterator of text deltas

    Class attributes describe what the family can do; the router uses them to
    skip families that cannot serve a request at all.
    """

    family: ProviderFamily = ProviderFamily.OPENAI
    supports_grounding: bool = False
    supports_video: bool = False
    supports_image_output: bool = False

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        config: LLMConfig,
        api_key: str,
    ) -> LLMResponse:
        """Call the provider and return a normalised response."""
        ...

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        config: LLMConfig,
        api_key: str,
    ) -> AsyncIterator[str]:
        """Yield text deltas as the provider produces them."""
        ...

    def can_serve(self, config: LLMConfig, messages: list[Message]) -> Optional[str]:
        """Return a reason string when this family cannot serve the request."""
        if config.tools and not self.supports_grounding:
            return f"{self.family.value} does not support grounding tools"
        if config.image_output and not self.supports_image_output:
            return f"{self.family.value} cannot produce images"
        if not self.supports_video and any(
            a.is_video for m in messages for a in m.attachments
        ):
            return f"{self.family.value} does not accept video input"
        return None

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} family={self.family.value}>"


# ─────────────────────────────────────────────────────────────────────────────
# Status classification
# ─────────────────────────────────────────────────────────────────────────────


def classify_status(status_code: Optional[int]) -> ErrorKind:
    """
    Map an HTTP status to an ErrorKind.

      429            → RATE_LIMITED
      401 / 403      → AUTH
      400/404/409/422 → PERMANENT
      408, 5xx       → TRANSIENT
    """
    if status_code is None:
        return ErrorKind.UNKNOWN
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code in (401, 403):
        return ErrorKind.AUTH
    if status_code == 408 or status_code >= 500:
        return ErrorKind.TRANSIENT
    if status_code in (400, 404, 409, 413, 422):
        return ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


def error_for_status(
    status_code: Optional[int],
    message: str,
    provider: str = "",
    retry_after: Optional[float] = None,
) -> "LLMError":
    """Build the LLMError subclass matching an HTTP status code."""
    kind = classify_status(status_code)
    if kind == ErrorKind.RATE_LIMITED:
        return LLMRateLimitError(message, provider=provider, retry_after=retry_after)
    if kind == ErrorKind.AUTH:
        return LLMAuthError(message, provider=provider, status_code=status_code)
    if kind == ErrorKind.TRANSIENT:
        return LLMUnavailableError(message, provider=provider, status_code=status_code)
    if kind == ErrorKind.PERMANENT:
        lowered = message.lower()
        if "context" in lowered or "too long" in lowered or "too many tokens" in lowered:
            return LLMContextError(message, provider=provider, status_code=status_code)
        return LLMInvalidRequestError(message, provider=provider, status_code=status_code)
    return LLMError(message, provider=provider, status_code=status_code)


# ─────────────────────────────────────────────────────────────────────────────
# Exceptions
# ─────────────────────────────────────────────────────────────────────────────


class LLMError(Exception):
    """Base exception for all provider client errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class LLMConnectionError(LLMError):
    """Provider unreachable: DNS, reset connection, timeout."""
    kind = ErrorKind.TRANSIENT


class LLMUnavailableError(LLMError):
    """Provider reachable but temporarily failing (5xx, overloaded)."""
    kind = ErrorKind.TRANSIENT


class LLMRateLimitError(LLMError):
    """Rate limit or quota hit — the credential should cool down."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider, status_code=429)
        self.retry_after = retry_after


class LLMAuthError(LLMError):
    """Key rejected (401/403)."""
    kind = ErrorKind.AUTH


class LLMInvalidRequestError(LLMError):
    """Bad request, unknown model or unsupported feature. Retrying won't help."""
    kind = ErrorKind.PERMANENT


class LLMContextError(LLMInvalidRequestError):
    """Input exceeds model context window."""
