"""
brain/types.py — RelayMind Brain Data Models

All shared types used across provider clients, the credential pool and the
router. Each provider family maps its native response shape into these types.
"""

from __future__ import annotations

import base64
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class ProviderFamily(str, Enum):
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    GROQ = "groq"
    OPENAI = "openai"


class ModelTier(str, Enum):
    FAST = "fast"
    BALANCED = "balanced"
    ADVANCED = "advanced"
    CODE = "code"
    REASONING = "reasoning"
    IMAGE = "image"


class ErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"   # 429 / quota exhausted
    TRANSIENT = "transient"         # 5xx, timeouts, connection resets
    PERMANENT = "permanent"         # unknown model, malformed or unsupported request
    AUTH = "auth"                   # bad or revoked key
    UNKNOWN = "unknown"


class GroundingTool(str, Enum):
    """Provider-side tools a capability can ask for."""
    WEB_SEARCH = "web_search"
    MAPS = "maps"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    SAFETY = "safety"
    ERROR = "error"


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────


class Attachment(BaseModel):
    """Binary media sent alongside a user message (image or video)."""
    mime_type: str
    data: bytes
    name: str = ""

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")

    @property
    def is_video(self) -> bool:
        return self.mime_type.startswith("video/")

    def as_base64(self) -> str:
        return base64.b64encode(self.data).decode("ascii")

    def as_data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.as_base64()}"


class Message(BaseModel):
    """A single message in the prompt sent to a provider."""
    role: Role
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, attachments: Optional[list[Attachment]] = None) -> "Message":
        return cls(role=Role.USER, content=content, attachments=list(attachments or []))


# ─────────────────────────────────────────────────────────────────────────────
# LLM config
# ─────────────────────────────────────────────────────────────────────────────


class LLMConfig(BaseModel):
    """
    Per-request configuration.
    Overrides the provider defaults for a single generate()/stream() call.
    """
    model: str
    temperature: float = 0.7
    max_tokens: int = 4000
    top_p: float = 1.0
    timeout_seconds: float = 60.0
    tools: list[GroundingTool] = Field(default_factory=list)
    latitude: Optional[float] = None        # maps grounding hint
    longitude: Optional[float] = None
    json_output: bool = False               # ask for application/json where supported
    image_output: bool = False              # ask for an image modality in the reply


# ─────────────────────────────────────────────────────────────────────────────
# LLM response
# ─────────────────────────────────────────────────────────────────────────────


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Source(BaseModel):
    """A citation returned by a grounded provider call."""
    model_config = ConfigDict(frozen=True)

    title: str = ""
    uri: str


class GeneratedImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    mime_type: str = "image/png"
    data_base64: str


class LLMResponse(BaseModel):
    """
    Normalised response from any provider.
    Clients translate provider-specific responses into this shape.
    """
    content: str = ""
    finish_reason: FinishReason = FinishReason.STOP
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str = ""
    provider: ProviderFamily = ProviderFamily.GEMINI
    sources: list[Source] = Field(default_factory=list)
    images: list[GeneratedImage] = Field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Router types
# ─────────────────────────────────────────────────────────────────────────────


class ProviderChoice(BaseModel):
    """Output of ProviderRouter.route(): where a request should go first."""
    model_config = ConfigDict(frozen=True)

    family: ProviderFamily
    tier: ModelTier
    category: str = "balanced"


class ProviderCallResult(BaseModel):
    """
    Outcome of one ProviderRouter.call(). Created per call, never persisted.

    On exhaustion succeeded=False, text="" and error carries the aggregated
    description of every attempt that was made.
    """
    model_config = ConfigDict(frozen=True)

    text: str = ""
    provider: Optional[ProviderFamily] = None
    model: str = ""
    succeeded: bool = False
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    latency_ms: float = 0.0
    attempts: int = 0
    reviewed: bool = False
    sources: tuple[Source, ...] = ()
    images: tuple[GeneratedImage, ...] = ()
