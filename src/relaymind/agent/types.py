"""
agent/types.py — Plan / Exchange Data Model

Plan and PlanStep are immutable once the planner has produced them.
StepResult and Exchange are mutated in place by the executor as streaming
chunks arrive; the Exchange is owned by the caller's Conversation.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from relaymind.brain.types import Attachment, Source


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────


class Capability(str, Enum):
    COORDINATOR = "coordinator"
    WEB_SEARCH = "web_search"
    MAPS = "maps"
    VISION = "vision"
    VIDEO = "video"
    IMAGE_GENERATION = "image_generation"
    SHEETS = "sheets"
    EMAIL = "email"
    DRIVE = "drive"

    @property
    def produces_action(self) -> bool:
        """Action steps are followed by a coordinator validate step."""
        return self not in (Capability.COORDINATOR, Capability.SHEETS)

    @property
    def produces_data(self) -> bool:
        """Steps whose raw output a later sheets step may tabulate."""
        return self != Capability.COORDINATOR


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class ExchangeStatus(str, Enum):
    PLANNING = "planning"
    CLARIFICATION_NEEDED = "clarification_needed"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExchangeStatus.COMPLETED, ExchangeStatus.ERROR, ExchangeStatus.CANCELLED)


# ─────────────────────────────────────────────────────────────────────────────
# Plan
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PlanStep:
    ordinal: int
    capability: Capability
    task: str

    def to_dict(self) -> dict:
        return {"step": self.ordinal, "capability": self.capability.value, "task": self.task}


@dataclass(frozen=True)
class Plan:
    steps: tuple[PlanStep, ...]

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    @property
    def capabilities(self) -> list[str]:
        """Distinct non-coordinator capabilities, in plan order."""
        seen: list[str] = []
        for s in self.steps:
            if s.capability != Capability.COORDINATOR and s.capability.value not in seen:
                seen.append(s.capability.value)
        return seen

    def to_list(self) -> list[dict]:
        return [s.to_dict() for s in self.steps]


@dataclass(frozen=True)
class ClarificationOption:
    key: str
    value: str


@dataclass(frozen=True)
class ClarificationRequest:
    question: str
    options: tuple[ClarificationOption, ...]

    def option(self, key: str) -> Optional[ClarificationOption]:
        for opt in self.options:
            if opt.key == key:
                return opt
        return None

    def to_dict(self) -> dict:
        return {
            "question": self.question,
            "options": [{"key": o.key, "value": o.value} for o in self.options],
        }


# ─────────────────────────────────────────────────────────────────────────────
# Artifacts
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TableArtifact:
    """Rows produced by a sheets step. First row is the header."""
    rows: tuple[tuple[str, ...], ...]

    @property
    def row_count(self) -> int:
        return len(self.rows)

    def to_dict(self) -> dict:
        return {"kind": "table", "rows": [list(r) for r in self.rows]}


@dataclass(frozen=True)
class ImageArtifact:
    mime_type: str
    data_base64: str

    def to_dict(self) -> dict:
        return {"kind": "image", "mime_type": self.mime_type, "data_base64": self.data_base64}


Artifact = Union[TableArtifact, ImageArtifact]


@dataclass(frozen=True)
class Geolocation:
    latitude: float
    longitude: float


# ─────────────────────────────────────────────────────────────────────────────
# Streaming chunk
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class CapabilityChunk:
    """
    The single shape every capability handler yields.

    `text` is appended to the step's accumulated text. `correction`, when set,
    replaces the accumulated text (reviewer rewrote what was streamed).
    """
    text: str = ""
    sources: tuple[Source, ...] = ()
    artifact: Optional[Artifact] = None
    correction: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# Results + exchange
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class StepResult:
    ordinal: int
    capability: Capability
    task: str
    text: str = ""
    status: StepStatus = StepStatus.PENDING
    sources: list[Source] = field(default_factory=list)
    artifact: Optional[Artifact] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls, step: PlanStep) -> "StepResult":
        return cls(ordinal=step.ordinal, capability=step.capability, task=step.task)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.ordinal,
            "capability": self.capability.value,
            "task": self.task,
            "status": self.status.value,
            "result": self.text,
            "sources": [{"title": s.title, "uri": s.uri} for s in self.sources],
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": self.error,
        }


@dataclass
class StepOutput:
    """What later steps and the synthesizer see of a completed step."""
    capability: Capability
    task: str
    result: str
    artifact: Optional[Artifact] = None


@dataclass
class Exchange:
    """One user request and everything that happened to it."""
    id: str
    request_text: str
    attachments: list[Attachment] = field(default_factory=list)
    location: Optional[Geolocation] = None
    cycle_depth: int = 1
    conversation_id: Optional[str] = None
    plan: Optional[Plan] = None
    clarification: Optional[ClarificationRequest] = None
    results: list[StepResult] = field(default_factory=list)
    status: ExchangeStatus = ExchangeStatus.PLANNING
    final_answer: Optional[str] = None
    error_message: Optional[str] = None
    clarification_rounds: int = 0
    clarification_asked_at: Optional[float] = None
    from_cache: bool = False
    similarity: Optional[float] = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def create(
        cls,
        request_text: str,
        attachments: Optional[list[Attachment]] = None,
        location: Optional[Geolocation] = None,
        cycle_depth: int = 1,
        conversation_id: Optional[str] = None,
    ) -> "Exchange":
        return cls(
            id=f"exc_{uuid.uuid4().hex[:12]}",
            request_text=request_text,
            attachments=list(attachments or []),
            location=location,
            cycle_depth=cycle_depth,
            conversation_id=conversation_id,
        )

    @property
    def has_image(self) -> bool:
        return any(a.is_image for a in self.attachments)

    @property
    def has_video(self) -> bool:
        return any(a.is_video for a in self.attachments)
