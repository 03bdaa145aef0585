"""
gateway/protocol.py — Exchange Event Protocol

Typed event schema for everything an Exchange run emits to its consumer
(the CLI today, any transport tomorrow). Every event is JSON with a `type`,
the `exchange_id` it belongs to and a `data` payload.

Order per run:
    status*  (plan | clarification)  [chunk* corrections? step_result]*  (complete | error)

A clarification event ends the run. A cache hit emits status then complete.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


# ─────────────────────────────────────────────────────────────────────────────
# Event types
# ─────────────────────────────────────────────────────────────────────────────

class EventType(str, Enum):
    STATUS        = "status"
    PLAN          = "plan"
    CLARIFICATION = "clarification"
    CHUNK         = "chunk"
    STEP_RESULT   = "step_result"
    CORRECTIONS   = "corrections"
    COMPLETE      = "complete"
    ERROR         = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.COMPLETE, EventType.ERROR, EventType.CLARIFICATION)


# ─────────────────────────────────────────────────────────────────────────────
# Envelope
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class ExchangeEvent:
    """Universal envelope. Extra payload goes in `data`."""
    type: str
    exchange_id: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def event_type(self) -> EventType:
        return EventType(self.type)

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "ExchangeEvent":
        d = json.loads(raw)
        return cls(
            type=d.get("type", EventType.ERROR.value),
            exchange_id=d.get("exchange_id", ""),
            data=d.get("data") or {},
        )


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers
# ─────────────────────────────────────────────────────────────────────────────

def make_status(exchange_id: str, status: str, message: str = "") -> ExchangeEvent:
    data: dict[str, Any] = {"status": status}
    if message:
        data["message"] = message
    return ExchangeEvent(type=EventType.STATUS.value, exchange_id=exchange_id, data=data)


def make_plan(exchange_id: str, steps: list[dict]) -> ExchangeEvent:
    return ExchangeEvent(type=EventType.PLAN.value, exchange_id=exchange_id, data={"steps": steps})


def make_clarification(exchange_id: str, question: str, options: list[dict]) -> ExchangeEvent:
    return ExchangeEvent(
        type=EventType.CLARIFICATION.value,
        exchange_id=exchange_id,
        data={"question": question, "options": options},
    )


def make_chunk(exchange_id: str, step: int, text: str) -> ExchangeEvent:
    return ExchangeEvent(
        type=EventType.CHUNK.value,
        exchange_id=exchange_id,
        data={"step": step, "text": text},
    )


def make_step_result(exchange_id: str, result: dict) -> ExchangeEvent:
    """`result` is StepResult.to_dict(): status is completed or error."""
    return ExchangeEvent(type=EventType.STEP_RESULT.value, exchange_id=exchange_id, data=result)


def make_corrections(exchange_id: str, step: int, text: str) -> ExchangeEvent:
    """The reviewer rewrote a step's streamed text; `text` replaces it."""
    return ExchangeEvent(
        type=EventType.CORRECTIONS.value,
        exchange_id=exchange_id,
        data={"step": step, "text": text},
    )


def make_complete(
    exchange_id: str,
    answer: str,
    *,
    from_cache: bool = False,
    similarity: Optional[float] = None,
    agents_used: Optional[list[str]] = None,
) -> ExchangeEvent:
    data: dict[str, Any] = {"answer": answer, "from_cache": from_cache}
    if similarity is not None:
        data["similarity"] = similarity
    if agents_used is not None:
        data["agents_used"] = agents_used
    return ExchangeEvent(type=EventType.COMPLETE.value, exchange_id=exchange_id, data=data)


def make_error(
    exchange_id: str,
    message: str,
    *,
    code: str = "error",
    step: Optional[int] = None,
) -> ExchangeEvent:
    data: dict[str, Any] = {"code": code, "message": message}
    if step is not None:
        data["step"] = step
    return ExchangeEvent(type=EventType.ERROR.value, exchange_id=exchange_id, data=data)
