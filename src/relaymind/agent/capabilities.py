"""
agent/capabilities.py — Capability Handlers

One handler per Capability. Every handler has the same contract:

    handler.handle(step, context) -> AsyncIterator[CapabilityChunk]

Handlers never touch StepResult or Exchange state; the executor folds the
chunks they yield into the running StepResult. A handler signals failure by
raising (CapabilityError for bad input/output, router errors for provider
failure); it never yields an error string as if it were a result.

Streaming handlers relay through aclosing() so that an executor cancelling
mid-step stops the provider stream at once.

Email and drive only ever produce drafts. Nothing is sent or written.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

from relaymind.agent.synthesizer import Synthesizer
from relaymind.agent.types import (
    Capability,
    CapabilityChunk,
    Exchange,
    ImageArtifact,
    PlanStep,
    StepOutput,
    TableArtifact,
)
from relaymind.brain.router import ProviderRouter, ProviderStream
from relaymind.brain.types import GroundingTool, ModelTier, ProviderChoice
from relaymind.exceptions import CapabilityError
from relaymind.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Execution context
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ExecutionContext:
    """What a handler may read while running one step of one exchange."""
    exchange: Exchange
    router: ProviderRouter
    synthesizer: Synthesizer
    total_steps: int
    outputs: list[StepOutput] = field(default_factory=list)

    def is_first(self, step: PlanStep) -> bool:
        return step.ordinal == 1

    def is_last(self, step: PlanStep) -> bool:
        return step.ordinal == self.total_steps

    def previous_data(self) -> Optional[StepOutput]:
        """
        Raw output a sheets step tabulates. Planned sheets steps sit directly
        after their data step; coordinator status lines are skipped either way.
        """
        for out in reversed(self.outputs):
            if out.capability.produces_data:
                return out
        return None

    def choice(self, tier: ModelTier, category: str) -> ProviderChoice:
        return ProviderChoice(family=self.router.primary, tier=tier, category=category)


# ─────────────────────────────────────────────────────────────────────────────
# Base
# ─────────────────────────────────────────────────────────────────────────────


class CapabilityHandler(ABC):
    capability: Capability

    @abstractmethod
    def handle(self, step: PlanStep, ctx: ExecutionContext) -> AsyncIterator[CapabilityChunk]:
        """Async generator of chunks for one step."""


async def _relay(stream: ProviderStream) -> AsyncIterator[CapabilityChunk]:
    try:
        async for delta in stream:
            if delta:
                yield CapabilityChunk(text=delta)
    finally:
        await stream.aclose()


def _require_success(result, what: str) -> None:
    if not result.succeeded:
        raise CapabilityError(f"{what} failed: {result.error or 'no provider produced a result'}")


# ─────────────────────────────────────────────────────────────────────────────
# Grounded lookups
# ─────────────────────────────────────────────────────────────────────────────


class SearchHandler(CapabilityHandler):
    capability = Capability.WEB_SEARCH

    async def handle(self, step, ctx):
        result = await ctx.router.call(
            step.task,
            preferred=ctx.choice(ModelTier.BALANCED, "search"),
            tools=[GroundingTool.WEB_SEARCH],
        )
        _require_success(result, "Web search")
        log.info("capability.search.done", step=step.ordinal, sources=len(result.sources))
        yield CapabilityChunk(text=result.text, sources=tuple(result.sources))


class MapsHandler(CapabilityHandler):
    capability = Capability.MAPS

    async def handle(self, step, ctx):
        loc = ctx.exchange.location
        result = await ctx.router.call(
            step.task,
            preferred=ctx.choice(ModelTier.BALANCED, "maps"),
            tools=[GroundingTool.MAPS],
            location=(loc.latitude, loc.longitude) if loc else None,
        )
        _require_success(result, "Maps lookup")
        log.info("capability.maps.done", step=step.ordinal, places=len(result.sources), located=loc is not None)
        yield CapabilityChunk(text=result.text, sources=tuple(result.sources))


# ─────────────────────────────────────────────────────────────────────────────
# Media analysis
# ─────────────────────────────────────────────────────────────────────────────


class VisionHandler(CapabilityHandler):
    capability = Capability.VISION

    async def handle(self, step, ctx):
        image = next((a for a in ctx.exchange.attachments if a.is_image), None)
        if image is None:
            raise CapabilityError("Vision step requires an attached image, but none was provided")
        stream = ctx.router.stream(
            step.task,
            preferred=ctx.choice(ModelTier.BALANCED, "vision"),
            attachments=[image],
        )
        async with aclosing(_relay(stream)) as chunks:
            async for chunk in chunks:
                yield chunk


class VideoHandler(CapabilityHandler):
    capability = Capability.VIDEO

    async def handle(self, step, ctx):
        video = next((a for a in ctx.exchange.attachments if a.is_video), None)
        if video is None:
            raise CapabilityError("Video step requires an attached video, but none was provided")
        stream = ctx.router.stream(
            step.task,
            preferred=ctx.choice(ModelTier.BALANCED, "video"),
            attachments=[video],
        )
        async with aclosing(_relay(stream)) as chunks:
            async for chunk in chunks:
                yield chunk


class ImageGenerationHandler(CapabilityHandler):
    capability = Capability.IMAGE_GENERATION

    async def handle(self, step, ctx):
        result = await ctx.router.call(
            step.task,
            preferred=ctx.choice(ModelTier.IMAGE, "image_generation"),
            image_output=True,
            strict_tier=True,
        )
        _require_success(result, "Image generation")
        if not result.images:
            raise CapabilityError("Image generation failed to return an image")
        image = result.images[0]
        yield CapabilityChunk(
            text=f'Successfully generated image based on the prompt: "{step.task}".',
            artifact=ImageArtifact(mime_type=image.mime_type, data_base64=image.data_base64),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Sheets
# ─────────────────────────────────────────────────────────────────────────────

_SHEETS_PROMPT = """\
You are a data formatting tool. Convert raw text data into a structured JSON \
array of objects according to the user's instruction.

User's formatting instruction: "{task}"

Raw data from the previous step:
\"\"\"
{data}
\"\"\"

Respond with a JSON object with a single key "data": an array of objects, one \
per row. Respond with only the raw JSON object, no markdown, no explanation."""


def rows_from_records(records: list) -> tuple[tuple[str, ...], ...]:
    """Header row (union of keys, first-seen order) followed by one row per record."""
    columns: list[str] = []
    for rec in records:
        if isinstance(rec, dict):
            for key in rec:
                if key not in columns:
                    columns.append(str(key))
    if not columns:
        return ()
    rows = [tuple(columns)]
    for rec in records:
        if not isinstance(rec, dict):
            continue
        rows.append(tuple("" if rec.get(c) is None else str(rec.get(c)) for c in columns))
    return tuple(rows)


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```json"):
        text = text[len("```json"):]
    elif text.startswith("```"):
        text = text[3:]
    if text.rstrip().endswith("```"):
        text = text.rstrip()[:-3]
    return text.strip()


class SheetsHandler(CapabilityHandler):
    capability = Capability.SHEETS

    def __init__(self, max_input_chars: int = 20000):
        self._max_input = max_input_chars

    async def handle(self, step, ctx):
        previous = ctx.previous_data()
        if previous is None or not previous.result.strip():
            raise CapabilityError("Sheets step has no preceding data to format")

        result = await ctx.router.call(
            _SHEETS_PROMPT.format(task=step.task, data=previous.result[: self._max_input]),
            preferred=ctx.choice(ModelTier.BALANCED, "sheets"),
            json_output=True,
            temperature=0.1,
        )
        _require_success(result, "Sheets formatting")

        try:
            payload = json.loads(_strip_fences(result.text))
        except json.JSONDecodeError as e:
            raise CapabilityError(f"Sheets formatting returned invalid JSON: {e}") from e
        records = payload.get("data") if isinstance(payload, dict) else payload
        if not isinstance(records, list):
            raise CapabilityError("Sheets formatting returned no 'data' array")

        count = len(records)
        log.info("capability.sheets.done", step=step.ordinal, rows=count, source=previous.capability.value)
        yield CapabilityChunk(
            text=f"Successfully formatted {count} rows of data from the previous step.",
            artifact=TableArtifact(rows=rows_from_records(records)),
        )


# ─────────────────────────────────────────────────────────────────────────────
# Drafts
# ─────────────────────────────────────────────────────────────────────────────

_EMAIL_PROMPT = """\
Draft an email for this task: "{task}"

Context from earlier steps:
{context}

Write a subject line ("Subject: ...") followed by the body. Do not claim the \
email has been sent."""

_DRIVE_PROMPT = """\
Draft the cloud-drive file operations needed for this task: "{task}"

Context from earlier steps:
{context}

Describe, as a short Markdown list, which files would be found, created, moved \
or summarised and why. Make clear that nothing has been changed yet."""


def _context_text(ctx: ExecutionContext, limit: int = 4000) -> str:
    previous = ctx.previous_data()
    if previous is None:
        return "(none)"
    return previous.result[:limit]


class EmailHandler(CapabilityHandler):
    capability = Capability.EMAIL

    async def handle(self, step, ctx):
        stream = ctx.router.stream(
            _EMAIL_PROMPT.format(task=step.task, context=_context_text(ctx)),
            preferred=ctx.choice(ModelTier.FAST, "email"),
        )
        yield CapabilityChunk(text="Draft email (not sent):\n\n")
        async with aclosing(_relay(stream)) as chunks:
            async for chunk in chunks:
                yield chunk


class DriveHandler(CapabilityHandler):
    capability = Capability.DRIVE

    async def handle(self, step, ctx):
        stream = ctx.router.stream(
            _DRIVE_PROMPT.format(task=step.task, context=_context_text(ctx)),
            preferred=ctx.choice(ModelTier.FAST, "drive"),
        )
        yield CapabilityChunk(text="Drafted drive operations (nothing was changed):\n\n")
        async with aclosing(_relay(stream)) as chunks:
            async for chunk in chunks:
                yield chunk


# ─────────────────────────────────────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────────────────────────────────────


class CoordinatorHandler(CapabilityHandler):
    """
    Mode is decided by position in the plan:
      first step of a multi-step plan → to-do list
      last step                       → final synthesis
      anything in between             → validate-progress update

    After a final synthesis that came from a non-primary family, the reviewer
    pass runs; if it changed the text a correction chunk replaces it.
    """

    capability = Capability.COORDINATOR

    async def handle(self, step, ctx):
        exchange = ctx.exchange
        if ctx.is_last(step):
            stream = ctx.synthesizer.combine(exchange.request_text, list(ctx.outputs))
            parts: list[str] = []
            async with aclosing(_relay(stream)) as chunks:
                async for chunk in chunks:
                    parts.append(chunk.text)
                    yield chunk
            if ctx.router.needs_review(stream.result):
                text = "".join(parts)
                reviewed = await ctx.router.review(text, exchange.request_text)
                if reviewed != text:
                    log.info("capability.coordinator.corrected", step=step.ordinal)
                    yield CapabilityChunk(correction=reviewed)
            return

        todo = ctx.is_first(step)
        stream = ctx.synthesizer.intermediate(step.task, exchange.request_text, list(ctx.outputs), todo=todo)
        async with aclosing(_relay(stream)) as chunks:
            async for chunk in chunks:
                yield chunk


# ─────────────────────────────────────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────────────────────────────────────


def default_handlers() -> dict[Capability, CapabilityHandler]:
    handlers: list[CapabilityHandler] = [
        CoordinatorHandler(),
        SearchHandler(),
        MapsHandler(),
        VisionHandler(),
        VideoHandler(),
        ImageGenerationHandler(),
        SheetsHandler(),
        EmailHandler(),
        DriveHandler(),
    ]
    return {h.capability: h for h in handlers}
