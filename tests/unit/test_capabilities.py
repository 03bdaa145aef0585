"""
tests/unit/test_capabilities.py — Capability Handler Unit Tests

Handlers run against a real ProviderRouter backed by scripted FakeClients.
"""

from __future__ import annotations

import json

import pytest

from fakes import FakeClient, make_binding, make_router
from relaymind.agent.capabilities import ExecutionContext, default_handlers, rows_from_records
from relaymind.agent.synthesizer import Synthesizer
from relaymind.agent.types import (
    Capability,
    Exchange,
    Geolocation,
    ImageArtifact,
    PlanStep,
    StepOutput,
    TableArtifact,
)
from relaymind.brain.llm_client import LLMRateLimitError
from relaymind.brain.types import (
    Attachment,
    GeneratedImage,
    GroundingTool,
    LLMResponse,
    ProviderFamily,
    Source,
)
from relaymind.exceptions import CapabilityError

GEMINI = ProviderFamily.GEMINI
GROQ = ProviderFamily.GROQ

HANDLERS = default_handlers()


def _ctx(router, request="Find cafes", total=3, outputs=None, **exchange_kwargs) -> ExecutionContext:
    return ExecutionContext(
        exchange=Exchange.create(request, **exchange_kwargs),
        router=router,
        synthesizer=Synthesizer(router),
        total_steps=total,
        outputs=list(outputs or []),
    )


async def _run(cap: Capability, ordinal: int, task: str, ctx: ExecutionContext) -> list:
    step = PlanStep(ordinal, cap, task)
    return [chunk async for chunk in HANDLERS[cap].handle(step, ctx)]


def test_every_capability_has_a_handler():
    assert set(HANDLERS) == set(Capability)


# ─────────────────────────────────────────────────────────────────────────────
# Grounded lookups
# ─────────────────────────────────────────────────────────────────────────────

class TestSearchAndMaps:
    @pytest.mark.asyncio
    async def test_search_yields_text_and_sources(self):
        gemini = FakeClient(GEMINI, grounding=True, script=[
            LLMResponse(content="Cafe Lalo is nice", sources=[Source(title="NYT", uri="https://nyt.example")]),
        ])
        ctx = _ctx(make_router(make_binding(gemini)))
        chunks = await _run(Capability.WEB_SEARCH, 2, "cafes near Central Park", ctx)
        assert len(chunks) == 1
        assert chunks[0].text == "Cafe Lalo is nice"
        assert chunks[0].sources[0].title == "NYT"
        assert gemini.calls[0][1].tools == [GroundingTool.WEB_SEARCH]

    @pytest.mark.asyncio
    async def test_search_failure_raises(self):
        gemini = FakeClient(GEMINI, grounding=True, script=[LLMRateLimitError("429")])
        ctx = _ctx(make_router(make_binding(gemini)))
        with pytest.raises(CapabilityError, match="Web search failed"):
            await _run(Capability.WEB_SEARCH, 2, "q", ctx)

    @pytest.mark.asyncio
    async def test_maps_passes_location(self):
        gemini = FakeClient(GEMINI, grounding=True, script=["Two places nearby"])
        ctx = _ctx(make_router(make_binding(gemini)), location=Geolocation(40.78, -73.96))
        chunks = await _run(Capability.MAPS, 2, "cafes nearby", ctx)
        cfg = gemini.calls[0][1]
        assert cfg.tools == [GroundingTool.MAPS]
        assert (cfg.latitude, cfg.longitude) == (40.78, -73.96)
        assert chunks[0].text == "Two places nearby"


# ─────────────────────────────────────────────────────────────────────────────
# Media
# ─────────────────────────────────────────────────────────────────────────────

class TestMedia:
    @pytest.mark.asyncio
    async def test_vision_without_image_raises(self):
        ctx = _ctx(make_router(make_binding(FakeClient(GEMINI))))
        with pytest.raises(CapabilityError, match="attached image"):
            await _run(Capability.VISION, 2, "describe", ctx)

    @pytest.mark.asyncio
    async def test_vision_streams_with_attachment(self):
        gemini = FakeClient(GEMINI, stream_script=[["A red ", "bicycle"]])
        image = Attachment(mime_type="image/png", data=b"\x89PNG")
        ctx = _ctx(make_router(make_binding(gemini)), attachments=[image])
        chunks = await _run(Capability.VISION, 2, "describe", ctx)
        assert "".join(c.text for c in chunks) == "A red bicycle"
        messages = gemini.stream_calls[0][0]
        assert messages[-1].attachments == [image]

    @pytest.mark.asyncio
    async def test_video_skips_families_without_video(self):
        groq = FakeClient(GROQ, stream_script=[["never"]])
        gemini = FakeClient(GEMINI, video=True, stream_script=[["A cat jumps"]])
        video = Attachment(mime_type="video/mp4", data=b"\x00\x01")
        router = make_router(make_binding(gemini), make_binding(groq), primary=GROQ)
        ctx = _ctx(router, attachments=[video])
        chunks = await _run(Capability.VIDEO, 2, "what happens", ctx)
        assert chunks[0].text == "A cat jumps"
        assert groq.stream_calls == []

    @pytest.mark.asyncio
    async def test_image_generation_yields_artifact(self):
        gemini = FakeClient(GEMINI, image_output=True, script=[
            LLMResponse(content="", images=[GeneratedImage(mime_type="image/png", data_base64="aGk=")]),
        ])
        ctx = _ctx(make_router(make_binding(gemini)))
        chunks = await _run(Capability.IMAGE_GENERATION, 2, "a cat in a hat", ctx)
        assert chunks[0].text == 'Successfully generated image based on the prompt: "a cat in a hat".'
        assert chunks[0].artifact == ImageArtifact(mime_type="image/png", data_base64="aGk=")

    @pytest.mark.asyncio
    async def test_image_generation_text_only_reply_raises(self):
        gemini = FakeClient(GEMINI, image_output=True, script=["I cannot draw that"])
        ctx = _ctx(make_router(make_binding(gemini)))
        with pytest.raises(CapabilityError, match="failed to return an image"):
            await _run(Capability.IMAGE_GENERATION, 2, "draw", ctx)


# ─────────────────────────────────────────────────────────────────────────────
# Sheets
# ─────────────────────────────────────────────────────────────────────────────

class TestSheets:
    def test_rows_from_records(self):
        rows = rows_from_records([{"name": "A", "city": "Paris"}, {"name": "B", "rank": 2}, "junk"])
        assert rows == (("name", "city", "rank"), ("A", "Paris", ""), ("B", "", "2"))

    def test_rows_from_records_empty(self):
        assert rows_from_records([]) == ()

    @pytest.mark.asyncio
    async def test_formats_previous_data(self):
        payload = {"data": [{"name": "Cafe A", "rating": 4.5}, {"name": "Cafe B", "rating": 4.1}]}
        gemini = FakeClient(GEMINI, script=["```json\n" + json.dumps(payload) + "\n```"])
        outputs = [
            StepOutput(Capability.WEB_SEARCH, "find cafes", "Cafe A 4.5, Cafe B 4.1"),
            StepOutput(Capability.COORDINATOR, "validate", "Found them, now tabulating."),
        ]
        ctx = _ctx(make_router(make_binding(gemini)), total=5, outputs=outputs)

        chunks = await _run(Capability.SHEETS, 4, "name and rating", ctx)

        assert chunks[0].text == "Successfully formatted 2 rows of data from the previous step."
        assert isinstance(chunks[0].artifact, TableArtifact)
        assert chunks[0].artifact.rows[0] == ("name", "rating")
        # The search output, not the coordinator status line, was tabulated
        prompt = gemini.calls[0][0][-1].content
        assert "Cafe A 4.5" in prompt
        assert "now tabulating" not in prompt
        assert gemini.calls[0][1].json_output is True

    @pytest.mark.asyncio
    async def test_no_previous_data_raises(self):
        outputs = [StepOutput(Capability.COORDINATOR, "todo", "Here is my plan")]
        ctx = _ctx(make_router(make_binding(FakeClient(GEMINI))), outputs=outputs)
        with pytest.raises(CapabilityError, match="no preceding data"):
            await _run(Capability.SHEETS, 2, "tabulate", ctx)

    @pytest.mark.asyncio
    async def test_invalid_json_raises(self):
        gemini = FakeClient(GEMINI, script=["here is a table: | a | b |"])
        outputs = [StepOutput(Capability.WEB_SEARCH, "find", "data")]
        ctx = _ctx(make_router(make_binding(gemini)), outputs=outputs)
        with pytest.raises(CapabilityError, match="invalid JSON"):
            await _run(Capability.SHEETS, 3, "tabulate", ctx)


# ─────────────────────────────────────────────────────────────────────────────
# Drafts
# ─────────────────────────────────────────────────────────────────────────────

class TestDrafts:
    @pytest.mark.asyncio
    async def test_email_is_a_labelled_draft(self):
        gemini = FakeClient(GEMINI, stream_script=[["Subject: Hi\n", "Body"]])
        ctx = _ctx(make_router(make_binding(gemini)))
        chunks = await _run(Capability.EMAIL, 2, "email Bob the results", ctx)
        assert chunks[0].text == "Draft email (not sent):\n\n"
        assert "".join(c.text for c in chunks[1:]) == "Subject: Hi\nBody"

    @pytest.mark.asyncio
    async def test_drive_is_a_labelled_draft(self):
        gemini = FakeClient(GEMINI, stream_script=[["- move report.pdf"]])
        ctx = _ctx(make_router(make_binding(gemini)))
        chunks = await _run(Capability.DRIVE, 2, "organise my reports", ctx)
        assert chunks[0].text.startswith("Drafted drive operations (nothing was changed)")


# ─────────────────────────────────────────────────────────────────────────────
# Coordinator
# ─────────────────────────────────────────────────────────────────────────────

class TestCoordinator:
    @pytest.mark.asyncio
    async def test_first_step_writes_todo(self):
        gemini = FakeClient(GEMINI, stream_script=[["Here is my plan:\n- [ ] search"]])
        ctx = _ctx(make_router(make_binding(gemini)), total=3)
        chunks = await _run(Capability.COORDINATOR, 1, "Create a to-do list", ctx)
        assert chunks[0].text.startswith("Here is my plan:")
        assert "Markdown checklist" in gemini.stream_calls[0][0][-1].content

    @pytest.mark.asyncio
    async def test_middle_step_validates(self):
        gemini = FakeClient(GEMINI, stream_script=[["Found cafes, now mapping."]])
        ctx = _ctx(make_router(make_binding(gemini)), total=5)
        await _run(Capability.COORDINATOR, 3, "Validate", ctx)
        assert "1-2 sentences" in gemini.stream_calls[0][0][-1].content

    @pytest.mark.asyncio
    async def test_last_step_synthesizes_without_review_on_primary(self):
        gemini = FakeClient(GEMINI, stream_script=[["Final ", "answer"]])
        outputs = [StepOutput(Capability.WEB_SEARCH, "find", "facts")]
        ctx = _ctx(make_router(make_binding(gemini)), request="Please research cafe history", outputs=outputs)
        chunks = await _run(Capability.COORDINATOR, 3, "Synthesize", ctx)
        assert [c.text for c in chunks] == ["Final ", "answer"]
        assert all(c.correction is None for c in chunks)
        assert gemini.calls == []

    @pytest.mark.asyncio
    async def test_non_primary_synthesis_is_corrected(self):
        gemini = FakeClient(GEMINI, script=["The answer is 4."])
        groq = FakeClient(GROQ, stream_script=[["4"]])
        ctx = _ctx(make_router(make_binding(gemini), make_binding(groq)), request="What's 2+2", total=1)

        chunks = await _run(Capability.COORDINATOR, 1, "Synthesize", ctx)

        assert chunks[0].text == "4"
        assert chunks[-1].correction == "The answer is 4."
        assert len(gemini.calls) == 1
