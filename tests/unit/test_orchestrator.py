"""
tests/unit/test_orchestrator.py — Orchestrator Unit Tests

Covers:
  - end-to-end run on a real router with scripted providers
    (plan → stream → reviewer correction → complete)
  - response cache hits, stores, and the attachment bypass
  - clarification: question event, resolve + re-plan, round bound,
    invalid option, timeout expiry
  - cancellation and terminal error mapping
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from fakes import FakeClient, make_binding, make_router
from relaymind.agent.capabilities import CapabilityHandler
from relaymind.agent.conversation import Conversation
from relaymind.agent.executor import CANCELLED_MESSAGE, PlanExecutor
from relaymind.agent.orchestrator import Orchestrator
from relaymind.agent.planner import SYNTHESIZE_TASK, Planner, PlanOutcome
from relaymind.agent.synthesizer import Synthesizer
from relaymind.agent.types import (
    Capability,
    CapabilityChunk,
    ClarificationOption,
    ClarificationRequest,
    Exchange,
    ExchangeStatus,
    Plan,
    PlanStep,
    StepResult,
    StepStatus,
)
from relaymind.brain.types import Attachment, ProviderFamily
from relaymind.exceptions import (
    ClarificationExpiredError,
    InvalidClarificationOptionError,
    RouterConfigError,
    UnknownExchangeError,
)
from relaymind.gateway.protocol import make_step_result
from relaymind.memory.response_cache import ResponseCache

GEMINI = ProviderFamily.GEMINI
GROQ = ProviderFamily.GROQ


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class StubExecutor:
    """Finishes every plan with a fixed outcome; optionally waits for cancellation."""

    def __init__(self, answer: str = "Done.", status=ExchangeStatus.COMPLETED, wait_for_cancel: bool = False):
        self.answer = answer
        self.status = status
        self.wait_for_cancel = wait_for_cancel
        self.calls: list[Exchange] = []

    async def execute(self, exchange, cancel_event=None):
        self.calls.append(exchange)
        if self.wait_for_cancel:
            await cancel_event.wait()
            exchange.status = ExchangeStatus.CANCELLED
            exchange.error_message = "Exchange was cancelled"
            return
        exchange.results = [StepResult.pending(s) for s in exchange.plan]
        if self.status == ExchangeStatus.COMPLETED:
            for r in exchange.results:
                r.status = StepStatus.COMPLETED
            exchange.final_answer = self.answer
        else:
            exchange.results[0].status = StepStatus.ERROR
            exchange.results[0].error = "boom"
            exchange.error_message = "Step 1 (web_search) failed: boom"
        exchange.status = self.status
        yield make_step_result(exchange.id, exchange.results[0].to_dict())


class SlowHandler(CapabilityHandler):
    """
    Holds a step open until it is torn down. With stall_first the first chunk
    never arrives, like a provider call that answers in one piece.
    """

    def __init__(self, capability: Capability, stall_first: bool = False):
        self.capability = capability
        self.stall_first = stall_first
        self.closed = 0

    async def handle(self, step, ctx):
        try:
            if self.stall_first:
                await asyncio.sleep(3600)
            yield CapabilityChunk(text=f"{step.capability.value} started")
            await asyncio.sleep(3600)
        finally:
            self.closed += 1


def _slow_executor(stall_first: bool = False) -> tuple[PlanExecutor, dict]:
    handlers = {cap: SlowHandler(cap, stall_first) for cap in Capability}
    return PlanExecutor(MagicMock(), MagicMock(), handlers=handlers, step_delay_seconds=0), handlers


SEARCH_PLAN = Plan(steps=(
    PlanStep(1, Capability.COORDINATOR, "todo"),
    PlanStep(2, Capability.WEB_SEARCH, "search"),
    PlanStep(3, Capability.COORDINATOR, "synthesize"),
))

FILE_QUESTION = ClarificationRequest(
    question="Do you want a downloadable file or just to see it?",
    options=(
        ClarificationOption("file", "Downloadable file"),
        ClarificationOption("screen", "Display only"),
    ),
)


def _planner(*outcomes: PlanOutcome) -> MagicMock:
    planner = MagicMock()
    planner.create_plan = AsyncMock(side_effect=list(outcomes))
    return planner


def _orc(planner=None, executor=None, cache: Optional[ResponseCache] = None, clock=None, **kwargs) -> Orchestrator:
    return Orchestrator(
        router=MagicMock(),
        planner=planner or _planner(PlanOutcome(plan=SEARCH_PLAN)),
        executor=executor or StubExecutor(),
        cache=cache,
        clock=clock or FakeClock(),
        **kwargs,
    )


def _types(events) -> list[str]:
    return [e.type for e in events]


# ─────────────────────────────────────────────────────────────────────────────
# End to end
# ─────────────────────────────────────────────────────────────────────────────

class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_simple_question_streams_corrects_and_caches(self):
        plan_json = json.dumps({"plan": [{"step": 1, "capability": "coordinator", "task": "Answer"}]})
        gemini = FakeClient(GEMINI, script=[plan_json, "The answer is 4."])
        groq = FakeClient(GROQ, stream_script=[["4"]])
        router = make_router(make_binding(gemini), make_binding(groq))
        synth = Synthesizer(router)
        cache = ResponseCache()
        orc = Orchestrator(
            router=router,
            planner=Planner(router),
            executor=PlanExecutor(router, synth, step_delay_seconds=0),
            cache=cache,
        )

        run = orc.submit("What's 2+2")
        events = await run.collect()

        assert _types(events) == [
            "status", "plan", "status", "chunk", "corrections", "step_result", "complete",
        ]
        assert events[1].data["steps"] == [{"step": 1, "capability": "coordinator", "task": SYNTHESIZE_TASK}]
        assert events[3].data == {"step": 1, "text": "4"}
        assert events[4].data["text"] == "The answer is 4."
        complete = events[-1].data
        assert complete["answer"] == "The answer is 4."
        assert complete["from_cache"] is False
        assert complete["agents_used"] == []
        assert run.exchange.status == ExchangeStatus.COMPLETED
        assert orc.get_exchange(run.exchange.id) is None

        # The planning call was JSON on the primary; the answer streamed from groq
        assert gemini.calls[0][1].json_output is True
        assert len(groq.stream_calls) == 1

        again = await orc.submit("What's 2+2?").collect()
        assert _types(again) == ["status", "complete"]
        assert again[-1].data["from_cache"] is True
        assert again[-1].data["answer"] == "The answer is 4."


# ─────────────────────────────────────────────────────────────────────────────
# Cache
# ─────────────────────────────────────────────────────────────────────────────

class TestCache:
    @pytest.mark.asyncio
    async def test_similar_request_served_from_cache(self):
        cache = ResponseCache()
        cache.store("Find cafes near Central Park", "Cafe Lalo and others", ["web_search", "maps"])
        planner = _planner()
        orc = _orc(planner=planner, cache=cache)

        run = orc.submit("Find cafe near Central Park, NYC")
        events = await run.collect()

        assert _types(events) == ["status", "complete"]
        data = events[-1].data
        assert data["from_cache"] is True
        assert data["similarity"] == pytest.approx(0.8333, abs=1e-3)
        assert data["agents_used"] == ["web_search", "maps"]
        assert run.exchange.from_cache
        planner.create_plan.assert_not_called()

    @pytest.mark.asyncio
    async def test_completed_answer_is_stored(self):
        cache = ResponseCache()
        orc = _orc(executor=StubExecutor(answer="Three cafes."), cache=cache)
        events = await orc.submit("Find cafes near the Louvre").collect()
        assert events[-1].data["agents_used"] == ["web_search"]
        hit = cache.lookup("find cafes near the louvre")
        assert hit.answer == "Three cafes."
        assert hit.agents_used == ("web_search",)

    @pytest.mark.asyncio
    async def test_attachments_bypass_cache(self):
        cache = ResponseCache()
        cache.store("what is in this picture", "A cached cat")
        planner = _planner(PlanOutcome(plan=SEARCH_PLAN))
        orc = _orc(planner=planner, cache=cache)
        image = Attachment(mime_type="image/png", data=b"\x89PNG")

        events = await orc.submit("What is in this picture", attachments=[image]).collect()

        assert events[-1].data["from_cache"] is False
        assert planner.create_plan.call_args.kwargs["has_image"] is True
        assert cache.lookup("what is in this picture").answer == "A cached cat"

    @pytest.mark.asyncio
    async def test_cache_failure_is_not_fatal(self):
        cache = MagicMock()
        cache.lookup.side_effect = RuntimeError("corrupt")
        cache.store.side_effect = RuntimeError("disk full")
        events = await _orc(cache=cache).submit("anything").collect()
        assert events[-1].type == "complete"


# ─────────────────────────────────────────────────────────────────────────────
# Clarification
# ─────────────────────────────────────────────────────────────────────────────

class TestClarification:
    @pytest.mark.asyncio
    async def test_clarification_ends_run_and_resolve_replans(self):
        planner = _planner(
            PlanOutcome(clarification=FILE_QUESTION),
            PlanOutcome(plan=SEARCH_PLAN),
        )
        executor = StubExecutor(answer="Here is your file.")
        orc = _orc(planner=planner, executor=executor)

        run = orc.submit("List the top 10 restaurants in Paris")
        events = await run.collect()

        assert _types(events) == ["status", "clarification"]
        assert events[-1].data["options"][0] == {"key": "file", "value": "Downloadable file"}
        eid = run.exchange.id
        assert orc.get_exchange(eid).status == ExchangeStatus.CLARIFICATION_NEEDED
        assert executor.calls == []

        resumed = await orc.resolve_clarification(eid, "file").collect()

        assert _types(resumed) == ["status", "plan", "status", "step_result", "complete"]
        assert resumed[-1].data["answer"] == "Here is your file."
        replan_text = planner.create_plan.call_args_list[1].args[0]
        assert replan_text == (
            'Original: "List the top 10 restaurants in Paris". '
            'User chose: "Downloadable file". Generate plan.'
        )
        assert run.exchange.status == ExchangeStatus.COMPLETED
        assert orc.get_exchange(eid) is None

    @pytest.mark.asyncio
    async def test_option_object_accepted(self):
        orc = _orc(planner=_planner(PlanOutcome(clarification=FILE_QUESTION), PlanOutcome(plan=SEARCH_PLAN)))
        run = orc.submit("list restaurants")
        await run.collect()
        events = await orc.resolve_clarification(run.exchange.id, FILE_QUESTION.options[1]).collect()
        assert events[-1].type == "complete"

    @pytest.mark.asyncio
    async def test_rounds_are_bounded(self):
        planner = _planner(
            PlanOutcome(clarification=FILE_QUESTION),
            PlanOutcome(clarification=FILE_QUESTION),
            PlanOutcome(plan=SEARCH_PLAN),
        )
        orc = _orc(planner=planner, max_clarification_rounds=2)

        run = orc.submit("list restaurants")
        await run.collect()
        second = await orc.resolve_clarification(run.exchange.id, "file").collect()
        assert second[-1].type == "clarification"
        third = await orc.resolve_clarification(run.exchange.id, "screen").collect()
        assert third[-1].type == "complete"

        allowed = [c.kwargs["allow_clarification"] for c in planner.create_plan.call_args_list]
        assert allowed == [True, True, False]
        assert run.exchange.clarification_rounds == 2

    @pytest.mark.asyncio
    async def test_invalid_option_keeps_exchange_pending(self):
        orc = _orc(planner=_planner(PlanOutcome(clarification=FILE_QUESTION)))
        run = orc.submit("list restaurants")
        await run.collect()

        with pytest.raises(InvalidClarificationOptionError) as exc_info:
            orc.resolve_clarification(run.exchange.id, "fax")
        assert exc_info.value.valid == ["file", "screen"]
        assert orc.get_exchange(run.exchange.id).status == ExchangeStatus.CLARIFICATION_NEEDED

    def test_unknown_exchange(self):
        with pytest.raises(UnknownExchangeError):
            _orc().resolve_clarification("exc_missing", "file")

    @pytest.mark.asyncio
    async def test_stale_clarification_expires(self):
        clock = FakeClock()
        orc = _orc(
            planner=_planner(PlanOutcome(clarification=FILE_QUESTION)),
            clock=clock,
            clarification_timeout_seconds=900,
        )
        run = orc.submit("list restaurants")
        await run.collect()
        eid = run.exchange.id

        clock.now += 901
        with pytest.raises(ClarificationExpiredError):
            orc.resolve_clarification(eid, "file")
        assert run.exchange.status == ExchangeStatus.ERROR
        assert run.exchange.error_message == "Clarification timed out"
        with pytest.raises(UnknownExchangeError):
            orc.resolve_clarification(eid, "file")

    @pytest.mark.asyncio
    async def test_expire_stale_sweeps_on_submit(self):
        clock = FakeClock()
        orc = _orc(
            planner=_planner(PlanOutcome(clarification=FILE_QUESTION), PlanOutcome(plan=SEARCH_PLAN)),
            clock=clock,
            clarification_timeout_seconds=60,
        )
        stale = orc.submit("list restaurants")
        await stale.collect()
        clock.now += 61
        await orc.submit("something else").collect()
        assert stale.exchange.status == ExchangeStatus.ERROR
        assert orc.get_exchange(stale.exchange.id) is None


# ─────────────────────────────────────────────────────────────────────────────
# Cancellation + errors
# ─────────────────────────────────────────────────────────────────────────────

class TestCancelAndErrors:
    @pytest.mark.asyncio
    async def test_cancel_pending_clarification(self):
        orc = _orc(planner=_planner(PlanOutcome(clarification=FILE_QUESTION)))
        run = orc.submit("list restaurants")
        await run.collect()
        assert orc.cancel(run.exchange.id) is True
        assert run.exchange.status == ExchangeStatus.CANCELLED
        assert orc.get_exchange(run.exchange.id) is None
        assert orc.cancel(run.exchange.id) is False

    def test_cancel_unknown(self):
        assert _orc().cancel("exc_nope") is False

    @pytest.mark.asyncio
    async def test_cancel_running_exchange(self):
        orc = _orc(executor=StubExecutor(wait_for_cancel=True))
        run = orc.submit("Find cafes")
        events = []
        async for event in run:
            events.append(event)
            if event.type == "status" and event.data["status"] == "executing":
                assert orc.cancel(run.exchange.id) is True

        assert events[-1].type == "error"
        assert events[-1].data["code"] == "cancelled"
        assert run.exchange.status == ExchangeStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_interrupts_step_waiting_on_provider(self):
        executor, handlers = _slow_executor(stall_first=True)
        orc = _orc(executor=executor)
        run = orc.submit("Find cafes")
        events = []

        async def drive():
            async for event in run:
                events.append(event)
                if event.type == "status" and event.data["status"] == "executing":
                    asyncio.get_running_loop().call_later(0.05, orc.cancel, run.exchange.id)

        await asyncio.wait_for(drive(), timeout=2)

        assert _types(events)[-2:] == ["step_result", "error"]
        assert events[-2].data["error"] == CANCELLED_MESSAGE
        assert events[-1].data["code"] == "cancelled"
        assert handlers[Capability.COORDINATOR].closed == 1
        assert orc.get_exchange(run.exchange.id) is None

    @pytest.mark.asyncio
    async def test_closing_run_mid_step_cancels_and_forgets(self):
        executor, handlers = _slow_executor()
        orc = _orc(executor=executor)
        run = orc.submit("Find cafes")
        async for event in run:
            if event.type == "chunk":
                break

        await run.aclose()

        assert run.exchange.status == ExchangeStatus.CANCELLED
        assert [r.status for r in run.exchange.results] == [
            StepStatus.ERROR, StepStatus.PENDING, StepStatus.PENDING,
        ]
        assert run.exchange.results[0].error == CANCELLED_MESSAGE
        assert handlers[Capability.COORDINATOR].closed == 1
        assert orc.get_exchange(run.exchange.id) is None
        assert orc.cancel(run.exchange.id) is False

    @pytest.mark.asyncio
    async def test_closing_unstarted_run_forgets_exchange(self):
        orc = _orc()
        run = orc.submit("Find cafes")
        await run.aclose()
        assert run.exchange.status == ExchangeStatus.CANCELLED
        assert orc.get_exchange(run.exchange.id) is None

    @pytest.mark.asyncio
    async def test_closing_after_clarification_keeps_exchange_pending(self):
        orc = _orc(planner=_planner(PlanOutcome(clarification=FILE_QUESTION)))
        run = orc.submit("list restaurants")
        await run.collect()
        await run.aclose()
        assert run.exchange.status == ExchangeStatus.CLARIFICATION_NEEDED
        assert orc.get_exchange(run.exchange.id) is run.exchange

    @pytest.mark.asyncio
    async def test_step_failure_maps_to_error_event(self):
        orc = _orc(executor=StubExecutor(status=ExchangeStatus.ERROR))
        events = await orc.submit("Find cafes").collect()
        assert events[-1].data == {
            "code": "step_failed",
            "message": "Step 1 (web_search) failed: boom",
            "step": 1,
        }

    @pytest.mark.asyncio
    async def test_known_error_uses_class_name_as_code(self):
        planner = MagicMock()
        planner.create_plan = AsyncMock(side_effect=RouterConfigError("no keys"))
        run = _orc(planner=planner).submit("hi")
        events = await run.collect()
        assert events[-1].data["code"] == "RouterConfigError"
        assert run.exchange.status == ExchangeStatus.ERROR

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(self):
        planner = MagicMock()
        planner.create_plan = AsyncMock(side_effect=KeyError("oops"))
        events = await _orc(planner=planner).submit("hi").collect()
        assert events[-1].data["code"] == "internal"
        assert "KeyError" in events[-1].data["message"]


class TestSubmit:
    @pytest.mark.asyncio
    async def test_history_and_depth_passed_to_planner(self):
        conv = Conversation()
        earlier = Exchange.create("What is Rust?")
        earlier.status = ExchangeStatus.COMPLETED
        earlier.final_answer = "A systems language."
        conv.add(earlier)
        planner = _planner(PlanOutcome(plan=SEARCH_PLAN))
        orc = _orc(planner=planner)

        run = orc.submit("And Go?", conversation=conv, cycle_depth=9)
        await run.collect()

        kwargs = planner.create_plan.call_args.kwargs
        assert kwargs["history"] == "User: What is Rust?\nAssistant: A systems language."
        assert kwargs["cycle_depth"] == 5
        assert run.exchange.conversation_id == conv.id
        assert len(conv) == 2
