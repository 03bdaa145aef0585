"""
agent/executor.py — Plan Executor

Runs an Exchange's Plan strictly in ordinal order, one step at a time, and
turns what the capability handlers yield into protocol events.

Per step:
    Pending → Running → (chunk events) → Completed | Error

  - a correction chunk replaces the step's accumulated text and emits a
    `corrections` event
  - the first failing step aborts the plan: its result carries the error,
    later steps stay Pending, the Exchange moves to Error
  - a fixed pause separates steps (none after the last one)
  - cancellation, via the exchange's cancel Event or task cancellation,
    interrupts the pending read at once, so a handler waiting on a whole
    non-streamed provider call is unwound too. The running step ends as
    Error("cancelled") and the Exchange moves to Cancelled

The executor emits only step-level events. The terminal complete / error
event is the orchestrator's job, decided from exchange.status.

Usage:
    executor = PlanExecutor(router, synthesizer, step_delay_seconds=1.0)
    async for event in executor.execute(exchange, cancel_event):
        ...
"""

from __future__ import annotations

import asyncio
from contextlib import suppress
from typing import AsyncIterator, Optional, Union

from relaymind.agent.capabilities import CapabilityHandler, ExecutionContext, default_handlers
from relaymind.agent.synthesizer import Synthesizer
from relaymind.agent.types import (
    Capability,
    CapabilityChunk,
    Exchange,
    ExchangeStatus,
    StepOutput,
    StepResult,
    StepStatus,
)
from relaymind.brain.router import ProviderRouter
from relaymind.exceptions import AgentError, CapabilityError, StepExecutionError
from relaymind.gateway.protocol import ExchangeEvent, make_chunk, make_corrections, make_step_result
from relaymind.observability.logger import get_logger

log = get_logger(__name__)

CANCELLED_MESSAGE = "cancelled"

_CANCELLED = object()


class PlanExecutor:
    """
    Executes one plan at a time per call; holds no per-exchange state, so a
    single instance is shared by every concurrent exchange.
    """

    def __init__(
        self,
        router: ProviderRouter,
        synthesizer: Synthesizer,
        handlers: Optional[dict[Capability, CapabilityHandler]] = None,
        step_delay_seconds: float = 1.0,
    ) -> None:
        self._router = router
        self._synth = synthesizer
        self._handlers = handlers if handlers is not None else default_handlers()
        self._delay = step_delay_seconds

    async def execute(
        self,
        exchange: Exchange,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ExchangeEvent]:
        if exchange.plan is None:
            raise AgentError(f"Exchange {exchange.id} has no plan to execute")

        cancel = cancel_event or asyncio.Event()
        steps = list(exchange.plan)
        exchange.results = [StepResult.pending(s) for s in steps]
        exchange.status = ExchangeStatus.EXECUTING
        ctx = ExecutionContext(
            exchange=exchange,
            router=self._router,
            synthesizer=self._synth,
            total_steps=len(steps),
        )
        log.info("executor.start", steps=len(steps), capabilities=exchange.plan.capabilities)

        for index, step in enumerate(steps):
            if cancel.is_set():
                self._mark_cancelled(exchange, None)
                return

            result = exchange.results[index]
            result.status = StepStatus.RUNNING
            log.info("executor.step_start", step=step.ordinal, capability=step.capability.value)

            handler = self._handlers.get(step.capability)
            chunks = handler.handle(step, ctx) if handler is not None else None
            cancelled = False
            cancel_wait = asyncio.create_task(cancel.wait())
            try:
                if chunks is None:
                    raise CapabilityError(f"No handler registered for capability '{step.capability.value}'")
                while True:
                    if cancel.is_set():
                        cancelled = True
                        break
                    chunk = await _next_or_cancel(chunks, cancel_wait)
                    if chunk is None:
                        break
                    if chunk is _CANCELLED or cancel.is_set():
                        cancelled = True
                        break
                    for event in _apply(exchange.id, result, chunk):
                        yield event
            except (asyncio.CancelledError, GeneratorExit):
                self._mark_cancelled(exchange, result)
                raise
            except Exception as e:
                err = StepExecutionError(step.ordinal, step.capability.value, str(e) or type(e).__name__)
                result.status = StepStatus.ERROR
                result.error = str(err)
                exchange.status = ExchangeStatus.ERROR
                exchange.error_message = f"Step {step.ordinal} ({step.capability.value}) failed: {err}"
                log.error(
                    "executor.step_failed",
                    step=step.ordinal,
                    capability=step.capability.value,
                    error_type=type(e).__name__,
                    error=str(e)[:300],
                )
                yield make_step_result(exchange.id, result.to_dict())
                return
            finally:
                cancel_wait.cancel()
                if chunks is not None:
                    await chunks.aclose()

            if cancelled:
                self._mark_cancelled(exchange, result)
                yield make_step_result(exchange.id, result.to_dict())
                return

            result.status = StepStatus.COMPLETED
            ctx.outputs.append(StepOutput(
                capability=step.capability,
                task=step.task,
                result=result.text,
                artifact=result.artifact,
            ))
            log.info("executor.step_done", step=step.ordinal, chars=len(result.text))
            yield make_step_result(exchange.id, result.to_dict())

            if index < len(steps) - 1 and self._delay > 0:
                with suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(cancel.wait(), timeout=self._delay)

        exchange.final_answer = _final_answer(exchange.results)
        exchange.status = ExchangeStatus.COMPLETED
        log.info("executor.complete", answer_chars=len(exchange.final_answer))

    @staticmethod
    def _mark_cancelled(exchange: Exchange, running: Optional[StepResult]) -> None:
        if running is not None:
            running.status = StepStatus.ERROR
            running.error = CANCELLED_MESSAGE
        exchange.status = ExchangeStatus.CANCELLED
        exchange.error_message = "Exchange was cancelled"
        log.info("executor.cancelled", step=running.ordinal if running else None)


async def _pull(chunks: AsyncIterator[CapabilityChunk]) -> Optional[CapabilityChunk]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def _next_or_cancel(
    chunks: AsyncIterator[CapabilityChunk],
    cancel_wait: "asyncio.Task[bool]",
) -> Union[CapabilityChunk, object, None]:
    """
    Read the next chunk while watching the exchange's cancel signal.

    Returns None at the end of the stream and _CANCELLED when the signal
    fires first. In that case the pending read is cancelled, which unwinds
    the handler and the provider call it is waiting on.
    """
    read = asyncio.create_task(_pull(chunks))
    try:
        await asyncio.wait({read, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        if read.done():
            return read.result()
        return _CANCELLED
    finally:
        if not read.done():
            read.cancel()
            await asyncio.wait({read})
            if not read.cancelled() and read.exception() is not None:
                log.debug("executor.read_abandoned", error=str(read.exception())[:200])


def _apply(exchange_id: str, result: StepResult, chunk: CapabilityChunk) -> list[ExchangeEvent]:
    """Fold one chunk into the running StepResult; return the events it produces."""
    events: list[ExchangeEvent] = []
    if chunk.text:
        result.text += chunk.text
        events.append(make_chunk(exchange_id, result.ordinal, chunk.text))
    for source in chunk.sources:
        if source not in result.sources:
            result.sources.append(source)
    if chunk.artifact is not None:
        result.artifact = chunk.artifact
    if chunk.correction is not None:
        result.text = chunk.correction
        events.append(make_corrections(exchange_id, result.ordinal, chunk.correction))
    return events


def _final_answer(results: list[StepResult]) -> str:
    for r in reversed(results):
        if r.capability == Capability.COORDINATOR and r.status == StepStatus.COMPLETED:
            return r.text
    return results[-1].text if results else ""
