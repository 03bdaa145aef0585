"""
agent/orchestrator.py — Exchange Orchestrator

The entry point for a request. Implements plan → execute → synthesize for
each Exchange and exposes the result as an async stream of protocol events.

For each submitted request the orchestrator:
    1. Checks the ResponseCache (skipped for requests with attachments);
       a hit completes the exchange at once with no plan
    2. Asks the Planner for a Plan or a ClarificationRequest
       - clarification → the run ends; resolve_clarification() re-plans with
         the chosen option folded into the request
    3. Hands the Plan to the PlanExecutor and relays its step events
    4. Stores the final answer in the cache and emits `complete`

Clarification is bounded: after max_clarification_rounds the planner is told
not to ask again, and an exchange left waiting longer than
clarification_timeout_seconds expires to Error the next time it is touched.

Usage:
    orc = Orchestrator.from_settings(settings)
    run = orc.submit("Find cafes near the Louvre", conversation=conv)
    async for event in run:
        print(event.type, event.data)
"""

from __future__ import annotations

import asyncio
import time
from contextlib import aclosing
from typing import AsyncIterator, Callable, Optional, Union

from relaymind.agent.conversation import Conversation
from relaymind.agent.executor import CANCELLED_MESSAGE, PlanExecutor
from relaymind.agent.planner import Planner
from relaymind.agent.synthesizer import Synthesizer
from relaymind.agent.types import ClarificationOption, Exchange, ExchangeStatus, Geolocation, StepStatus
from relaymind.brain.router import ProviderRouter
from relaymind.brain.types import Attachment
from relaymind.exceptions import (
    ClarificationError,
    ClarificationExpiredError,
    InvalidClarificationOptionError,
    RelaymindError,
    UnknownExchangeError,
)
from relaymind.gateway.protocol import (
    ExchangeEvent,
    make_clarification,
    make_complete,
    make_error,
    make_plan,
    make_status,
)
from relaymind.memory.response_cache import ResponseCache
from relaymind.observability.logger import bind_exchange, clear_exchange, get_logger

log = get_logger(__name__)

_REPLAN_TEMPLATE = 'Original: "{request}". User chose: "{choice}". Generate plan.'


# ─────────────────────────────────────────────────────────────────────────────
# Run handle
# ─────────────────────────────────────────────────────────────────────────────


class ExchangeRun:
    """
    Async iterator over one run's events, with the Exchange it drives.

    aclose() abandons the run (a transport does this when its client goes
    away): a started run unwinds its current step and ends Cancelled; a run
    that never started hands its exchange to `on_abandon`.
    """

    def __init__(
        self,
        exchange: Exchange,
        events: AsyncIterator[ExchangeEvent],
        on_abandon: Optional[Callable[[Exchange], None]] = None,
    ):
        self.exchange = exchange
        self._events = events
        self._on_abandon = on_abandon
        self._started = False

    def __aiter__(self) -> "ExchangeRun":
        return self

    async def __anext__(self) -> ExchangeEvent:
        self._started = True
        return await self._events.__anext__()

    async def aclose(self) -> None:
        await self._events.aclose()  # type: ignore[attr-defined]
        if not self._started and self._on_abandon is not None:
            self._on_abandon(self.exchange)

    async def collect(self) -> list[ExchangeEvent]:
        return [event async for event in self]


# ─────────────────────────────────────────────────────────────────────────────
# Orchestrator
# ─────────────────────────────────────────────────────────────────────────────


class Orchestrator:
    """
    Coordinates planning, execution and caching for every Exchange.

    Inject all dependencies via the constructor; use from_settings() when
    wiring up the application. Many exchanges may run concurrently; each
    one runs its own steps sequentially.
    """

    def __init__(
        self,
        router: ProviderRouter,
        planner: Planner,
        executor: PlanExecutor,
        cache: Optional[ResponseCache] = None,
        max_clarification_rounds: int = 2,
        clarification_timeout_seconds: float = 900.0,
        history_limit: int = 3,
        default_cycle_depth: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._router = router
        self._planner = planner
        self._executor = executor
        self._cache = cache
        self._max_rounds = max_clarification_rounds
        self._clar_timeout = clarification_timeout_seconds
        self._history_limit = history_limit
        self._default_depth = default_cycle_depth
        self._clock = clock

        # Live exchanges only: planning, waiting for clarification or executing
        self._exchanges: dict[str, Exchange] = {}
        self._conversations: dict[str, Conversation] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    @classmethod
    def from_settings(cls, settings) -> "Orchestrator":
        router = ProviderRouter.from_settings(settings)
        ex = settings.executor
        synthesizer = Synthesizer(router, max_tokens=settings.router.max_tokens)
        return cls(
            router=router,
            planner=Planner(router, max_tokens=ex.planner_max_tokens),
            executor=PlanExecutor(router, synthesizer, step_delay_seconds=ex.step_delay_seconds),
            cache=ResponseCache.from_settings(settings) if settings.cache.enabled else None,
            max_clarification_rounds=ex.max_clarification_rounds,
            clarification_timeout_seconds=ex.clarification_timeout_seconds,
            history_limit=ex.history_limit,
            default_cycle_depth=ex.default_cycle_depth,
        )

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def router(self) -> ProviderRouter:
        return self._router

    def get_exchange(self, exchange_id: str) -> Optional[Exchange]:
        return self._exchanges.get(exchange_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def submit(
        self,
        request_text: str,
        *,
        conversation: Optional[Conversation] = None,
        attachments: Optional[list[Attachment]] = None,
        cycle_depth: Optional[int] = None,
        location: Optional[Geolocation] = None,
    ) -> ExchangeRun:
        """Start a new Exchange. Iterate the returned run to drive it."""
        self.expire_stale()
        depth = self._default_depth if cycle_depth is None else max(1, min(5, int(cycle_depth)))
        exchange = Exchange.create(
            request_text,
            attachments=attachments,
            location=location,
            cycle_depth=depth,
        )
        if conversation is not None:
            conversation.add(exchange)
            self._conversations[exchange.id] = conversation
        self._register(exchange)
        log.info(
            "orchestrator.submit",
            exchange_id=exchange.id,
            request=request_text[:120],
            attachments=len(exchange.attachments),
            cycle_depth=depth,
        )
        return ExchangeRun(
            exchange,
            self._run(exchange, planning_text=request_text, use_cache=True),
            on_abandon=self._settle,
        )

    def resolve_clarification(
        self,
        exchange_id: str,
        option: Union[str, ClarificationOption],
    ) -> ExchangeRun:
        """
        Answer a pending clarification and re-plan.

        Raises:
            UnknownExchangeError              no live exchange with that id
            ClarificationExpiredError         the exchange waited too long
            ClarificationError                the exchange is not waiting for an answer
            InvalidClarificationOptionError   the option is not one that was offered
        """
        exchange = self._exchanges.get(exchange_id)
        if exchange is None:
            raise UnknownExchangeError(exchange_id)
        if self._expire_if_stale(exchange):
            raise ClarificationExpiredError(
                f"Exchange '{exchange_id}' waited more than {self._clar_timeout:.0f}s for clarification"
            )
        if exchange.status != ExchangeStatus.CLARIFICATION_NEEDED or exchange.clarification is None:
            raise ClarificationError(f"Exchange '{exchange_id}' is not awaiting clarification")

        key = option.key if isinstance(option, ClarificationOption) else str(option)
        chosen = exchange.clarification.option(key)
        if chosen is None:
            raise InvalidClarificationOptionError(
                exchange_id, key, [o.key for o in exchange.clarification.options]
            )

        log.info("orchestrator.clarification_resolved", exchange_id=exchange_id, option=chosen.key)
        exchange.clarification = None
        exchange.clarification_asked_at = None
        exchange.status = ExchangeStatus.PLANNING
        planning_text = _REPLAN_TEMPLATE.format(request=exchange.request_text, choice=chosen.value)
        return ExchangeRun(
            exchange,
            self._run(exchange, planning_text=planning_text, use_cache=False),
            on_abandon=self._settle,
        )

    def cancel(self, exchange_id: str) -> bool:
        """Request cancellation. Returns False for unknown or already finished exchanges."""
        exchange = self._exchanges.get(exchange_id)
        if exchange is None or exchange.status.is_terminal:
            return False
        if exchange.status == ExchangeStatus.CLARIFICATION_NEEDED:
            exchange.status = ExchangeStatus.CANCELLED
            exchange.error_message = "Exchange was cancelled"
            self._forget(exchange)
        else:
            self._cancel_events[exchange_id].set()
        log.info("orchestrator.cancel_requested", exchange_id=exchange_id)
        return True

    def expire_stale(self) -> list[str]:
        """Expire every exchange that has waited too long for clarification."""
        return [ex.id for ex in list(self._exchanges.values()) if self._expire_if_stale(ex)]

    # ─────────────────────────────────────────────────────────────────────────
    # Run loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _run(
        self,
        exchange: Exchange,
        planning_text: str,
        use_cache: bool,
    ) -> AsyncIterator[ExchangeEvent]:
        bind_exchange(exchange.id, exchange.conversation_id)
        t0 = time.monotonic()
        try:
            yield make_status(exchange.id, ExchangeStatus.PLANNING.value, "Planning")

            if use_cache and not exchange.attachments:
                hit = self._cache_lookup(exchange.request_text)
                if hit is not None:
                    exchange.from_cache = True
                    exchange.similarity = hit.similarity
                    exchange.final_answer = hit.answer
                    exchange.status = ExchangeStatus.COMPLETED
                    yield make_complete(
                        exchange.id,
                        hit.answer,
                        from_cache=True,
                        similarity=hit.similarity,
                        agents_used=list(hit.agents_used),
                    )
                    return

            exchange.status = ExchangeStatus.PLANNING
            outcome = await self._planner.create_plan(
                planning_text,
                history=self._history(exchange),
                cycle_depth=exchange.cycle_depth,
                has_image=exchange.has_image,
                has_video=exchange.has_video,
                allow_clarification=exchange.clarification_rounds < self._max_rounds,
            )

            if outcome.clarification is not None:
                exchange.clarification = outcome.clarification
                exchange.clarification_rounds += 1
                exchange.clarification_asked_at = self._clock()
                exchange.status = ExchangeStatus.CLARIFICATION_NEEDED
                log.info(
                    "orchestrator.clarification_needed",
                    round=exchange.clarification_rounds,
                    options=len(outcome.clarification.options),
                )
                yield make_clarification(
                    exchange.id,
                    outcome.clarification.question,
                    outcome.clarification.to_dict()["options"],
                )
                return

            exchange.plan = outcome.plan
            yield make_plan(exchange.id, exchange.plan.to_list())
            yield make_status(exchange.id, ExchangeStatus.EXECUTING.value, "Executing plan")

            cancel_event = self._cancel_events.get(exchange.id)
            async with aclosing(self._executor.execute(exchange, cancel_event)) as events:
                async for event in events:
                    yield event

            if exchange.status == ExchangeStatus.COMPLETED:
                answer = exchange.final_answer or ""
                agents = exchange.plan.capabilities
                if not exchange.attachments:
                    self._cache_store(exchange.request_text, answer, agents)
                log.info(
                    "orchestrator.exchange_done",
                    ms=round((time.monotonic() - t0) * 1000),
                    steps=len(exchange.plan),
                )
                yield make_complete(exchange.id, answer, agents_used=agents)
            elif exchange.status == ExchangeStatus.CANCELLED:
                yield make_error(exchange.id, exchange.error_message or "Exchange was cancelled", code="cancelled")
            else:
                failed = next((r.ordinal for r in exchange.results if r.error), None)
                yield make_error(
                    exchange.id,
                    exchange.error_message or "Plan execution failed",
                    code="step_failed",
                    step=failed,
                )

        except RelaymindError as e:
            exchange.status = ExchangeStatus.ERROR
            exchange.error_message = str(e)
            log.error("orchestrator.exchange_error", error_type=type(e).__name__, error=str(e))
            yield make_error(exchange.id, str(e), code=type(e).__name__)
        except Exception as e:
            exchange.status = ExchangeStatus.ERROR
            exchange.error_message = str(e)
            log.error("orchestrator.exchange_error", error=str(e), exc_info=True)
            yield make_error(exchange.id, f"{type(e).__name__}: {e}", code="internal")
        finally:
            self._settle(exchange)
            clear_exchange()

    # ── Internals ─────────────────────────────────────────────────────────────

    def _register(self, exchange: Exchange) -> None:
        self._exchanges[exchange.id] = exchange
        self._cancel_events[exchange.id] = asyncio.Event()

    def _settle(self, exchange: Exchange) -> None:
        """
        Called when a run stops for any reason. An exchange waiting for
        clarification stays live; anything else is dropped, and a run that
        stopped before reaching a terminal state is recorded as Cancelled.
        """
        if exchange.status == ExchangeStatus.CLARIFICATION_NEEDED:
            return
        if not exchange.status.is_terminal:
            for r in exchange.results:
                if r.status == StepStatus.RUNNING:
                    r.status = StepStatus.ERROR
                    r.error = CANCELLED_MESSAGE
            exchange.status = ExchangeStatus.CANCELLED
            exchange.error_message = "Exchange was cancelled"
            log.info("orchestrator.run_abandoned", exchange_id=exchange.id)
        self._forget(exchange)

    def _forget(self, exchange: Exchange) -> None:
        self._exchanges.pop(exchange.id, None)
        self._cancel_events.pop(exchange.id, None)
        self._conversations.pop(exchange.id, None)

    def _history(self, exchange: Exchange) -> str:
        conv = self._conversations.get(exchange.id)
        if conv is None:
            return ""
        return conv.history_summary(self._history_limit, exclude=exchange.id)

    def _expire_if_stale(self, exchange: Exchange) -> bool:
        if exchange.status != ExchangeStatus.CLARIFICATION_NEEDED or exchange.clarification_asked_at is None:
            return False
        waited = self._clock() - exchange.clarification_asked_at
        if waited <= self._clar_timeout:
            return False
        exchange.status = ExchangeStatus.ERROR
        exchange.error_message = "Clarification timed out"
        self._forget(exchange)
        log.warning("orchestrator.clarification_expired", exchange_id=exchange.id, waited_s=round(waited))
        return True

    def _cache_lookup(self, text: str):
        try:
            return self._cache.lookup(text) if self._cache is not None else None
        except Exception as e:
            log.warning("orchestrator.cache_lookup_failed", error=str(e))
            return None

    def _cache_store(self, text: str, answer: str, agents: list[str]) -> None:
        if self._cache is None:
            return
        try:
            self._cache.store(text, answer, agents)
        except Exception as e:
            log.warning("orchestrator.cache_store_failed", error=str(e))
