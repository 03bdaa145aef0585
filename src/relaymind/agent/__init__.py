"""
agent/ — RelayMind Orchestration Core

Public API:
    from relaymind.agent import Orchestrator, Conversation

Component overview:
    Planner         Request → Plan (or ClarificationRequest), convention enforced in code
    PlanExecutor    Runs plan steps sequentially, streaming chunk / step_result events
    Capabilities    One handler per capability (search, maps, vision, sheets, ...)
    Synthesizer     Coordinator prompts: to-do list, validate update, final answer
    Conversation    Exchanges of one user thread + planner history
    Orchestrator    Cache → plan → execute → complete, clarification + cancellation
"""

from relaymind.agent.capabilities import CapabilityHandler, ExecutionContext, default_handlers
from relaymind.agent.conversation import Conversation
from relaymind.agent.executor import PlanExecutor
from relaymind.agent.orchestrator import ExchangeRun, Orchestrator
from relaymind.agent.planner import Planner, PlanOutcome, default_plan, enforce_convention
from relaymind.agent.synthesizer import Synthesizer
from relaymind.agent.types import (
    Capability,
    ClarificationOption,
    ClarificationRequest,
    Exchange,
    ExchangeStatus,
    Geolocation,
    Plan,
    PlanStep,
    StepResult,
    StepStatus,
)

__all__ = [
    "Orchestrator",
    "ExchangeRun",
    "Conversation",
    "Planner",
    "PlanOutcome",
    "PlanExecutor",
    "Synthesizer",
    "CapabilityHandler",
    "ExecutionContext",
    "default_handlers",
    "default_plan",
    "enforce_convention",
    "Capability",
    "ClarificationOption",
    "ClarificationRequest",
    "Exchange",
    "ExchangeStatus",
    "Geolocation",
    "Plan",
    "PlanStep",
    "StepResult",
    "StepStatus",
]
