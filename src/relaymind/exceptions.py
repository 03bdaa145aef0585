"""
exceptions.py — RelayMind Unified Error Hierarchy

All RelayMind-specific exceptions live here. Every layer of the stack
raises typed subclasses of RelaymindError — never bare Exception.

Import from here, not from individual modules:
    from relaymind.exceptions import ProviderExhaustedError, ClarificationExpiredError

Hierarchy:
    RelaymindError
    ├── AgentError
    │   ├── PlanError
    │   ├── StepExecutionError
    │   ├── CapabilityError
    │   └── ClarificationError
    │       ├── UnknownExchangeError
    │       ├── InvalidClarificationOptionError
    │       └── ClarificationExpiredError
    ├── RouterError
    │   ├── RouterConfigError
    │   ├── ProviderExhaustedError
    │   └── ProviderStreamError
    ConfigError  (re-exported from config)
    LLMError  (re-exported from brain)
        ├── LLMConnectionError
        ├── LLMUnavailableError
        ├── LLMRateLimitError
        ├── LLMAuthError
        └── LLMInvalidRequestError
            └── LLMContextError
"""

from __future__ import annotations

from relaymind.brain.llm_client import (  # noqa: F401  re-export
    LLMAuthError,
    LLMConnectionError,
    LLMContextError,
    LLMError,
    LLMInvalidRequestError,
    LLMRateLimitError,
    LLMUnavailableError,
)
from relaymind.config.settings import ConfigError  # noqa: F401  re-export


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class RelaymindError(Exception):
    """Base class for all RelayMind exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Agent layer
# ─────────────────────────────────────────────────────────────────────────────

class AgentError(RelaymindError):
    """Base for planning / execution errors."""


class PlanError(AgentError):
    """The planning call produced nothing usable."""


class StepExecutionError(AgentError):
    """A plan step failed; the rest of the plan is aborted."""

    def __init__(self, ordinal: int, capability: str, message: str) -> None:
        self.ordinal = ordinal
        self.capability = capability
        super().__init__(message)


class CapabilityError(AgentError):
    """A capability handler could not do its job (missing input, bad output)."""


class ClarificationError(AgentError):
    """Base for clarification sub-protocol errors."""


class UnknownExchangeError(ClarificationError):
    """No pending exchange with this id."""

    def __init__(self, exchange_id: str) -> None:
        self.exchange_id = exchange_id
        super().__init__(f"No exchange awaiting clarification with id '{exchange_id}'")


class InvalidClarificationOptionError(ClarificationError):
    """The chosen option is not one of the offered options."""

    def __init__(self, exchange_id: str, option: str, valid: list[str]) -> None:
        self.exchange_id = exchange_id
        self.option = option
        self.valid = valid
        super().__init__(
            f"Option '{option}' is not valid for exchange '{exchange_id}'. "
            f"Valid options: {valid}"
        )


class ClarificationExpiredError(ClarificationError):
    """The exchange waited too long for a clarification answer."""


# ─────────────────────────────────────────────────────────────────────────────
# Router layer
# ─────────────────────────────────────────────────────────────────────────────

class RouterError(RelaymindError):
    """Base for provider routing errors."""


class RouterConfigError(RouterError):
    """Programmer error: no credentials configured for any provider family."""


class ProviderExhaustedError(RouterError):
    """Every family and credential failed before any output was produced."""

    def __init__(self, message: str, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class ProviderStreamError(RouterError):
    """The provider failed after streaming had started; fallback is no longer possible."""


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "RelaymindError",
    # Agent
    "AgentError",
    "PlanError",
    "StepExecutionError",
    "CapabilityError",
    "ClarificationError",
    "UnknownExchangeError",
    "InvalidClarificationOptionError",
    "ClarificationExpiredError",
    # Router
    "RouterError",
    "RouterConfigError",
    "ProviderExhaustedError",
    "ProviderStreamError",
    # Re-exported
    "ConfigError",
    "LLMError",
    "LLMConnectionError",
    "LLMUnavailableError",
    "LLMRateLimitError",
    "LLMAuthError",
    "LLMInvalidRequestError",
    "LLMContextError",
]
