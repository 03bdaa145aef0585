"""
agent/conversation.py — Conversation State

A Conversation owns the Exchanges of one user thread, in submission order.
Its only job beyond bookkeeping is rendering a short history for the planner.
"""

from __future__ import annotations

import time
import uuid
from typing import Optional

from relaymind.agent.types import Exchange, ExchangeStatus
from relaymind.observability.logger import get_logger

log = get_logger(__name__)

_ANSWER_CLIP = 10_000
_NO_HISTORY = "No history yet."


class Conversation:
    """Ordered Exchanges for one user thread."""

    def __init__(self, conversation_id: Optional[str] = None):
        self.id = conversation_id or f"conv_{uuid.uuid4().hex[:12]}"
        self.exchanges: list[Exchange] = []
        self.created_at = time.time()

    def add(self, exchange: Exchange) -> Exchange:
        exchange.conversation_id = self.id
        self.exchanges.append(exchange)
        log.debug("conversation.exchange_added", conversation_id=self.id, exchange_id=exchange.id)
        return exchange

    def history_summary(self, limit: int = 3, exclude: Optional[str] = None) -> str:
        """
        Last `limit` completed exchanges as "User: … / Assistant: …" blocks
        separated by "---". Long answers are clipped.
        """
        done = [
            ex for ex in self.exchanges
            if ex.status == ExchangeStatus.COMPLETED and ex.final_answer and ex.id != exclude
        ]
        if limit <= 0 or not done:
            return _NO_HISTORY
        blocks = []
        for ex in done[-limit:]:
            answer = ex.final_answer or ""
            if len(answer) > _ANSWER_CLIP:
                answer = answer[:_ANSWER_CLIP] + "..."
            blocks.append(f"User: {ex.request_text}\nAssistant: {answer}")
        return "\n---\n".join(blocks)

    def __len__(self) -> int:
        return len(self.exchanges)

    def __repr__(self) -> str:
        return f"<Conversation id={self.id} exchanges={len(self.exchanges)}>"
