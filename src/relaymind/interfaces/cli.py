"""
interfaces/cli.py — RelayMind Terminal Renderer

Drives one request through the Orchestrator and renders its events with rich:
  - the plan as a numbered table
  - streamed step text as it arrives, a ✓ / ✗ line when each step ends
  - clarification questions as a choice prompt (then re-plans)
  - the final answer as a Markdown panel, with a note when it came from cache

Also renders the credential pool health table for `relaymind --status`.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from rich import box
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from relaymind.agent.conversation import Conversation
from relaymind.agent.orchestrator import ExchangeRun, Orchestrator
from relaymind.agent.types import Geolocation
from relaymind.brain.router import ProviderRouter
from relaymind.brain.types import Attachment, ProviderFamily
from relaymind.exceptions import ClarificationError
from relaymind.gateway.protocol import EventType, ExchangeEvent
from relaymind.observability.logger import get_logger

log = get_logger(__name__)

_STATE_STYLE = {"healthy": "green", "degraded": "yellow", "cooldown": "red"}


class CLIInterface:
    """Renders exchange events for a single terminal user."""

    def __init__(self, orchestrator: Orchestrator, console: Optional[Console] = None):
        self._orchestrator = orchestrator
        self.console = console or Console()
        self._conversation = Conversation()

    async def ask(
        self,
        request_text: str,
        attachments: Optional[list[Attachment]] = None,
        cycle_depth: Optional[int] = None,
        location: Optional[Geolocation] = None,
    ) -> int:
        """Run one request to completion. Returns a process exit code."""
        run = self._orchestrator.submit(
            request_text,
            conversation=self._conversation,
            attachments=attachments,
            cycle_depth=cycle_depth,
            location=location,
        )
        while True:
            last = await self._render_run(run)
            if last is None:
                return 1
            if last.event_type == EventType.COMPLETE:
                return 0
            if last.event_type == EventType.ERROR:
                return 1

            # Clarification: ask, then re-plan
            choice = await self._prompt_clarification(last)
            log.info("cli.clarification_answered", exchange_id=last.exchange_id, option=choice)
            try:
                run = self._orchestrator.resolve_clarification(last.exchange_id, choice)
            except ClarificationError as e:
                log.warning("cli.clarification_rejected", exchange_id=last.exchange_id, error=str(e))
                self.console.print(f"[red]❌ {e}[/]")
                return 1

    # ── Event rendering ───────────────────────────────────────────────────────

    async def _render_run(self, run: ExchangeRun) -> Optional[ExchangeEvent]:
        last: Optional[ExchangeEvent] = None
        streaming = False
        async for event in run:
            last = event
            kind = event.event_type
            data = event.data

            if kind == EventType.STATUS:
                self.console.print(f"[dim]… {data.get('message') or data.get('status')}[/]")
            elif kind == EventType.PLAN:
                self._render_plan(data.get("steps", []))
            elif kind == EventType.CHUNK:
                if not streaming:
                    self.console.print(f"\n[bold cyan]Step {data['step']}[/]")
                    streaming = True
                self.console.print(data["text"], end="", markup=False, highlight=False)
            elif kind == EventType.CORRECTIONS:
                self.console.print(f"\n[dim]✎ Step {data['step']} was revised by the reviewer.[/]")
            elif kind == EventType.STEP_RESULT:
                streaming = False
                self._render_step_result(data)
            elif kind == EventType.COMPLETE:
                self._render_answer(data)
            elif kind == EventType.ERROR:
                self.console.print(f"\n[red]❌ {data.get('message', 'Request failed')}[/]")
        return last

    def _render_plan(self, steps: list[dict]) -> None:
        table = Table(title="Plan", box=box.SIMPLE, show_header=True, header_style="bold")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Capability", style="cyan")
        table.add_column("Task")
        for s in steps:
            table.add_row(str(s["step"]), s["capability"], s["task"])
        self.console.print(table)

    def _render_step_result(self, data: dict) -> None:
        if data.get("status") == "completed":
            extra = ""
            if data.get("sources"):
                extra = f"  [dim]{len(data['sources'])} source(s)[/]"
            if data.get("artifact"):
                extra += f"  [dim]{data['artifact']['kind']} attached[/]"
            self.console.print(f"\n[green]✓ Step {data['step']} ({data['capability']})[/]{extra}")
        else:
            self.console.print(
                f"\n[red]✗ Step {data['step']} ({data['capability']}): {data.get('error')}[/]"
            )

    def _render_answer(self, data: dict) -> None:
        title = "[cyan]Answer[/]"
        if data.get("from_cache"):
            title = f"[cyan]Answer[/] [dim](cached, similarity {data.get('similarity', 0):.2f})[/]"
        self.console.print()
        self.console.print(
            Panel(Markdown(data.get("answer") or "_(empty answer)_"), title=title, border_style="cyan", padding=(0, 2))
        )

    async def _prompt_clarification(self, event: ExchangeEvent) -> str:
        options = event.data.get("options", [])
        self.console.print(Panel(event.data.get("question", ""), title="[yellow]Clarification needed[/]", border_style="yellow"))
        for opt in options:
            self.console.print(f"  [bold]{opt['key']}[/]  {opt['value']}")
        keys = [opt["key"] for opt in options]
        # Prompt.ask blocks on stdin; keep the event loop free
        return await asyncio.to_thread(Prompt.ask, "Choose", choices=keys, console=self.console)


def render_status(router: ProviderRouter, console: Optional[Console] = None) -> None:
    """Print per-credential pool health for every configured family."""
    console = console or Console()
    table = Table(title="Credential pools", box=box.ROUNDED, header_style="bold")
    for col in ("Family", "Credential", "State", "Health", "OK", "Fail", "Cooldown (s)"):
        table.add_column(col)
    for family in router.status():
        pool = router.pool(ProviderFamily(family))
        rows = pool.status() if pool is not None else []
        if not rows:
            table.add_row(family, "[dim]none configured[/]", "", "", "", "", "")
            continue
        for r in rows:
            style = _STATE_STYLE.get(r["state"], "white")
            table.add_row(
                family,
                r["credential"],
                f"[{style}]{r['state']}[/]",
                str(r["health_score"]),
                str(r["successes"]),
                str(r["failures"]),
                f"{r['cooldown_remaining_s']:.0f}" if r["cooldown_remaining_s"] else "-",
            )
    console.print(table)
