"""
tests/unit/test_cli.py — CLI Interface Unit Tests

Tests CLIInterface event rendering, exit codes and clarification handling
with a mocked orchestrator, plus argument parsing in main.

Run with:
    pytest tests/unit/test_cli.py -v
"""

from __future__ import annotations

from io import StringIO
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from fakes import FakeClient, make_binding, make_router
from relaymind.agent.orchestrator import ExchangeRun
from relaymind.agent.types import Exchange
from relaymind.brain.llm_client import LLMRateLimitError
from relaymind.brain.types import ProviderFamily
from relaymind.exceptions import InvalidClarificationOptionError
from relaymind.gateway.protocol import (
    make_chunk,
    make_clarification,
    make_complete,
    make_error,
    make_plan,
    make_status,
    make_step_result,
)
from relaymind.interfaces.cli import CLIInterface, render_status
from relaymind.main import _parse_location, parse_args


# ── Helpers ───────────────────────────────────────────────────────────────────


def make_console() -> Console:
    return Console(file=StringIO(), width=120, force_terminal=False, color_system=None)


def output(console: Console) -> str:
    return console.file.getvalue()


def make_run(*events) -> ExchangeRun:
    exchange = Exchange.create("q")

    async def gen():
        for e in events:
            yield e

    return ExchangeRun(exchange, gen())


def make_cli(orchestrator) -> CLIInterface:
    return CLIInterface(orchestrator, console=make_console())


STEP_DONE = {
    "step": 1, "capability": "web_search", "task": "search", "status": "completed",
    "result": "Cafe A", "sources": [{"title": "S", "uri": "https://s"}], "artifact": None, "error": None,
}


# ── CLIInterface.ask ──────────────────────────────────────────────────────────


class TestAsk:
    @pytest.mark.asyncio
    async def test_complete_returns_zero_and_renders(self):
        orc = MagicMock()
        orc.submit.return_value = make_run(
            make_status("e", "planning", "Planning"),
            make_plan("e", [{"step": 1, "capability": "web_search", "task": "search"}]),
            make_chunk("e", 1, "Cafe A"),
            make_step_result("e", STEP_DONE),
            make_complete("e", "**Cafe A** is open."),
        )
        cli = make_cli(orc)

        code = await cli.ask("Find cafes", cycle_depth=2)

        assert code == 0
        text = output(cli.console)
        assert "Plan" in text
        assert "web_search" in text
        assert "✓ Step 1 (web_search)" in text
        assert "1 source(s)" in text
        assert "Cafe A is open." in text
        assert orc.submit.call_args.kwargs["cycle_depth"] == 2

    @pytest.mark.asyncio
    async def test_cached_answer_shows_similarity(self):
        orc = MagicMock()
        orc.submit.return_value = make_run(
            make_complete("e", "cached", from_cache=True, similarity=0.83),
        )
        cli = make_cli(orc)
        assert await cli.ask("q") == 0
        assert "similarity 0.83" in output(cli.console)

    @pytest.mark.asyncio
    async def test_error_returns_one(self):
        orc = MagicMock()
        orc.submit.return_value = make_run(make_error("e", "Step 2 (maps) failed", code="step_failed", step=2))
        cli = make_cli(orc)
        assert await cli.ask("q") == 1
        assert "Step 2 (maps) failed" in output(cli.console)

    @pytest.mark.asyncio
    async def test_empty_run_returns_one(self):
        orc = MagicMock()
        orc.submit.return_value = make_run()
        assert await make_cli(orc).ask("q") == 1

    @pytest.mark.asyncio
    async def test_clarification_prompts_and_resolves(self, monkeypatch):
        orc = MagicMock()
        orc.submit.return_value = make_run(
            make_clarification("exc_1", "File or screen?", [
                {"key": "file", "value": "Downloadable file"},
                {"key": "screen", "value": "Display only"},
            ]),
        )
        orc.resolve_clarification.return_value = make_run(make_complete("exc_1", "Here it is"))
        asked = {}

        def fake_ask(prompt, choices, console):
            asked["choices"] = choices
            return "file"

        monkeypatch.setattr("relaymind.interfaces.cli.Prompt.ask", fake_ask)
        cli = make_cli(orc)

        assert await cli.ask("list restaurants") == 0
        assert asked["choices"] == ["file", "screen"]
        orc.resolve_clarification.assert_called_once_with("exc_1", "file")
        assert "Downloadable file" in output(cli.console)

    @pytest.mark.asyncio
    async def test_rejected_clarification_returns_one(self, monkeypatch):
        orc = MagicMock()
        orc.submit.return_value = make_run(
            make_clarification("exc_1", "Which?", [{"key": "a", "value": "A"}]),
        )
        orc.resolve_clarification.side_effect = InvalidClarificationOptionError("exc_1", "z", ["a"])
        monkeypatch.setattr("relaymind.interfaces.cli.Prompt.ask", lambda *a, **k: "z")
        assert await make_cli(orc).ask("q") == 1


# ── render_status ─────────────────────────────────────────────────────────────


class TestRenderStatus:
    @pytest.mark.asyncio
    async def test_pool_rows_rendered(self):
        gemini = FakeClient(ProviderFamily.GEMINI, script=[LLMRateLimitError("429"), "ok"])
        router = make_router(
            make_binding(gemini, keys=["gemini-key-0001", "gemini-key-0002"]),
            make_binding(FakeClient(ProviderFamily.GROQ), keys=[]),
        )
        await router.call("q", preferred=ProviderFamily.GEMINI)
        console = make_console()

        render_status(router, console=console)

        text = output(console)
        assert "gemini#1" in text and "gemini#2" in text
        assert "cooldown" in text
        assert "none configured" in text
        assert "gemini-key-0001" not in text


# ── main argument parsing ─────────────────────────────────────────────────────


class TestArgs:
    def test_defaults(self):
        args = parse_args(["What's 2+2"])
        assert args.request == "What's 2+2"
        assert args.cycle_depth is None
        assert not args.status

    def test_cycle_depth_bounds(self):
        assert parse_args(["q", "--cycle-depth", "5"]).cycle_depth == 5
        with pytest.raises(SystemExit):
            parse_args(["q", "--cycle-depth", "6"])

    def test_status_without_request(self):
        args = parse_args(["--status"])
        assert args.status and args.request is None

    def test_parse_location(self):
        loc = _parse_location("48.8606,2.3376")
        assert (loc.latitude, loc.longitude) == (48.8606, 2.3376)
        with pytest.raises(ValueError):
            _parse_location("somewhere")
