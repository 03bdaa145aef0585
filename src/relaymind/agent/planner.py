"""
agent/planner.py — Plan / Clarification Planner

Turns a request into either a Plan of capability-bound steps or a
ClarificationRequest, never both.

The "to-do → act → validate → ... → synthesize" shape is enforced here in
code after parsing; the provider's output is treated as a suggestion for
which actions to run and in what order, not as the final plan.

Any planning failure (provider exhaustion, missing or malformed JSON, a
clarification with no options) yields the default plan:
coordinator to-do → web search → coordinator synthesis.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from relaymind.agent.types import (
    Capability,
    ClarificationOption,
    ClarificationRequest,
    Plan,
    PlanStep,
)
from relaymind.brain.router import ProviderRouter
from relaymind.brain.types import ModelTier, ProviderChoice
from relaymind.exceptions import PlanError
from relaymind.observability.logger import get_logger

log = get_logger(__name__)

TODO_TASK = "Create a to-do list for: {request}"
VALIDATE_TASK = "Validate progress against the to-do list and decide the next action."
SYNTHESIZE_TASK = "Synthesize the results into a final answer for the user."

_PLAN_SYSTEM = """\
You are the planning coordinator of a team of specialised AI agents. Create a \
plan for the team based on the user's request and the conversation history.

Available capabilities:
- web_search: web searches (news, facts, real-time information).
- maps: location-based queries (places, directions, distances).
- vision: analysing an image provided by the user.
- video: analysing a video provided by the user.
- image_generation: creating a new image from a text description.
- email: drafting an email (never sends it).
- sheets: formatting data into a spreadsheet. It must follow a data-providing \
step; its task is to organise the output of the step before it.
- drive: drafting file operations for a cloud drive (never performs them).
- coordinator: you. To-do lists, validation and the final synthesis.

Planning structure (mandatory):
1. The first step is "coordinator" with the task of writing a to-do list for the request.
2. After EACH action step (web_search, maps, vision, video, image_generation, \
email, drive) add a "coordinator" step that validates progress against the to-do list.
3. The final step is "coordinator" with the task "{synthesize}"
A request that needs no agents (greetings, arithmetic, general knowledge) is a \
single final "coordinator" step.

Thoroughness: the user set a cycle depth of {depth} on a 1-5 scale. 1 means a \
standard, direct plan; 3-5 means a more thorough, multi-step, exhaustive plan.
{clarification_rule}
Return ONLY valid JSON — no markdown fences, no explanation — containing EITHER \
"plan" OR "clarification_needed", never both:
{{"plan": [{{"step": 1, "capability": "coordinator", "task": "..."}}, ...]}}
{{"clarification_needed": {{"question": "...", "options": [{{"key": "file", "value": "Downloadable file"}}, ...]}}}}"""

_CLARIFICATION_RULE = """
Clarification rule: if the user asks for data (a list, a table, ...) and it is \
unclear whether they want a downloadable file or just to see it on screen, \
respond with "clarification_needed" instead of a plan, with a direct question \
and clear options (e.g. "Downloadable file" vs "Display only"). If the intent \
is already clear (e.g. "create a spreadsheet of ...") plan directly; a plan for \
a file MUST include a sheets step.
"""

_NO_CLARIFICATION_RULE = """
The user has already answered a clarifying question for this request. Do NOT \
ask another one: respond with a plan.
"""

_ALIASES: dict[str, Capability] = {
    "orchestrator": Capability.COORDINATOR,
    "coordinator": Capability.COORDINATOR,
    "search": Capability.WEB_SEARCH,
    "websearch": Capability.WEB_SEARCH,
    "map": Capability.MAPS,
    "maps": Capability.MAPS,
    "geo": Capability.MAPS,
    "vision": Capability.VISION,
    "image": Capability.VISION,
    "video": Capability.VIDEO,
    "imagegeneration": Capability.IMAGE_GENERATION,
    "imagegen": Capability.IMAGE_GENERATION,
    "sheets": Capability.SHEETS,
    "sheet": Capability.SHEETS,
    "spreadsheet": Capability.SHEETS,
    "email": Capability.EMAIL,
    "mail": Capability.EMAIL,
    "drive": Capability.DRIVE,
}

_NON_ALNUM = re.compile(r"[^a-z]")


@dataclass
class PlanOutcome:
    plan: Optional[Plan] = None
    clarification: Optional[ClarificationRequest] = None
    used_fallback: bool = False

    def __repr__(self) -> str:
        if self.clarification:
            return f"<PlanOutcome clarification options={len(self.clarification.options)}>"
        steps = len(self.plan) if self.plan else 0
        return f"<PlanOutcome steps={steps} fallback={self.used_fallback}>"


def parse_capability(name: Any) -> Optional[Capability]:
    """Map a provider-written agent name ("SearchAgent", "web_search") to a Capability."""
    if not isinstance(name, str):
        return None
    key = _NON_ALNUM.sub("", name.lower())
    if key.endswith("agent") and key != "agent":
        key = key[: -len("agent")]
    return _ALIASES.get(key) or _ALIASES.get(key.replace("web", "", 1))


def default_plan(request: str) -> Plan:
    head = request[:100]
    return Plan(steps=(
        PlanStep(1, Capability.COORDINATOR, TODO_TASK.format(request=head)),
        PlanStep(2, Capability.WEB_SEARCH, f"Search for information about: {head}"),
        PlanStep(3, Capability.COORDINATOR, "Validate the search results and synthesize the final answer"),
    ))


def enforce_convention(
    raw_steps: list[tuple[Capability, str]],
    request: str,
    has_image: bool = False,
    has_video: bool = False,
) -> Plan:
    """
    Rebuild a provider-suggested step list into the mandatory shape.

      - coordinator to-do first, coordinator synthesis last
      - every action step immediately followed by a coordinator step
        (a validate step, or the final synthesis for the last action),
        except when a sheets step comes next: sheets reads its direct
        predecessor's raw output
      - attached media gets a vision/video step if the provider forgot one
      - a sheets step with nothing before it to tabulate gets a search first
      - ordinals renumbered 1..N
    """
    todo_task = TODO_TASK.format(request=request[:100])
    synth_task = SYNTHESIZE_TASK
    if raw_steps and raw_steps[0][0] == Capability.COORDINATOR and raw_steps[0][1].strip():
        todo_task = raw_steps[0][1].strip()
    if len(raw_steps) > 1 and raw_steps[-1][0] == Capability.COORDINATOR and raw_steps[-1][1].strip():
        synth_task = raw_steps[-1][1].strip()

    # (capability, task, validate task suggested right after it)
    actions: list[tuple[Capability, str, Optional[str]]] = []
    for i, (cap, task) in enumerate(raw_steps):
        if cap == Capability.COORDINATOR:
            continue
        follow = raw_steps[i + 1] if i + 1 < len(raw_steps) - 1 else None
        validate = follow[1].strip() if follow and follow[0] == Capability.COORDINATOR else None
        actions.append((cap, task.strip() or f"Handle: {request[:100]}", validate or None))

    present = {a[0] for a in actions}
    if has_video and Capability.VIDEO not in present:
        actions.insert(0, (Capability.VIDEO, f"Analyze the attached video for: {request[:100]}", None))
    if has_image and Capability.VISION not in present:
        actions.insert(0, (Capability.VISION, f"Analyze the attached image for: {request[:100]}", None))
    if actions and actions[0][0] == Capability.SHEETS:
        actions.insert(0, (Capability.WEB_SEARCH, f"Gather the data needed for: {request[:100]}", None))

    if not actions:
        return Plan(steps=(PlanStep(1, Capability.COORDINATOR, synth_task),))

    ordered: list[tuple[Capability, str]] = [(Capability.COORDINATOR, todo_task)]
    for i, (cap, task, validate) in enumerate(actions):
        ordered.append((cap, task))
        is_last = i == len(actions) - 1
        feeds_sheets = not is_last and actions[i + 1][0] == Capability.SHEETS
        if cap.produces_action and not is_last and not feeds_sheets:
            ordered.append((Capability.COORDINATOR, validate or VALIDATE_TASK))
    ordered.append((Capability.COORDINATOR, synth_task))

    return Plan(steps=tuple(
        PlanStep(ordinal=n, capability=cap, task=task)
        for n, (cap, task) in enumerate(ordered, start=1)
    ))


class Planner:
    """Uses the primary provider to choose which capabilities a request needs."""

    def __init__(self, router: ProviderRouter, max_tokens: int = 2048):
        self._router = router
        self._max_tokens = max_tokens

    async def create_plan(
        self,
        request: str,
        history: str = "",
        cycle_depth: int = 1,
        has_image: bool = False,
        has_video: bool = False,
        allow_clarification: bool = True,
    ) -> PlanOutcome:
        depth = max(1, min(5, int(cycle_depth)))
        system = _PLAN_SYSTEM.format(
            synthesize=SYNTHESIZE_TASK,
            depth=depth,
            clarification_rule=_CLARIFICATION_RULE if allow_clarification else _NO_CLARIFICATION_RULE,
        )
        user_content = (
            "--- CONVERSATION HISTORY (FOR CONTEXT) ---\n"
            f"{history or 'No history yet.'}\n"
            "------------------------------------------\n\n"
            f'User\'s new request: "{request}"'
        )
        if has_image:
            user_content += "\nAn image has been provided. The vision capability must be used."
        if has_video:
            user_content += "\nA video has been provided. The video capability must be used."

        log.info("planner.create_plan", request=request[:80], depth=depth, has_image=has_image, has_video=has_video)
        result = await self._router.call(
            user_content,
            preferred=ProviderChoice(family=self._router.primary, tier=ModelTier.BALANCED, category="planning"),
            max_tokens=self._max_tokens,
            system=system,
            json_output=True,
            temperature=0.2,
            review=False,
        )
        if not result.succeeded:
            log.warning("planner.provider_failed", error=(result.error or "")[:200])
            return PlanOutcome(plan=default_plan(request), used_fallback=True)

        try:
            outcome = self._parse(result.text, request, has_image, has_video)
        except (json.JSONDecodeError, PlanError, ValueError, TypeError) as e:
            log.warning("planner.parse_failed", error=str(e), raw=result.text[:200])
            return PlanOutcome(plan=default_plan(request), used_fallback=True)

        if outcome.clarification and not allow_clarification:
            log.info("planner.clarification_suppressed")
            return PlanOutcome(plan=default_plan(request), used_fallback=True)

        log.info("planner.outcome", outcome=repr(outcome))
        return outcome

    # ── Parsing ───────────────────────────────────────────────────────────────

    def _parse(self, content: str, request: str, has_image: bool, has_video: bool) -> PlanOutcome:
        data = json.loads(_extract_json(content))
        if not isinstance(data, dict):
            raise PlanError("planner output is not a JSON object")

        raw_plan = data.get("plan")
        if isinstance(raw_plan, list) and raw_plan:
            raw_steps: list[tuple[Capability, str]] = []
            for item in raw_plan:
                if not isinstance(item, dict):
                    continue
                cap = parse_capability(item.get("capability") or item.get("agent"))
                if cap is None:
                    log.debug("planner.unknown_capability_dropped", raw=str(item)[:120])
                    continue
                raw_steps.append((cap, str(item.get("task") or "")))
            return PlanOutcome(plan=enforce_convention(raw_steps, request, has_image, has_video))

        raw_clar = data.get("clarification_needed") or data.get("clarification")
        if isinstance(raw_clar, dict):
            return PlanOutcome(clarification=_parse_clarification(raw_clar))

        if isinstance(raw_plan, list):
            # Explicit empty plan: nothing to delegate
            return PlanOutcome(plan=enforce_convention([], request, has_image, has_video))

        raise PlanError("planner output has neither a plan nor a clarification")


def _parse_clarification(raw: dict) -> ClarificationRequest:
    question = str(raw.get("question") or "").strip()
    options: list[ClarificationOption] = []
    seen: set[str] = set()
    for i, opt in enumerate(raw.get("options") or [], start=1):
        if isinstance(opt, dict):
            value = str(opt.get("value") or opt.get("label") or "").strip()
            key = str(opt.get("key") or "").strip() or str(i)
        else:
            value = str(opt).strip()
            key = str(i)
        if value and key not in seen:
            seen.add(key)
            options.append(ClarificationOption(key=key, value=value))
    if not question or not options:
        raise PlanError("clarification without a question or options")
    return ClarificationRequest(question=question, options=tuple(options))


def _extract_json(text: str) -> str:
    text = _strip_fences(text)
    if text.startswith("{"):
        return text
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        raise PlanError("no JSON object in planner output")
    return text[start:end + 1]


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        lines = text.splitlines()
        end = len(lines) - 1 if lines[-1].strip() == "```" else len(lines)
        text = "\n".join(lines[1:end])
    return text.strip()
