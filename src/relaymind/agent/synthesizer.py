"""
agent/synthesizer.py — Final Answer + Intermediate Coordinator Prompts

combine()       merges every (capability, task, result) triple into one
                source-citing answer. Structured artifacts are described in
                prose, never echoed as JSON.
intermediate()  the coordinator's in-plan voice: a Markdown to-do list for
                the first step, a 1-2 sentence status update for validate steps.

Both return a ProviderStream so the executor can forward deltas as they arrive.
"""

from __future__ import annotations

from typing import Optional, Sequence

from relaymind.agent.types import ImageArtifact, StepOutput, TableArtifact
from relaymind.brain.router import ProviderRouter, ProviderStream
from relaymind.brain.types import ModelTier, ProviderChoice
from relaymind.observability.logger import get_logger

log = get_logger(__name__)

_COMBINE_PROMPT = """\
You are the coordinator of a team of AI agents. The team has completed its \
tasks. Your final job is to synthesize their findings into a single, \
comprehensive, well-formatted answer for the user.

Original user request: "{request}"

Results from the team:
{results}

Write the final, user-friendly response. Address the original request \
directly. Do not describe the step-by-step process unless it matters for the \
answer. Use Markdown. Cite the sources the results mention, as Markdown links.
Crucially, DO NOT include raw JSON, JSON objects or code blocks of data in the \
answer. Present information in clean, natural language. If a spreadsheet was \
created, say that it was created and briefly describe its contents. If an \
image was generated, say so and describe it briefly."""

_DIRECT_PROMPT = """\
Answer the user's request directly, clearly and concisely. Use Markdown where \
it helps readability.

Request: "{request}\""""

_INTERMEDIATE_PROMPT = """\
You are the coordinator of a team of AI agents, in the middle of executing a plan.
Original user request: "{request}"

Results so far:
{results}

Your current internal task is: "{task}".

Your response is shown to the user.
{instruction}
Do not talk about agents or internal plans. Speak naturally to the user."""

_TODO_INSTRUCTION = (
    "Respond with the complete to-do list for the request, formatted as a "
    "Markdown checklist, after one brief introductory sentence (e.g. \"Here is my plan:\")."
)
_VALIDATE_INSTRUCTION = (
    "Respond with a brief, conversational status update of 1-2 sentences: "
    "what has just been done and what comes next (e.g. \"I've found the cafes, "
    "now I'll get their addresses.\")."
)


class Synthesizer:
    """Builds coordinator prompts and streams them through the router."""

    def __init__(self, router: ProviderRouter, clip_chars: int = 6000, max_tokens: int = 4000):
        self._router = router
        self._clip = clip_chars
        self._max_tokens = max_tokens

    def combine(
        self,
        request: str,
        outputs: Sequence[StepOutput],
        preferred: Optional[ProviderChoice] = None,
    ) -> ProviderStream:
        """Stream the final answer for `request` from the step outputs."""
        if outputs:
            prompt = _COMBINE_PROMPT.format(request=request, results=self._render(outputs))
        else:
            prompt = _DIRECT_PROMPT.format(request=request)
        choice = preferred or self._router.route(request)
        log.info(
            "synthesizer.combine",
            outputs=len(outputs),
            family=choice.family.value,
            tier=choice.tier.value,
        )
        return self._router.stream(prompt, preferred=choice, max_tokens=self._max_tokens)

    def intermediate(
        self,
        task: str,
        request: str,
        outputs: Sequence[StepOutput],
        todo: bool,
    ) -> ProviderStream:
        """Stream a to-do list (todo=True) or a short validate-progress update."""
        prompt = _INTERMEDIATE_PROMPT.format(
            request=request,
            results=self._render(outputs) if outputs else "(nothing yet)",
            task=task,
            instruction=_TODO_INSTRUCTION if todo else _VALIDATE_INSTRUCTION,
        )
        choice = ProviderChoice(
            family=self._router.primary,
            tier=ModelTier.FAST,
            category="todo" if todo else "validate",
        )
        log.debug("synthesizer.intermediate", todo=todo, outputs=len(outputs))
        return self._router.stream(prompt, preferred=choice, max_tokens=1024)

    # ── Rendering ─────────────────────────────────────────────────────────────

    def _render(self, outputs: Sequence[StepOutput]) -> str:
        blocks = []
        for out in outputs:
            result = _clip(out.result, self._clip)
            note = _describe_artifact(out.artifact)
            if note:
                result = f"{result}\n  - Artifact: {note}" if result else note
            blocks.append(f'- {out.capability.value} (Task: "{out.task}"):\n  - Result: {result}')
        return "\n\n".join(blocks)


def _describe_artifact(artifact) -> str:
    if isinstance(artifact, TableArtifact):
        header = ", ".join(artifact.rows[0]) if artifact.rows else ""
        data_rows = max(0, artifact.row_count - 1)
        return f"a spreadsheet with {data_rows} rows (columns: {header})"
    if isinstance(artifact, ImageArtifact):
        return f"a generated image ({artifact.mime_type})"
    return ""


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n…[truncated]"
