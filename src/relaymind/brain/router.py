"""
brain/router.py — Provider Router

Classifies a request to pick a preferred provider family + model tier, then
walks a fallback chain of families, drawing credentials from each family's
CredentialPool.

Per family, per attempt:
  - rate-limited / transient / auth / unknown error → record the failure on
    that credential and try the next credential of the same family
    (bounded by max_attempts_per_family), then fall through to the next family
  - permanent error (unknown model, malformed or unsupported request) →
    abandon the family at once; the credential is not penalised
  - success → record it and return immediately

Exhausting every family is a normal outcome: call() returns a failed
ProviderCallResult with an aggregated error description. Only "no
credentials configured anywhere" raises (RouterConfigError).

When the winner is not the primary family, one extra best-effort "reviewer"
pass on the primary family cleans the text (stray scripts, broken grammar).
If the reviewer fails the original text is returned untouched.

stream() has the same fallback rules up to the first delivered chunk. After
that a failure cannot be hidden and surfaces as ProviderStreamError. Closing
a stream early (cancellation) records nothing against the credential.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Iterable, Optional, Sequence, Union

from relaymind.brain.credentials import Credential, CredentialPool
from relaymind.brain.llm_client import BaseLLMClient, LLMError
from relaymind.brain.types import (
    Attachment,
    ErrorKind,
    GroundingTool,
    LLMConfig,
    LLMResponse,
    Message,
    ModelTier,
    ProviderCallResult,
    ProviderChoice,
    ProviderFamily,
)
from relaymind.exceptions import ProviderExhaustedError, ProviderStreamError, RouterConfigError
from relaymind.observability.logger import get_logger

log = get_logger(__name__)


# ─────────────────────────────────────────────────────────────────────────────
# Classification tables
# ─────────────────────────────────────────────────────────────────────────────

# Checked in order; first category with a matching keyword wins.
_CATEGORY_KEYWORDS: list[tuple[str, tuple[str, ...]]] = [
    ("greeting", ("hello", "hi", "hey", "good morning", "good evening",
                  "مرحبا", "اهلا", "السلام", "صباح", "مساء")),
    ("code", ("code", "function", "api", "javascript", "python", "react", "node",
              "bug", "compile", "كود", "برمجة")),
    ("research", ("research", "analyze", "analyse", "study", "report",
                  "بحث", "تحليل", "دراسة", "تقرير")),
    ("math", ("math", "calculate", "equation", "integral", "derivative",
              "حساب", "رياضيات", "معادلة", "أرقام")),
    ("simple", ("what is", "define", "ما هو", "ما هي", "عرف", "شرح بسيط")),
    ("complex", ("explain in detail", "in depth", "strategy", "comparison", "compare",
                 "اشرح بالتفصيل", "تحليل شامل", "خطة", "استراتيجية", "مقارنة")),
]

_CATEGORY_ROUTES: dict[str, tuple[ProviderFamily, ModelTier]] = {
    "greeting": (ProviderFamily.GROQ, ModelTier.FAST),
    "simple": (ProviderFamily.GROQ, ModelTier.FAST),
    "code": (ProviderFamily.OPENROUTER, ModelTier.CODE),
    "research": (ProviderFamily.OPENROUTER, ModelTier.REASONING),
    "math": (ProviderFamily.GEMINI, ModelTier.ADVANCED),
    "complex": (ProviderFamily.GEMINI, ModelTier.ADVANCED),
    "balanced": (ProviderFamily.GEMINI, ModelTier.BALANCED),
}

_SHORT_REQUEST_CHARS = 50
_LONG_REQUEST_CHARS = 300
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)

_REVIEW_PROMPT = """\
You are a meticulous copy editor. Review the answer below.

Required:
1. Remove any characters or words written in a script that does not belong \
to the answer's language (stray Chinese, Cyrillic, Japanese and so on).
2. Fix spelling and grammar mistakes.
3. Improve the wording where needed without changing the meaning or the facts.
4. Make sure the answer is complete and well organised. Keep Markdown, links \
and citations intact.

Original question: {request}

Answer to review:
{text}

Return ONLY the improved answer, with no commentary."""


def classify(text: str) -> str:
    """Return the request category: a keyword category or a length default."""
    lowered = text.lower()
    tokens = set(_TOKEN_RE.findall(lowered))
    for category, keywords in _CATEGORY_KEYWORDS:
        for kw in keywords:
            # Phrases match as substrings, single words only as whole tokens
            if (" " in kw and kw in lowered) or kw in tokens:
                return category
    length = len(text.strip())
    if length < _SHORT_REQUEST_CHARS:
        return "simple"
    if length > _LONG_REQUEST_CHARS:
        return "complex"
    return "balanced"


# ─────────────────────────────────────────────────────────────────────────────
# Family binding
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class FamilyBinding:
    """Everything the router needs to call one provider family."""
    family: ProviderFamily
    client: BaseLLMClient
    pool: CredentialPool
    models: dict[ModelTier, str] = field(default_factory=dict)
    default_model: str = ""

    def model_for(self, tier: ModelTier, strict: bool = False) -> Optional[str]:
        model = self.models.get(tier)
        if model or strict:
            return model
        return self.default_model or next(iter(self.models.values()), None)


class _Attempts:
    """Accumulates per-attempt failures for the aggregated error message."""

    def __init__(self) -> None:
        self.count = 0
        self.errors: list[str] = []
        self.last_kind: Optional[ErrorKind] = None

    def skip(self, family: ProviderFamily, reason: str) -> None:
        self.errors.append(f"{family.value}: skipped ({reason})")

    def fail(self, family: ProviderFamily, cred: Credential, kind: ErrorKind, message: str) -> None:
        self.count += 1
        self.last_kind = kind
        self.errors.append(f"{family.value}/{cred.id}: {kind.value}: {message[:200]}")

    def describe(self) -> str:
        if not self.errors:
            return "All provider families failed"
        return "All provider families failed: " + "; ".join(self.errors)


# ─────────────────────────────────────────────────────────────────────────────
# Stream handle
# ─────────────────────────────────────────────────────────────────────────────


class ProviderStream:
    """
    Async iterator of text deltas from whichever provider won.

    `.result` is populated once the stream has been fully consumed; it stays
    None if the stream was abandoned or failed.
    """

    def __init__(self) -> None:
        self.result: Optional[ProviderCallResult] = None
        self._gen: Optional[AsyncIterator[str]] = None

    def _attach(self, gen: AsyncIterator[str]) -> "ProviderStream":
        self._gen = gen
        return self

    def __aiter__(self) -> "ProviderStream":
        return self

    async def __anext__(self) -> str:
        return await self._gen.__anext__()  # type: ignore[union-attr]

    async def aclose(self) -> None:
        """Stop consuming the provider stream. Records no health change."""
        if self._gen is not None:
            await self._gen.aclose()  # type: ignore[attr-defined]

    async def collect(self) -> str:
        parts = [chunk async for chunk in self]
        return "".join(parts)


# ─────────────────────────────────────────────────────────────────────────────
# Router
# ─────────────────────────────────────────────────────────────────────────────

Prompt = Union[str, Sequence[Message]]


class ProviderRouter:
    """Routes provider calls across families and credentials with fallback."""

    def __init__(
        self,
        bindings: Iterable[FamilyBinding],
        primary: ProviderFamily = ProviderFamily.GEMINI,
        fallback_order: Optional[Sequence[ProviderFamily]] = None,
        max_attempts_per_family: int = 4,
        review_non_primary: bool = True,
        review_tier: ModelTier = ModelTier.FAST,
        max_tokens: int = 4000,
        temperature: float = 0.7,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._bindings: dict[ProviderFamily, FamilyBinding] = {b.family: b for b in bindings}
        self._primary = primary
        self._order = list(fallback_order or [
            ProviderFamily.GEMINI, ProviderFamily.OPENROUTER, ProviderFamily.GROQ,
        ])
        self._max_attempts = max_attempts_per_family
        self._review_non_primary = review_non_primary
        self._review_tier = review_tier
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._clock = clock

    @classmethod
    def from_settings(cls, settings) -> "ProviderRouter":
        """Build clients and credential pools for every enabled family."""
        from relaymind.brain import LLMClientFactory

        bindings: list[FamilyBinding] = []
        for name, cfg in settings.providers.items():
            if not cfg.enabled:
                continue
            try:
                family = ProviderFamily(name)
            except ValueError:
                log.warning("router.unknown_family_skipped", family=name)
                continue
            bindings.append(FamilyBinding(
                family=family,
                client=LLMClientFactory.create(name, cfg),
                pool=CredentialPool.from_settings(name, settings),
                models={ModelTier(t): m for t, m in cfg.models.items()},
                default_model=cfg.default_model,
            ))

        rc = settings.router
        known = {f.value for f in ProviderFamily}
        order = [ProviderFamily(f) for f in rc.fallback_order if f in known]
        router = cls(
            bindings=bindings,
            primary=ProviderFamily(rc.primary_family),
            fallback_order=order,
            max_attempts_per_family=rc.max_attempts_per_family,
            review_non_primary=rc.review_non_primary,
            review_tier=ModelTier(rc.review_tier),
            max_tokens=rc.max_tokens,
            temperature=rc.temperature,
        )
        log.info(
            "router.ready",
            families={b.family.value: len(b.pool) for b in bindings},
            primary=rc.primary_family,
        )
        return router

    # ── Properties ────────────────────────────────────────────────────────────

    @property
    def primary(self) -> ProviderFamily:
        return self._primary

    def pool(self, family: ProviderFamily) -> Optional[CredentialPool]:
        binding = self._bindings.get(family)
        return binding.pool if binding else None

    def status(self) -> dict[str, dict]:
        return {f.value: b.pool.summary() for f, b in self._bindings.items()}

    # ── Classification ────────────────────────────────────────────────────────

    def route(self, text: str) -> ProviderChoice:
        """Pure classification: no I/O, no pool access."""
        category = classify(text)
        family, tier = _CATEGORY_ROUTES[category]
        return ProviderChoice(family=family, tier=tier, category=category)

    # ── Calls ─────────────────────────────────────────────────────────────────

    async def call(
        self,
        prompt: Prompt,
        preferred: Union[ProviderChoice, ProviderFamily, None] = None,
        max_tokens: Optional[int] = None,
        *,
        system: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        tools: Sequence[GroundingTool] = (),
        location: Optional[tuple[float, float]] = None,
        json_output: bool = False,
        image_output: bool = False,
        temperature: Optional[float] = None,
        strict_tier: bool = False,
        review: Optional[bool] = None,
        families: Optional[Sequence[ProviderFamily]] = None,
    ) -> ProviderCallResult:
        """
        Issue one request through the fallback chain.

        `preferred` is usually the output of route(); None routes the prompt
        text itself. `families` restricts the chain (the reviewer uses it to
        stay on the primary family).
        """
        messages = _build_messages(prompt, system, attachments)
        choice = self._resolve_choice(preferred, messages)
        chain = list(families) if families is not None else self._chain(choice.family)
        self._ensure_credentials()

        started = self._clock()
        attempts = _Attempts()

        for family in chain:
            binding, cfg = self._prepare(
                family, choice.tier, strict_tier, messages, attempts,
                max_tokens=max_tokens, temperature=temperature, tools=tools,
                location=location, json_output=json_output, image_output=image_output,
            )
            if binding is None:
                continue

            tried: list[Credential] = []
            for _ in range(self._max_attempts):
                cred = binding.pool.select(exclude=tried)
                if cred is None:
                    break
                tried.append(cred)
                log.debug(
                    "router.attempt",
                    family=family.value,
                    credential=cred.id,
                    model=cfg.model,
                )
                try:
                    response = await binding.client.generate(messages, cfg, cred.secret)
                except Exception as e:
                    kind = e.kind if isinstance(e, LLMError) else ErrorKind.UNKNOWN
                    attempts.fail(family, cred, kind, str(e))
                    if kind == ErrorKind.PERMANENT:
                        log.warning(
                            "router.family_abandoned",
                            family=family.value,
                            model=cfg.model,
                            error=str(e)[:200],
                        )
                        break
                    binding.pool.record_failure(cred, kind)
                    log.info(
                        "router.attempt_failed",
                        family=family.value,
                        credential=cred.id,
                        kind=kind.value,
                        error_type=type(e).__name__,
                    )
                    continue

                if not response.content and not response.images:
                    attempts.fail(family, cred, ErrorKind.UNKNOWN, "empty response")
                    binding.pool.record_failure(cred, ErrorKind.UNKNOWN)
                    continue

                binding.pool.record_success(cred)
                result = self._result_from(response, family, cfg.model, started, attempts.count + 1)
                log.info(
                    "router.call.success",
                    family=family.value,
                    model=cfg.model,
                    category=choice.category,
                    attempts=result.attempts,
                    latency_ms=result.latency_ms,
                )
                should_review = self._review_non_primary if review is None else review
                if should_review and family != self._primary and not (json_output or image_output):
                    result = await self._reviewed(result, _prompt_text(messages))
                return result

        log.error(
            "router.exhausted",
            chain=[f.value for f in chain],
            attempts=attempts.count,
        )
        return ProviderCallResult(
            succeeded=False,
            error_kind=attempts.last_kind or ErrorKind.UNKNOWN,
            error=attempts.describe(),
            latency_ms=round((self._clock() - started) * 1000, 1),
            attempts=attempts.count,
        )

    def stream(
        self,
        prompt: Prompt,
        preferred: Union[ProviderChoice, ProviderFamily, None] = None,
        max_tokens: Optional[int] = None,
        *,
        system: Optional[str] = None,
        attachments: Sequence[Attachment] = (),
        temperature: Optional[float] = None,
    ) -> ProviderStream:
        """Open a streaming call. Iterate the returned ProviderStream for deltas."""
        messages = _build_messages(prompt, system, attachments)
        choice = self._resolve_choice(preferred, messages)
        self._ensure_credentials()
        handle = ProviderStream()
        return handle._attach(self._stream_chain(handle, messages, choice, max_tokens, temperature))

    async def review(self, text: str, original_request: str) -> str:
        """
        Best-effort normalisation pass on the primary family.
        Returns the original text unchanged if the pass fails.
        """
        if not text.strip():
            return text
        result = await self.call(
            _REVIEW_PROMPT.format(request=original_request[:2000], text=text),
            preferred=ProviderChoice(family=self._primary, tier=self._review_tier, category="review"),
            families=[self._primary],
            temperature=0.2,
            review=False,
        )
        if result.succeeded and result.text.strip():
            log.info("router.review.complete", chars_in=len(text), chars_out=len(result.text))
            return result.text
        log.warning("router.review.failed", error=(result.error or "")[:200])
        return text

    def needs_review(self, result: Optional[ProviderCallResult]) -> bool:
        return bool(
            self._review_non_primary
            and result is not None
            and result.succeeded
            and result.provider is not None
            and result.provider != self._primary
        )

    # ── Internals ─────────────────────────────────────────────────────────────

    async def _stream_chain(
        self,
        handle: ProviderStream,
        messages: list[Message],
        choice: ProviderChoice,
        max_tokens: Optional[int],
        temperature: Optional[float],
    ) -> AsyncIterator[str]:
        started = self._clock()
        attempts = _Attempts()

        for family in self._chain(choice.family):
            binding, cfg = self._prepare(
                family, choice.tier, False, messages, attempts,
                max_tokens=max_tokens, temperature=temperature,
            )
            if binding is None:
                continue

            tried: list[Credential] = []
            for _ in range(self._max_attempts):
                cred = binding.pool.select(exclude=tried)
                if cred is None:
                    break
                tried.append(cred)

                parts: list[str] = []
                source = binding.client.stream(messages, cfg, cred.secret)
                try:
                    async for delta in source:
                        parts.append(delta)
                        yield delta
                except Exception as e:
                    kind = e.kind if isinstance(e, LLMError) else ErrorKind.UNKNOWN
                    attempts.fail(family, cred, kind, str(e))
                    if kind != ErrorKind.PERMANENT:
                        binding.pool.record_failure(cred, kind)
                    if parts:
                        log.error(
                            "router.stream.broken",
                            family=family.value,
                            credential=cred.id,
                            delivered_chars=sum(len(p) for p in parts),
                            error=str(e)[:200],
                        )
                        raise ProviderStreamError(
                            f"{family.value} stream failed after output started: {e}"
                        ) from e
                    if kind == ErrorKind.PERMANENT:
                        log.warning("router.family_abandoned", family=family.value, error=str(e)[:200])
                        break
                    continue
                finally:
                    # Runs on GeneratorExit/CancelledError too; closes the provider stream
                    aclose = getattr(source, "aclose", None)
                    if aclose is not None:
                        await aclose()

                if not parts:
                    attempts.fail(family, cred, ErrorKind.UNKNOWN, "empty stream")
                    binding.pool.record_failure(cred, ErrorKind.UNKNOWN)
                    continue

                binding.pool.record_success(cred)
                handle.result = ProviderCallResult(
                    text="".join(parts),
                    provider=family,
                    model=cfg.model,
                    succeeded=True,
                    latency_ms=round((self._clock() - started) * 1000, 1),
                    attempts=attempts.count + 1,
                )
                log.info(
                    "router.stream.complete",
                    family=family.value,
                    model=cfg.model,
                    chars=len(handle.result.text),
                )
                return

        log.error("router.stream.exhausted", attempts=attempts.count)
        raise ProviderExhaustedError(attempts.describe(), attempts=attempts.count)

    def _prepare(
        self,
        family: ProviderFamily,
        tier: ModelTier,
        strict_tier: bool,
        messages: list[Message],
        attempts: _Attempts,
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        tools: Sequence[GroundingTool] = (),
        location: Optional[tuple[float, float]] = None,
        json_output: bool = False,
        image_output: bool = False,
    ) -> tuple[Optional[FamilyBinding], Optional[LLMConfig]]:
        """Resolve binding + per-call config, or record why the family is skipped."""
        binding = self._bindings.get(family)
        if binding is None or len(binding.pool) == 0:
            attempts.skip(family, "no credentials")
            return None, None
        model = binding.model_for(tier, strict=strict_tier)
        if not model:
            attempts.skip(family, f"no model for tier {tier.value}")
            return None, None
        cfg = LLMConfig(
            model=model,
            temperature=self._temperature if temperature is None else temperature,
            max_tokens=max_tokens or self._max_tokens,
            tools=list(tools),
            latitude=location[0] if location else None,
            longitude=location[1] if location else None,
            json_output=json_output,
            image_output=image_output,
        )
        reason = binding.client.can_serve(cfg, messages)
        if reason:
            attempts.skip(family, reason)
            return None, None
        return binding, cfg

    def _chain(self, preferred: ProviderFamily) -> list[ProviderFamily]:
        chain = [preferred]
        chain.extend(f for f in self._order if f != preferred)
        return chain

    def _resolve_choice(
        self,
        preferred: Union[ProviderChoice, ProviderFamily, None],
        messages: list[Message],
    ) -> ProviderChoice:
        if isinstance(preferred, ProviderChoice):
            return preferred
        if isinstance(preferred, ProviderFamily):
            return ProviderChoice(family=preferred, tier=ModelTier.BALANCED, category="forced")
        return self.route(_prompt_text(messages))

    def _ensure_credentials(self) -> None:
        if not any(len(b.pool) for b in self._bindings.values()):
            raise RouterConfigError(
                "No provider credentials are configured for any family. "
                "Set GEMINI_API_KEY, OPENROUTER_API_KEY or GROQ_API_KEY."
            )

    def _result_from(
        self,
        response: LLMResponse,
        family: ProviderFamily,
        model: str,
        started: float,
        attempts: int,
    ) -> ProviderCallResult:
        return ProviderCallResult(
            text=response.content,
            provider=family,
            model=response.model or model,
            succeeded=True,
            latency_ms=round((self._clock() - started) * 1000, 1),
            attempts=attempts,
            sources=tuple(response.sources),
            images=tuple(response.images),
        )

    async def _reviewed(self, result: ProviderCallResult, request: str) -> ProviderCallResult:
        text = await self.review(result.text, request)
        if text == result.text:
            return result
        return result.model_copy(update={"text": text, "reviewed": True})


def _build_messages(
    prompt: Prompt,
    system: Optional[str],
    attachments: Sequence[Attachment],
) -> list[Message]:
    if isinstance(prompt, str):
        messages: list[Message] = []
        if system:
            messages.append(Message.system(system))
        messages.append(Message.user(prompt, attachments=list(attachments)))
        return messages
    messages = list(prompt)
    if system:
        messages.insert(0, Message.system(system))
    return messages


def _prompt_text(messages: list[Message]) -> str:
    """Text of the last user message: what route() and the reviewer look at."""
    for msg in reversed(messages):
        if msg.role.value == "user":
            return msg.content
    return messages[-1].content if messages else ""
