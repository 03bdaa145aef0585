"""
brain/credentials.py — Credential Pool

Owns the interchangeable API keys of ONE provider family and keeps a health
record per key. The router asks the pool for a key before every attempt and
reports back how the attempt went.

Selection:
  1. Cooldowns whose window has elapsed are cleared lazily (no timers) and the
     key's consecutive-failure streak is reset.
  2. Keys still cooling down (or over their daily quota) are skipped.
  3. Highest health_score wins; ties go to the least recently used key.
  4. If every candidate is cooling down, the one whose cooldown ends first is
     returned anyway: an attempt with a cooling key beats no attempt.
  5. None is returned only when the pool is empty or every key is excluded.

Backoff:
  rate-limited / transient failure → cooldown for
      min(2 ** consecutive_failures, backoff_cap) * base_delay seconds
  any other failure kind → same window, once consecutive_failures reaches
      failure_threshold

Health:
  health_score = clamp(0, 100, 100 - 15*failures + min(20, 2*successes))

The pool never raises and performs no I/O. All mutations happen under one
threading.Lock because many concurrent exchanges share a pool.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional

from relaymind.brain.types import ErrorKind
from relaymind.observability.logger import get_logger

log = get_logger(__name__)

_COOLDOWN_KINDS = {ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT}


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass(eq=False)
class Credential:
    """
    Opaque handle for one API key plus its mutable health record.

    Only the pool mutates the health fields. Callers pass the handle back to
    the pool and read `.secret` solely to hand it to a provider client.
    """
    id: str
    secret: str = field(repr=False)
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    in_cooldown: bool = False
    cooldown_until: float = 0.0
    health_score: int = 100
    last_used: Optional[float] = None
    total_uses: int = 0
    requests_today: int = 0
    quota_day: Optional[date] = None

    @property
    def masked(self) -> str:
        tail = self.secret[-4:] if len(self.secret) > 8 else "****"
        return f"{self.id}(…{tail})"


class CredentialPool:
    """Health-tracked set of credentials for a single provider family."""

    def __init__(
        self,
        family: str,
        secrets: Iterable[str],
        base_delay: float = 10.0,
        backoff_cap: int = 32,
        failure_threshold: int = 3,
        daily_quota: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        today: Callable[[], date] = _utc_today,
    ):
        self.family = family
        self._base_delay = base_delay
        self._backoff_cap = backoff_cap
        self._failure_threshold = failure_threshold
        self._daily_quota = daily_quota
        self._clock = clock
        self._today = today
        self._lock = threading.Lock()

        unique: list[str] = []
        for s in secrets:
            s = (s or "").strip()
            if s and s not in unique:
                unique.append(s)
        self._credentials = [
            Credential(id=f"{family}#{i + 1}", secret=s) for i, s in enumerate(unique)
        ]

    @classmethod
    def from_settings(cls, family: str, settings) -> "CredentialPool":
        cfg = settings.credentials
        return cls(
            family=family,
            secrets=settings.credentials_for(family),
            base_delay=cfg.base_delay_seconds,
            backoff_cap=cfg.backoff_cap,
            failure_threshold=cfg.failure_threshold,
            daily_quota=cfg.daily_quota,
        )

    def __len__(self) -> int:
        return len(self._credentials)

    def __repr__(self) -> str:
        return f"<CredentialPool family={self.family} size={len(self._credentials)}>"

    # ── Selection ─────────────────────────────────────────────────────────────

    def select(self, exclude: Iterable[Credential] = ()) -> Optional[Credential]:
        """
        Return the best usable credential, or None when nothing is left to try.

        `exclude` holds credentials already attempted in the current call so
        one call never retries the same key.
        """
        excluded = {id(c) for c in exclude}
        with self._lock:
            now = self._clock()
            today = self._today()
            candidates = [c for c in self._credentials if id(c) not in excluded]
            if not candidates:
                return None

            for c in candidates:
                self._refresh(c, now, today)

            ready = [c for c in candidates if self._is_ready(c)]
            if ready:
                chosen = max(
                    ready,
                    key=lambda c: (
                        c.health_score,
                        -(c.last_used if c.last_used is not None else float("-inf")),
                        -c.total_uses,
                    ),
                )
            else:
                # Degrade: quota-exhausted keys sort after any cooling key
                chosen = min(
                    candidates,
                    key=lambda c: (
                        self._over_quota(c),
                        c.cooldown_until if c.in_cooldown else now,
                    ),
                )
                log.warning(
                    "pool.degraded_select",
                    family=self.family,
                    credential=chosen.id,
                    cooldown_remaining_s=round(max(0.0, chosen.cooldown_until - now), 1),
                )

            chosen.last_used = now
            chosen.total_uses += 1
            return chosen

    # ── Outcome recording ─────────────────────────────────────────────────────

    def record_success(self, credential: Credential) -> None:
        with self._lock:
            credential.success_count += 1
            credential.failure_count = max(0, credential.failure_count - 1)
            credential.consecutive_failures = 0
            credential.in_cooldown = False
            credential.cooldown_until = 0.0
            credential.last_used = self._clock()
            self._count_request(credential)
            self._recompute_health(credential)
        log.debug(
            "pool.success",
            family=self.family,
            credential=credential.id,
            health=credential.health_score,
        )

    def record_failure(self, credential: Credential, kind: ErrorKind) -> None:
        with self._lock:
            now = self._clock()
            credential.failure_count += 1
            credential.consecutive_failures += 1
            credential.last_used = now
            self._count_request(credential)
            self._recompute_health(credential)

            should_cool = (
                kind in _COOLDOWN_KINDS
                or credential.consecutive_failures >= self._failure_threshold
            )
            if should_cool:
                multiplier = min(2 ** credential.consecutive_failures, self._backoff_cap)
                seconds = multiplier * self._base_delay
                credential.in_cooldown = True
                credential.cooldown_until = now + seconds

        if should_cool:
            log.warning(
                "pool.cooldown",
                family=self.family,
                credential=credential.id,
                kind=kind.value,
                consecutive_failures=credential.consecutive_failures,
                seconds=seconds,
            )
        else:
            log.info(
                "pool.failure",
                family=self.family,
                credential=credential.id,
                kind=kind.value,
                consecutive_failures=credential.consecutive_failures,
            )

    # ── Reporting ─────────────────────────────────────────────────────────────

    def status(self) -> list[dict]:
        """Per-credential health snapshot. Secrets are masked."""
        with self._lock:
            now = self._clock()
            today = self._today()
            rows = []
            for c in self._credentials:
                self._refresh(c, now, today)
                if c.in_cooldown or self._over_quota(c):
                    state = "cooldown"
                elif c.health_score < 70:
                    state = "degraded"
                else:
                    state = "healthy"
                rows.append({
                    "credential": c.masked,
                    "state": state,
                    "health_score": c.health_score,
                    "successes": c.success_count,
                    "failures": c.failure_count,
                    "consecutive_failures": c.consecutive_failures,
                    "cooldown_remaining_s": round(max(0.0, c.cooldown_until - now), 1) if c.in_cooldown else 0.0,
                    "requests_today": c.requests_today,
                })
            return rows

    def summary(self) -> dict:
        rows = self.status()
        return {
            "family": self.family,
            "total": len(rows),
            "healthy": sum(1 for r in rows if r["state"] == "healthy"),
            "degraded": sum(1 for r in rows if r["state"] == "degraded"),
            "cooldown": sum(1 for r in rows if r["state"] == "cooldown"),
            "successes": sum(r["successes"] for r in rows),
            "failures": sum(r["failures"] for r in rows),
        }

    # ── Internals (call with the lock held) ───────────────────────────────────

    def _refresh(self, c: Credential, now: float, today: date) -> None:
        if c.in_cooldown and now >= c.cooldown_until:
            c.in_cooldown = False
            c.cooldown_until = 0.0
            c.consecutive_failures = 0
            log.info("pool.cooldown_cleared", family=self.family, credential=c.id)
        if c.quota_day != today:
            c.quota_day = today
            c.requests_today = 0

    def _is_ready(self, c: Credential) -> bool:
        return not c.in_cooldown and not self._over_quota(c)

    def _over_quota(self, c: Credential) -> bool:
        return self._daily_quota is not None and c.requests_today >= self._daily_quota

    def _count_request(self, c: Credential) -> None:
        today = self._today()
        if c.quota_day != today:
            c.quota_day = today
            c.requests_today = 0
        c.requests_today += 1

    @staticmethod
    def _recompute_health(c: Credential) -> None:
        score = 100 - 15 * c.failure_count + min(20, 2 * c.success_count)
        c.health_score = max(0, min(100, score))
