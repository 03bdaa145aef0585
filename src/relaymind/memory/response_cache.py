"""
memory/response_cache.py — Similarity Response Cache

Answers repeated questions without re-running the whole plan.

  normalize:  strip punctuation (incl. Arabic ؟ ،), collapse whitespace,
              lower-case, fold simple English plurals ("cafes" → "cafe")
  similarity: Jaccard index over the token sets
  lookup:     scans entries in insertion order, deleting expired ones on the
              way; the FIRST entry at or above the threshold wins (this is not
              a nearest-neighbour search)
  store:      overwrites the entry at the same normalized key and moves it to
              the end; inserting past max_entries evicts the oldest entries

Lookup mutates (it evicts), so both operations take the same lock.
"""

from __future__ import annotations

import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from relaymind.observability.logger import get_logger

log = get_logger(__name__)

_PUNCT_RE = re.compile(r"[^\w\s]|_", re.UNICODE)
_SPACE_RE = re.compile(r"\s+")


def _fold_plural(token: str) -> str:
    if len(token) > 4 and token.endswith("ies"):
        return token[:-3] + "y"
    if len(token) > 3 and token.endswith("s") and not token.endswith("ss"):
        return token[:-1]
    return token


def normalize(text: str) -> str:
    text = _PUNCT_RE.sub(" ", text)
    text = _SPACE_RE.sub(" ", text).strip().lower()
    return " ".join(_fold_plural(t) for t in text.split(" ") if t)


def jaccard(a: str, b: str) -> float:
    """|A ∩ B| / |A ∪ B| over whitespace tokens of two normalized strings."""
    set_a = set(a.split())
    set_b = set(b.split())
    if not set_a and not set_b:
        return 1.0
    union = set_a | set_b
    return len(set_a & set_b) / len(union)


@dataclass
class CacheEntry:
    normalized_key: str
    answer: str
    agents_used: list[str] = field(default_factory=list)
    created_at: float = 0.0


@dataclass(frozen=True)
class CacheHit:
    answer: str
    similarity: float
    agents_used: tuple[str, ...]
    matched_key: str


class ResponseCache:
    """Thread-safe, TTL- and size-bounded Jaccard-similarity answer cache."""

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        similarity_threshold: float = 0.75,
        max_entries: int = 512,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = ttl_seconds
        self._threshold = similarity_threshold
        self._max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings) -> "ResponseCache":
        cfg = settings.cache
        return cls(
            ttl_seconds=cfg.ttl_seconds,
            similarity_threshold=cfg.similarity_threshold,
            max_entries=cfg.max_entries,
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def lookup(self, request_text: str) -> Optional[CacheHit]:
        key = normalize(request_text)
        if not key:
            return None
        with self._lock:
            now = self._clock()
            expired: list[str] = []
            hit: Optional[CacheHit] = None
            for cached_key, entry in self._entries.items():
                if now - entry.created_at > self._ttl:
                    expired.append(cached_key)
                    continue
                similarity = jaccard(key, cached_key)
                if similarity >= self._threshold:
                    hit = CacheHit(
                        answer=entry.answer,
                        similarity=round(similarity, 4),
                        agents_used=tuple(entry.agents_used),
                        matched_key=cached_key,
                    )
                    break
            for cached_key in expired:
                del self._entries[cached_key]

        if expired:
            log.debug("cache.evicted_expired", count=len(expired))
        if hit:
            log.info("cache.hit", similarity=hit.similarity, key=hit.matched_key[:80])
        else:
            log.debug("cache.miss", key=key[:80])
        return hit

    def store(self, request_text: str, answer: str, agents_used: Iterable[str] = ()) -> None:
        key = normalize(request_text)
        if not key or not answer:
            return
        with self._lock:
            self._entries[key] = CacheEntry(
                normalized_key=key,
                answer=answer,
                agents_used=list(agents_used),
                created_at=self._clock(),
            )
            self._entries.move_to_end(key)
            overflow = len(self._entries) - self._max_entries
            for _ in range(max(0, overflow)):
                self._entries.popitem(last=False)
        log.debug("cache.stored", key=key[:80], evicted=max(0, overflow))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
