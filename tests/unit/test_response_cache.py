"""
tests/unit/test_response_cache.py — Similarity Response Cache Unit Tests
"""

from __future__ import annotations

import pytest

from relaymind.memory.response_cache import ResponseCache, jaccard, normalize


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock) -> ResponseCache:
    return ResponseCache(ttl_seconds=3600, similarity_threshold=0.75, max_entries=3, clock=clock)


class TestNormalize:
    def test_punctuation_case_and_whitespace(self):
        assert normalize("  Hello,   WORLD!! ") == "hello world"

    def test_arabic_punctuation_stripped(self):
        assert normalize("ما هو الطقس؟") == "ما هو الطقس"

    def test_plural_folding(self):
        assert normalize("Cafes and cities") == "cafe and city"
        assert normalize("glass bus") == "glass bus"

    def test_empty(self):
        assert normalize("?!") == ""


class TestJaccard:
    def test_identical(self):
        assert jaccard("a b c", "a b c") == 1.0

    def test_disjoint(self):
        assert jaccard("a b", "c d") == 0.0

    def test_partial(self):
        assert jaccard("a b c", "a b d") == pytest.approx(2 / 4)


class TestLookup:
    def test_similar_question_hits(self, cache):
        cache.store("Find cafes near Central Park", "Three cafes: ...", ["search", "maps"])
        hit = cache.lookup("Find cafe near Central Park, NYC")
        assert hit is not None
        assert hit.similarity == pytest.approx(5 / 6, abs=1e-3)
        assert hit.answer == "Three cafes: ..."
        assert hit.agents_used == ("search", "maps")

    def test_dissimilar_question_misses(self, cache):
        cache.store("Find cafes near Central Park", "answer")
        assert cache.lookup("Weather in Tokyo tomorrow") is None

    def test_first_qualifying_entry_wins(self, cache):
        cache.store("best pizza in rome italy", "first")
        cache.store("best pizza in rome", "second")
        # Matches both (0.8 and 1.0); insertion order decides, not best score
        hit = cache.lookup("best pizza in rome")
        assert hit.answer == "first"

    def test_expired_entries_evicted_on_lookup(self, cache, clock):
        cache.store("old question here", "stale")
        clock.now = 3601
        assert cache.lookup("old question here") is None
        assert len(cache) == 0

    def test_blank_request_never_hits(self, cache):
        cache.store("something", "x")
        assert cache.lookup("   ") is None


class TestStore:
    def test_same_key_overwrites(self, cache):
        cache.store("What is Rust?", "v1")
        cache.store("what is rust", "v2")
        assert len(cache) == 1
        assert cache.lookup("What is Rust").answer == "v2"

    def test_restore_refreshes_ttl(self, cache, clock):
        cache.store("q one two", "v1")
        clock.now = 3000
        cache.store("q one two", "v2")
        clock.now = 4000
        assert cache.lookup("q one two").answer == "v2"

    def test_empty_answer_not_stored(self, cache):
        cache.store("question", "")
        assert len(cache) == 0

    def test_oldest_evicted_past_max_entries(self, cache):
        cache.store("alpha one", "a")
        cache.store("bravo two", "b")
        cache.store("charlie three", "c")
        cache.store("alpha one", "a2")      # moves to the end
        cache.store("delta four", "d")
        assert len(cache) == 3
        assert cache.lookup("bravo two") is None
        assert cache.lookup("alpha one").answer == "a2"

    def test_clear(self, cache):
        cache.store("a b", "x")
        cache.clear()
        assert len(cache) == 0
