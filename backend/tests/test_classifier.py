"""
Tests for the classification waterfall: tier order, caching, rate-limit cooldown and the regex floor.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from fakes import FakeProvider, make_result
from label_engine.errors import LabelEngineError, ParseFailureError, ProviderUnavailableError, RateLimitedError
from label_engine.services.classification_cache import ClassificationCache
from label_engine.services.classifier import (
    CacheTier,
    ClassificationOrchestrator,
    Classifier,
    DomainTier,
    LLMTier,
    ProviderHealthState,
    RegexFallbackTier,
    RegexTier,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ExplodingTier(Classifier):
    name = "exploding"

    async def try_classify(self, inp):
        raise RuntimeError("tier bug")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gemini():
    return FakeProvider("gemini", make_result("Project Alpha"))


@pytest.fixture
def ollama():
    return FakeProvider("ollama", make_result("Local Label"))


@pytest.fixture
def health():
    return ProviderHealthState(cooldown_seconds=60)


@pytest.fixture
def orchestrator(session_factory, gemini, ollama, health, clock):
    return ClassificationOrchestrator(tiers=[
        CacheTier(ClassificationCache(session_factory=session_factory, window_days=30)),
        DomainTier(),
        RegexTier(),
        LLMTier(gemini, health=health, clock=clock),
        LLMTier(ollama, clock=clock),
        RegexFallbackTier(),
    ])


class TestTierOrder:
    async def test_domain_rule_short_circuits(self, orchestrator, gemini, ollama):
        decision = await orchestrator.decide("Your weekly digest", "Top stories", "digest@medium.com")
        assert decision.method == "domain"
        assert decision.result.suggested_label == "Newsletter"
        assert decision.tokens_used == 0
        assert decision.tokens_saved > 0
        assert gemini.calls == [] and ollama.calls == []

    async def test_regex_rule_short_circuits(self, orchestrator, gemini):
        decision = await orchestrator.decide("Invoice #1042", "Total due: $120", "billing@acme.com")
        assert decision.method == "regex"
        assert decision.result.suggested_label == "Invoice"
        assert gemini.calls == []

    async def test_primary_llm(self, orchestrator, gemini, ollama):
        decision = await orchestrator.decide("Quarterly planning", "Roadmap thoughts", "alice@acme.com")
        assert decision.method == "llm:gemini"
        assert decision.result.suggested_label == "Project Alpha"
        assert decision.tokens_used > 0
        assert len(gemini.calls) == 1
        assert ollama.calls == []

    async def test_unconfigured_provider_skipped(self, session_factory, ollama):
        gemini = FakeProvider("gemini", configured=False)
        orchestrator = ClassificationOrchestrator([LLMTier(gemini), LLMTier(ollama), RegexFallbackTier()])

        decision = await orchestrator.decide("Quarterly planning", "Roadmap", "alice@acme.com")
        assert decision.method == "llm:ollama"
        assert gemini.calls == []

    async def test_long_body_truncated_before_llm(self, orchestrator, gemini):
        decision = await orchestrator.decide("Quarterly planning", "word " * 2000, "alice@acme.com")
        assert len(gemini.calls[0]["body"]) < 10000
        assert decision.tokens_saved > 0


class TestRateLimit:
    async def test_rate_limit_falls_through_and_cools_down(self, orchestrator, gemini, ollama, health, clock):
        gemini.errors = [RateLimitedError("gemini", "rate limited (HTTP 429)")]

        first = await orchestrator.decide("Quarterly planning", "Roadmap", "alice@acme.com")
        assert first.method == "llm:ollama"
        assert health.rate_limited
        assert len(gemini.calls) == 1

        clock.now += 30
        second = await orchestrator.decide("Budget review", "Numbers", "alice@acme.com")
        assert second.method == "llm:ollama"
        assert len(gemini.calls) == 1, "primary must not be called during cooldown"

        clock.now += 31
        third = await orchestrator.decide("Hiring plan", "Headcount", "alice@acme.com")
        assert third.method == "llm:gemini"
        assert len(gemini.calls) == 2
        assert not health.rate_limited

    async def test_parse_failure_does_not_cool_down(self, orchestrator, gemini, health):
        gemini.errors = [ParseFailureError("gemini", "invalid classification payload")]

        decision = await orchestrator.decide("Quarterly planning", "Roadmap", "alice@acme.com")
        assert decision.method == "llm:ollama"
        assert not health.rate_limited

        decision = await orchestrator.decide("Quarterly planning", "Roadmap", "alice@acme.com")
        assert decision.method == "llm:gemini"

    async def test_llm_status_reports_cooldown(self, orchestrator, gemini, health, clock):
        gemini.errors = [RateLimitedError("gemini", "quota")]
        await orchestrator.decide("Quarterly planning", "Roadmap", "alice@acme.com")

        status = orchestrator.llm_status(now=clock.now + 15)
        assert status["gemini"]["rate_limited"] is True
        assert status["gemini"]["reset_in_seconds"] == pytest.approx(45.0)
        assert status["ollama"]["rate_limited"] is False


class TestFallback:
    async def test_regex_floor_when_every_llm_fails(self, orchestrator, gemini, ollama):
        gemini.errors = [ProviderUnavailableError("gemini", "down")]
        ollama.errors = [ProviderUnavailableError("ollama", "down")]

        decision = await orchestrator.decide("Server problem", "Please fix this urgent issue", "ops@acme.com")
        assert decision.method == "regex_fallback"
        assert decision.result.suggested_label == "Uncategorized"
        assert decision.result.is_urgent
        assert decision.result.is_escalation
        assert decision.tokens_used == 0

    async def test_uncategorized_llm_answer_uses_sender_domain(self, orchestrator, gemini):
        gemini.result = make_result("Uncategorized")

        decision = await orchestrator.decide("Hello", "Something happened", "noreply@example.com")
        assert decision.method == "llm:gemini"
        assert decision.result.suggested_label == "Newsletter"

    async def test_broken_tier_is_skipped(self):
        orchestrator = ClassificationOrchestrator([ExplodingTier(), RegexFallbackTier()])
        decision = await orchestrator.decide("Hello", "World", "a@b.com")
        assert decision.method == "regex_fallback"

    async def test_broken_last_tier_raises(self):
        orchestrator = ClassificationOrchestrator([RegexTier(), ExplodingTier()])
        with pytest.raises(RuntimeError):
            await orchestrator.decide("Hello", "World", "a@b.com")

    async def test_no_tier_answers(self):
        orchestrator = ClassificationOrchestrator([RegexTier()])
        with pytest.raises(LabelEngineError):
            await orchestrator.decide("Hello", "World", "a@b.com")

    def test_requires_tiers(self):
        with pytest.raises(ValueError):
            ClassificationOrchestrator([])


class TestCache:
    async def test_cache_hit_skips_providers(self, orchestrator, seed, gemini, ollama):
        email = await seed.email(subject="Meeting tomorrow", body="See you there", sender="bob@acme.com")
        await seed.meta(email, label="Team Sync", method="llm:gemini")

        decision = await orchestrator.decide("Meeting tomorrow", "Different body", "bob@acme.com")
        assert decision.method == "cache"
        assert decision.result.suggested_label == "Team Sync"
        assert gemini.calls == [] and ollama.calls == []

    async def test_regex_floor_results_not_reused(self, orchestrator, seed, gemini):
        email = await seed.email(subject="Meeting tomorrow", body="See you there", sender="bob@acme.com")
        await seed.meta(email, label="Uncategorized", method="regex_fallback")

        decision = await orchestrator.decide("Meeting tomorrow", "See you there", "bob@acme.com")
        assert decision.method == "llm:gemini"
        assert len(gemini.calls) == 1

    async def test_cache_window(self, session_factory, seed):
        old = datetime.now(timezone.utc) - timedelta(days=45)
        email = await seed.email(subject="Status", sender="bob@acme.com", created_at=old)
        await seed.meta(email, label="Status Report")

        cache = ClassificationCache(session_factory=session_factory, window_days=30)
        assert await cache.lookup("Status", "bob@acme.com") is None

        wide = ClassificationCache(session_factory=session_factory, window_days=60)
        assert (await wide.lookup("Status", "bob@acme.com")).suggested_label == "Status Report"

    async def test_sender_must_match(self, session_factory, seed):
        email = await seed.email(subject="Status", sender="bob@acme.com")
        await seed.meta(email, label="Status Report")

        cache = ClassificationCache(session_factory=session_factory)
        assert await cache.lookup("Status", "eve@acme.com") is None


class TestTracking:
    async def test_decision_is_tracked(self):
        tracker = AsyncMock()
        orchestrator = ClassificationOrchestrator([RegexTier(), RegexFallbackTier()], tracker=tracker)

        decision = await orchestrator.decide("Invoice #7", "Total $5", "billing@acme.com", email_id=7)
        tracker.track.assert_awaited_once_with(7, "regex", 0, decision.tokens_saved)


class TestProviderHealthState:
    def test_cooldown_expires(self):
        health = ProviderHealthState(cooldown_seconds=60)
        health.mark_rate_limited(now=100)
        assert not health.check_and_maybe_reset(now=159)
        assert health.seconds_until_reset(now=130) == 30
        assert health.check_and_maybe_reset(now=161)
        assert health.reset_at is None
