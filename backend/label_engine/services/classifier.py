"""Classification orchestrator — cost-ordered waterfall of classifier tiers."""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from label_engine.config import settings
from label_engine.errors import LabelEngineError, ProviderError, RateLimitedError
from label_engine.services.classification import ClassificationResult, FewShotExample, heuristic_result
from label_engine.services.classification_cache import ClassificationCache
from label_engine.services.few_shot import FewShotRetriever
from label_engine.services.heuristics import (
    UNCATEGORIZED,
    detect_domain_category,
    dynamic_context_window,
    estimate_tokens,
    match_domain_rule,
    match_regex_label,
    optimize_content,
)
from label_engine.services.llm_providers import GeminiProvider, LLMProvider, OllamaProvider
from label_engine.services.token_tracker import TokenTracker

logger = logging.getLogger(__name__)


@dataclass
class ProviderHealthState:
    """Rate-limit cooldown for one provider."""
    cooldown_seconds: float = 60.0
    rate_limited: bool = False
    reset_at: Optional[float] = None

    def check_and_maybe_reset(self, now: float) -> bool:
        """Clear an expired cooldown. Returns True when the provider may be called."""
        if self.rate_limited and self.reset_at is not None and now > self.reset_at:
            logger.info("Provider rate limit expired, trying again")
            self.rate_limited = False
            self.reset_at = None
        return not self.rate_limited

    def mark_rate_limited(self, now: float):
        self.rate_limited = True
        self.reset_at = now + self.cooldown_seconds

    def seconds_until_reset(self, now: float) -> float:
        if not self.rate_limited or self.reset_at is None:
            return 0.0
        return max(0.0, self.reset_at - now)


@dataclass
class ClassificationInput:
    subject: str
    body: str
    sender: str
    email_id: Optional[int] = None
    few_shot_examples: Optional[list[FewShotExample]] = field(default=None, repr=False)

    @property
    def text(self) -> str:
        return f"{self.subject} {self.body}"


@dataclass
class TierDecision:
    result: ClassificationResult
    method: str
    tokens_used: int = 0
    tokens_saved: int = 0


class Classifier:
    """One tier of the waterfall. try_classify returns None when the tier does not apply."""

    name = "classifier"

    async def try_classify(self, inp: ClassificationInput) -> Optional[TierDecision]:
        raise NotImplementedError


class CacheTier(Classifier):
    name = "cache"

    def __init__(self, cache: ClassificationCache):
        self._cache = cache

    async def try_classify(self, inp):
        if not inp.subject or not inp.sender:
            return None
        result = await self._cache.lookup(inp.subject, inp.sender)
        if result is None:
            return None
        return TierDecision(result, "cache")


class DomainTier(Classifier):
    name = "domain"

    async def try_classify(self, inp):
        rule = match_domain_rule(inp.subject, inp.body, inp.sender)
        if rule is None:
            return None
        result = heuristic_result(
            inp.subject, inp.body, rule.label,
            f"Clear {rule.category} pattern detected (sender domain + keyword)",
        )
        return TierDecision(result, "domain", tokens_saved=estimate_tokens(inp.text))


class RegexTier(Classifier):
    name = "regex"

    async def try_classify(self, inp):
        match = match_regex_label(inp.subject, inp.body)
        if match is None:
            return None
        label, reasoning = match
        result = heuristic_result(inp.subject, inp.body, label, reasoning)
        return TierDecision(result, "regex", tokens_saved=estimate_tokens(inp.text))


class LLMTier(Classifier):
    """An LLM provider, optionally guarded by a rate-limit cooldown."""

    def __init__(
        self,
        provider: LLMProvider,
        health: Optional[ProviderHealthState] = None,
        few_shot: Optional[FewShotRetriever] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.health = health
        self._few_shot = few_shot
        self._clock = clock
        self.name = f"llm:{provider.name}"

    async def try_classify(self, inp):
        if not self.provider.configured:
            return None
        if self.health and not self.health.check_and_maybe_reset(self._clock()):
            logger.debug(f"{self.provider.name} cooling down, skipping")
            return None

        window = dynamic_context_window(inp.subject, inp.body)
        body, tokens_saved = optimize_content(inp.body, window)

        if inp.few_shot_examples is None:
            inp.few_shot_examples = (
                await self._few_shot.get_examples(inp.subject, inp.body, inp.email_id)
                if self._few_shot else []
            )

        try:
            result = await self.provider.classify(inp.subject, body, inp.sender, inp.few_shot_examples)
        except RateLimitedError as e:
            if self.health:
                self.health.mark_rate_limited(self._clock())
                logger.warning(f"{e}, cooling down for {self.health.cooldown_seconds:.0f}s")
            else:
                logger.warning(f"{e}, falling through")
            return None
        except ProviderError as e:
            logger.warning(f"{self.provider.name} failed, falling through: {e}")
            return None

        if result.is_uncategorized:
            domain = detect_domain_category(inp.sender)
            if domain:
                result = result.model_copy(update={
                    "suggested_label": domain,
                    "reasoning": f"Domain-based classification: {domain} (from {inp.sender})",
                })

        return TierDecision(result, self.name, estimate_tokens(body), tokens_saved)


class RegexFallbackTier(Classifier):
    """Always succeeds: keyword facets and an Uncategorized label."""

    name = "regex_fallback"

    async def try_classify(self, inp):
        result = heuristic_result(
            inp.subject, inp.body, UNCATEGORIZED,
            "Fallback regex classification (no LLM result available)",
        )
        return TierDecision(result, self.name, tokens_saved=estimate_tokens(inp.text))


class ClassificationOrchestrator:
    """Runs tiers in cost order and stops at the first decision."""

    def __init__(self, tiers: list[Classifier], tracker: Optional[TokenTracker] = None):
        if not tiers:
            raise ValueError("At least one classifier tier is required")
        self.tiers = tiers
        self._tracker = tracker

    async def classify(
        self, subject: str, body: str, sender: str, email_id: Optional[int] = None
    ) -> ClassificationResult:
        decision = await self.decide(subject, body, sender, email_id)
        return decision.result

    async def decide(
        self, subject: str, body: str, sender: str, email_id: Optional[int] = None
    ) -> TierDecision:
        """Classify and report which tier answered."""
        inp = ClassificationInput(subject or "", body or "", sender or "", email_id)
        last = self.tiers[-1]

        for tier in self.tiers:
            try:
                decision = await tier.try_classify(inp)
            except Exception as e:
                if tier is last:
                    raise
                logger.error(f"Tier {tier.name} raised, falling through: {e}")
                continue

            if decision is None:
                continue

            logger.info(
                f"Classified email {email_id} via {decision.method}: "
                f"{decision.result.suggested_label} (~{decision.tokens_used} tokens)"
            )
            if self._tracker:
                await self._tracker.track(email_id, decision.method, decision.tokens_used, decision.tokens_saved)
            return decision

        raise LabelEngineError("No classification tier produced a result")

    def llm_status(self, now: Optional[float] = None) -> dict:
        """Configuration and cooldown state of each LLM tier."""
        now = time.monotonic() if now is None else now
        status = {}
        for tier in self.tiers:
            if not isinstance(tier, LLMTier):
                continue
            status[tier.provider.name] = {
                "configured": tier.provider.configured,
                "model": tier.provider.model,
                "rate_limited": bool(tier.health and tier.health.rate_limited),
                "reset_in_seconds": round(tier.health.seconds_until_reset(now), 1) if tier.health else 0.0,
            }
        return status

    async def close(self):
        """Close the HTTP clients of the LLM providers."""
        for tier in self.tiers:
            if isinstance(tier, LLMTier):
                await tier.provider.close()


def build_default_orchestrator() -> ClassificationOrchestrator:
    few_shot = FewShotRetriever()
    return ClassificationOrchestrator(
        tiers=[
            CacheTier(ClassificationCache()),
            DomainTier(),
            RegexTier(),
            LLMTier(
                GeminiProvider(),
                health=ProviderHealthState(cooldown_seconds=settings.rate_limit_cooldown_seconds),
                few_shot=few_shot,
            ),
            LLMTier(OllamaProvider(), few_shot=few_shot),
            RegexFallbackTier(),
        ],
        tracker=TokenTracker(),
    )


# Singleton
classification_orchestrator = build_default_orchestrator()
