"""Zero-cost classification heuristics — facet regexes, sender-domain tables, context windows."""

import math
import re
from dataclasses import dataclass
from typing import Optional

UNCATEGORIZED = "Uncategorized"

# Independent facet detectors, applied to subject + body
FACET_PATTERNS = {
    "is_hierarchy": re.compile(r"\b(boss|manager|director|ceo|vp|leadership)\b", re.IGNORECASE),
    "is_client": re.compile(r"\b(clients?|customers?|vendors?|partners?)\b", re.IGNORECASE),
    "is_meeting": re.compile(r"\b(meetings?|meet|calls?|discussion|schedule[ds]?)\b", re.IGNORECASE),
    "is_escalation": re.compile(r"\b(escalat\w*|issues?|problems?|concerns?|critical)\b", re.IGNORECASE),
    "is_urgent": re.compile(r"\b(asap|urgent|immediately|deadline|critical)\b", re.IGNORECASE),
}

# Sender-domain category table (substring match on the lowercased sender)
DOMAIN_PATTERNS = {
    "newsletter": [
        "medium.com", "substack.com", "beehiiv.com", "mailchimp.com",
        "buttondown.email", "digest@", "newsletter@", "noreply@",
    ],
    "social": ["linkedin.com", "twitter.com", "facebook.com", "instagram.com", "notifications@"],
    "automated": ["noreply@", "no-reply@", "donotreply@", "notification@", "automated@"],
    "ecommerce": ["amazon.com", "ebay.com", "shopify.com", "paypal.com", "stripe.com"],
    "recruitment": ["indeed.com", "linkedin.com", "glassdoor.com", "hired.com", "jobs@", "careers@"],
}


@dataclass(frozen=True)
class DomainRule:
    """A domain category that may short-circuit classification when a keyword confirms it."""
    category: str
    label: str
    keywords: tuple[str, ...]


DOMAIN_RULES = [
    DomainRule("newsletter", "Newsletter", ("digest", "newsletter", "weekly")),
    DomainRule("social", "Social", ("connection", "followed you", "mentioned you", "invitation")),
    DomainRule("ecommerce", "Order", ("order", "shipped", "delivery")),
    DomainRule("recruitment", "Recruitment", ("job", "application", "position", "interview")),
    DomainRule("automated", "Notification", ("notification", "alert", "verify", "password")),
]

SIMPLE_PATTERNS = ["newsletter", "digest", "notification", "no-reply", "automated", "unsubscribe"]

TRUNCATION_MARKER = "\n\n[... content truncated for optimization ...]\n\n"


def detect_facets(text: str) -> dict[str, bool]:
    """Compute the five boolean facets from free text."""
    return {name: bool(pattern.search(text or "")) for name, pattern in FACET_PATTERNS.items()}


def sender_categories(sender: Optional[str]) -> list[str]:
    """All categories whose domain patterns match the sender, in table order."""
    sender_lower = (sender or "").lower()
    return [
        category for category, patterns in DOMAIN_PATTERNS.items()
        if any(p in sender_lower for p in patterns)
    ]


def detect_domain_category(sender: Optional[str]) -> Optional[str]:
    """Display name of the first matching domain category, e.g. 'Newsletter'."""
    categories = sender_categories(sender)
    return categories[0].capitalize() if categories else None


def match_domain_rule(subject: str, body: str, sender: Optional[str]) -> Optional[DomainRule]:
    """Return the domain rule confirmed by a keyword in the text, or None."""
    categories = sender_categories(sender)
    if not categories:
        return None

    text = f"{subject} {body}".lower()
    for rule in DOMAIN_RULES:
        if rule.category in categories and any(k in text for k in rule.keywords):
            return rule
    return None


def match_regex_label(subject: str, body: str) -> Optional[tuple[str, str]]:
    """Unambiguous subject patterns. Returns (label, reasoning) or None."""
    subject_lower = (subject or "").lower()
    text = f"{subject} {body}".lower()

    if ("invoice" in subject_lower or "receipt" in subject_lower) and any(
        k in text for k in ("total", "amount due", "payment")
    ):
        return "Invoice", "Clear invoice/receipt pattern detected"

    if ("meeting" in subject_lower or "call" in subject_lower) and any(
        k in text for k in ("zoom", "teams", "calendar", "agenda")
    ):
        return "Meeting", "Clear meeting pattern detected"

    return None


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text or "") / 4)


def dynamic_context_window(subject: str, body: str) -> int:
    """Character budget for the LLM prompt body."""
    text = f"{subject} {body}".lower()
    if any(p in text for p in SIMPLE_PATTERNS):
        return 1000
    if len(body or "") < 2000:
        return 2000
    return 3000


def optimize_content(body: str, max_chars: int) -> tuple[str, int]:
    """Truncate to the head 60% and tail 20% of the budget. Returns (body, tokens_saved)."""
    body = body or ""
    if len(body) <= max_chars:
        return body, 0

    head = body[: int(max_chars * 0.6)]
    tail_len = int(max_chars * 0.2)
    tail = body[len(body) - tail_len:] if tail_len else ""
    optimized = f"{head}{TRUNCATION_MARKER}{tail}"
    return optimized, estimate_tokens(body) - estimate_tokens(optimized)
