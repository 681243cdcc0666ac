"""
Tests for the zero-cost heuristics: facets, sender domains, regex labels and context windows.
"""
import pytest

from label_engine.services.heuristics import (
    TRUNCATION_MARKER,
    detect_domain_category,
    detect_facets,
    dynamic_context_window,
    estimate_tokens,
    match_domain_rule,
    match_regex_label,
    optimize_content,
    sender_categories,
)


class TestFacets:
    def test_detects_each_facet(self):
        facets = detect_facets("Urgent: the client escalated an issue before the meeting with my manager")
        assert facets == {
            "is_hierarchy": True,
            "is_client": True,
            "is_meeting": True,
            "is_escalation": True,
            "is_urgent": True,
        }

    def test_word_boundaries(self):
        """Substrings inside other words do not count."""
        facets = detect_facets("The recall of the vpn customerservice")
        assert not facets["is_meeting"]
        assert not facets["is_hierarchy"]
        assert not facets["is_client"]

    def test_empty_text(self):
        assert not any(detect_facets("").values())
        assert not any(detect_facets(None).values())


class TestSenderDomains:
    def test_categories_in_table_order(self):
        assert sender_categories("jobs@linkedin.com") == ["social", "recruitment"]

    def test_display_category(self):
        assert detect_domain_category("digest@medium.com") == "Newsletter"
        assert detect_domain_category("orders@amazon.com") == "Ecommerce"
        assert detect_domain_category("alice@acme.com") is None

    def test_rule_needs_keyword(self):
        assert match_domain_rule("Your order", "Thanks", "orders@amazon.com").label == "Order"
        assert match_domain_rule("Hello", "Thanks", "orders@amazon.com") is None

    def test_rule_for_unknown_domain(self):
        assert match_domain_rule("Weekly digest", "newsletter", "alice@acme.com") is None


class TestRegexLabels:
    def test_invoice(self):
        label, _ = match_regex_label("Invoice #1042", "Total: $120.00")
        assert label == "Invoice"

    def test_invoice_needs_amount(self):
        assert match_regex_label("Invoice #1042", "See attached") is None

    def test_meeting(self):
        label, _ = match_regex_label("Weekly sync call", "Join on Zoom")
        assert label == "Meeting"

    def test_keyword_only_in_body_does_not_match(self):
        assert match_regex_label("Hello", "invoice total meeting zoom") is None


class TestContextWindow:
    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcde") == 2

    def test_simple_emails_get_small_window(self):
        assert dynamic_context_window("Weekly newsletter", "x" * 5000) == 1000

    def test_window_by_length(self):
        assert dynamic_context_window("Question", "short body") == 2000
        assert dynamic_context_window("Question", "x" * 2500) == 3000

    def test_short_body_untouched(self):
        assert optimize_content("short", 100) == ("short", 0)

    def test_long_body_keeps_head_and_tail(self):
        body = "H" * 600 + "M" * 1000 + "T" * 400
        optimized, saved = optimize_content(body, 1000)
        assert optimized.startswith("H" * 600)
        assert optimized.endswith("T" * 200)
        assert TRUNCATION_MARKER in optimized
        assert "M" not in optimized
        assert saved == estimate_tokens(body) - estimate_tokens(optimized)
        assert saved > 0

    @pytest.mark.parametrize("max_chars", [1000, 2000, 3000])
    def test_optimized_length_bounded(self, max_chars):
        optimized, _ = optimize_content("x" * 10000, max_chars)
        assert len(optimized) <= int(max_chars * 0.8) + len(TRUNCATION_MARKER)
