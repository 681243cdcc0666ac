"""
Tests for body cleaning before LLM and embedding calls.
"""
from label_engine.services.content_cleaner import clean_email_content, html_to_text, prepare_for_embedding


def test_html_reduced_to_visible_text():
    html = "<html><head><style>p {color: red}</style></head><body><p>Hello <b>team</b></p><script>x()</script></body></html>"
    text = html_to_text(html)
    assert "Hello" in text and "team" in text
    assert "color" not in text
    assert "x()" not in text


def test_quoted_reply_removed():
    body = "Sounds good, ship it.\n\nOn Mon, Mar 3, 2025 at 9:00 AM Bob wrote:\n> Can we ship?\n> Thanks"
    cleaned = clean_email_content(body)
    assert cleaned == "Sounds good, ship it."


def test_signature_removed():
    body = "The report is attached.\n\nBest regards,\nAlice\nPhone: +1 555 0100"
    assert clean_email_content(body) == "The report is attached."


def test_urls_collapsed_to_host():
    body = "Track it here https://tracking.example.com/a/very/long/path?id=123&utm=abc"
    assert clean_email_content(body) == "Track it here [link:tracking.example.com]"


def test_truncated_on_word_boundary():
    cleaned = clean_email_content("word " * 100, max_length=50)
    assert cleaned.endswith(" ...")
    assert len(cleaned) <= 54


def test_empty_body():
    assert clean_email_content(None) == ""
    assert clean_email_content("") == ""


def test_embedding_text_leads_with_subject():
    assert prepare_for_embedding("Invoice March", "<p>Total due: $5</p>") == "Invoice March\n\nTotal due: $5"
    assert prepare_for_embedding(None, None) == ""
