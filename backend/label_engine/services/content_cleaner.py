"""Content cleaner — strips markup, quoted replies, signatures and boilerplate before LLM/embedding calls."""

import re
from typing import Optional

from bs4 import BeautifulSoup

CLASSIFY_MAX_CHARS = 5000
EMBEDDING_MAX_CHARS = 2500

_HTML_HINT = re.compile(r"<(html|body|div|p|br|table|span|a)\b", re.IGNORECASE)

QUOTED_PATTERNS = [
    re.compile(r"^\s*>.*$", re.MULTILINE),
    re.compile(r"^on\s.{0,100}wrote:\s*$", re.IGNORECASE | re.MULTILINE),
    re.compile(r"-{3,}\s*(original|forwarded) message\s*-{3,}[\s\S]*", re.IGNORECASE),
    re.compile(r"_{20,}[\s\S]*"),  # Outlook reply separator
]

SIGNATURE_PATTERNS = [
    re.compile(r"^--\s*$[\s\S]*", re.MULTILINE),
    re.compile(r"sent from (my )?(iphone|ipad|android|mobile|blackberry)", re.IGNORECASE),
    re.compile(r"get outlook for (ios|android)", re.IGNORECASE),
    re.compile(r"\n\s*(best regards|kind regards|regards|sincerely|cheers)\s*,?\s*\n[\s\S]*$", re.IGNORECASE),
    re.compile(r"\b(phone|tel|mobile|fax|cell):\s*[+\d\s\-().]+", re.IGNORECASE),
]

DISCLAIMER_PATTERNS = [
    re.compile(r"confidential(ity)? notice[\s\S]{0,800}?(delete|destroy|notify)\w*", re.IGNORECASE),
    re.compile(r"this (e-?mail|message)[\s\S]{0,300}?intended (solely|only)[\s\S]{0,300}?recipient\w*", re.IGNORECASE),
    re.compile(r"please consider the environment[^.\n]*\.?", re.IGNORECASE),
    re.compile(r"(this email has been scanned|no virus found|scanned for viruses)[^.\n]*\.?", re.IGNORECASE),
]

INLINE_PATTERNS = [
    re.compile(r"data:image/[^;]+;base64,[A-Za-z0-9+/=]+"),
    re.compile(r"cid:\S+"),
]

_URL = re.compile(r"https?://([^/\s]+)\S*")


def html_to_text(html: str) -> str:
    """Visible text of an HTML body."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    return soup.get_text(separator="\n", strip=True)


def clean_email_content(body: Optional[str], max_length: int = CLASSIFY_MAX_CHARS) -> str:
    """Reduce an email body to the text worth sending to a model."""
    if not body:
        return ""

    text = html_to_text(body) if _HTML_HINT.search(body) else body

    for pattern in INLINE_PATTERNS + QUOTED_PATTERNS + DISCLAIMER_PATTERNS + SIGNATURE_PATTERNS:
        text = pattern.sub("", text)

    # Long tracking URLs carry no meaning; keep the host
    text = _URL.sub(lambda m: f"[link:{m.group(1)}]", text)

    # Normalize whitespace
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n\s*\n+", "\n\n", text).strip()

    if len(text) > max_length:
        text = text[:max_length].rsplit(" ", 1)[0] + " ..."
    return text


def prepare_for_embedding(subject: Optional[str], body: Optional[str]) -> str:
    """Subject plus cleaned body, sized for embedding models."""
    cleaned = clean_email_content(body, max_length=EMBEDDING_MAX_CHARS)
    return f"{subject or ''}\n\n{cleaned}".strip()
