"""LLM providers — Gemini (remote primary) and Ollama (local fallback) classifiers."""

import json
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from label_engine.config import settings
from label_engine.errors import ParseFailureError, ProviderUnavailableError, RateLimitedError
from label_engine.services.classification import ClassificationResult, FewShotExample
from label_engine.services.heuristics import detect_domain_category

logger = logging.getLogger(__name__)

CLASSIFY_PROMPT = """You are an email classification AI. Analyze the following email and return a JSON response.

EMAIL:
From: {sender}
Subject: {subject}

Body:
{body}

---
{examples}
Rules:
- is_hierarchy: from or about management (boss, manager, director, CEO, VP, leadership)
- is_client: involves clients, customers, vendors or partners
- is_meeting: about a meeting, call, discussion or scheduling
- is_escalation: raises an issue, problem, concern or escalation
- is_urgent: time-critical (ASAP, urgent, immediately, deadline)
- suggested_label: a short category name, specific when possible (e.g. "Invoice" rather than "Finance");
  use "Uncategorized" only when nothing fits{domain_hint}

Respond with ONLY valid JSON (no markdown, no explanation):
{{
  "is_hierarchy": <boolean>,
  "is_client": <boolean>,
  "is_meeting": <boolean>,
  "is_escalation": <boolean>,
  "is_urgent": <boolean>,
  "suggested_label": "<label name>",
  "reasoning": "<one sentence explaining the label>",
  "confidence": <float 0.0-1.0>
}}"""

RATE_LIMIT_MARKERS = ("RESOURCE_EXHAUSTED", "quota", "rate limit")


def build_prompt(
    subject: str,
    body: str,
    sender: str,
    few_shot_examples: Optional[list[FewShotExample]] = None,
) -> str:
    """Render the classification prompt with optional few-shot examples and a domain hint."""
    examples = ""
    if few_shot_examples:
        lines = ["Previously classified emails for reference:"]
        for i, ex in enumerate(few_shot_examples, 1):
            lines.append(
                f'{i}. Subject: "{ex.subject}" From: {ex.sender} -> '
                f'"{ex.suggested_label}" ({ex.reasoning})'
            )
        examples = "\n" + "\n".join(lines) + "\n"

    domain = detect_domain_category(sender)
    domain_hint = (
        f"\n\nDomain hint: this email appears to be from a {domain} source based on the sender domain."
        if domain else ""
    )

    return CLASSIFY_PROMPT.format(
        sender=sender or "unknown",
        subject=subject or "(no subject)",
        body=body or "(empty body)",
        examples=examples,
        domain_hint=domain_hint,
    )


def _extract_json(text: str) -> str:
    """Extract JSON from a response that might have markdown wrapping."""
    text = text.strip()

    # Remove markdown code fences
    if text.startswith("```"):
        lines = text.split("\n")
        start = 1 if lines[0].strip().startswith("```") else 0
        end = len(lines)
        for i in range(len(lines) - 1, -1, -1):
            if lines[i].strip() == "```":
                end = i
                break
        text = "\n".join(lines[start:end]).strip()

    brace_start = text.find("{")
    if brace_start == -1:
        return text

    # Find matching closing brace
    depth = 0
    for i in range(brace_start, len(text)):
        if text[i] == "{":
            depth += 1
        elif text[i] == "}":
            depth -= 1
            if depth == 0:
                return text[brace_start:i + 1]

    return text[brace_start:]


def parse_classification(provider: str, text: str) -> ClassificationResult:
    """Validate raw LLM output against the strict result schema."""
    try:
        data = json.loads(_extract_json(text))
        return ClassificationResult.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.debug(f"Raw {provider} response: {text[:500]}")
        raise ParseFailureError(provider, f"invalid classification payload: {e}") from e


class LLMProvider:
    """Base class for chat-completion classifiers."""

    name = "llm"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=120.0)

    @property
    def configured(self) -> bool:
        return True

    @property
    def model(self) -> str:
        raise NotImplementedError

    async def classify(
        self,
        subject: str,
        body: str,
        sender: str,
        few_shot_examples: Optional[list[FewShotExample]] = None,
    ) -> ClassificationResult:
        prompt = build_prompt(subject, body, sender, few_shot_examples)
        text = await self._generate(prompt)
        return parse_classification(self.name, text)

    async def _generate(self, prompt: str) -> str:
        raise NotImplementedError

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()


class GeminiProvider(LLMProvider):
    """Google Gemini over the generateContent REST endpoint."""

    name = "gemini"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(client)
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._model = model or settings.gemini_model
        self._base_url = base_url or settings.gemini_base_url

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._api_key.strip())

    @property
    def model(self) -> str:
        return self._model

    async def _generate(self, prompt: str) -> str:
        if not self.configured:
            raise ProviderUnavailableError(self.name, "API key not configured")

        try:
            response = await self._client.post(
                f"{self._base_url}/models/{self._model}:generateContent",
                params={"key": self._api_key},
                json={
                    "contents": [{"parts": [{"text": prompt}]}],
                    "generationConfig": {
                        "temperature": 0.2,
                        "responseMimeType": "application/json",
                    },
                },
            )
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(self.name, "request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, f"HTTP error: {e}") from e

        if response.status_code == 429 or (
            response.status_code >= 400
            and any(m.lower() in response.text.lower() for m in RATE_LIMIT_MARKERS)
        ):
            raise RateLimitedError(self.name, f"rate limited (HTTP {response.status_code})")
        if response.status_code >= 400:
            raise ProviderUnavailableError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")

        try:
            data = response.json()
            return data["candidates"][0]["content"]["parts"][0]["text"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ParseFailureError(self.name, f"unexpected response shape: {e}") from e


class OllamaProvider(LLMProvider):
    """Local Ollama model via /api/generate."""

    name = "ollama"

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
    ):
        super().__init__(client)
        self._base_url = base_url or settings.ollama_url
        self._model = model or settings.ollama_model

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._model)

    @property
    def model(self) -> str:
        return self._model

    async def _generate(self, prompt: str) -> str:
        try:
            response = await self._client.post(
                f"{self._base_url}/api/generate",
                json={
                    "model": self._model,
                    "prompt": prompt,
                    "stream": False,
                    "format": "json",
                    "options": {
                        "temperature": 0.1,  # Low temp for consistent classification
                        "num_predict": 512,
                    },
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError(self.name, "request timed out") from e
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, f"HTTP error: {e}") from e
        except ValueError as e:
            raise ParseFailureError(self.name, f"non-JSON response: {e}") from e

        return data.get("response", "").strip()
