"""Embedding providers — Ollama and Gemini vectors, tagged with the model that produced them."""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from label_engine.config import settings
from label_engine.errors import ProviderError, ProviderUnavailableError, RateLimitedError

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


@dataclass
class EmbeddingResult:
    vector: list[float]
    model: str  # e.g. "ollama:nomic-embed-text"; vectors are only comparable within one model


def sanitize(text: str, max_chars: int) -> str:
    """Strip control characters and truncate to the embedding input limit."""
    return _CONTROL_CHARS.sub(" ", text or "").strip()[:max_chars]


class EmbeddingBackend:
    """One embedding model behind an HTTP API."""

    name = "embedding"

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=60.0)

    @property
    def model_tag(self) -> str:
        raise NotImplementedError

    @property
    def configured(self) -> bool:
        return True

    async def embed(self, text: str) -> list[float]:
        raise NotImplementedError

    async def _post(self, url: str, **kwargs) -> dict:
        try:
            response = await self._client.post(url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderUnavailableError(self.name, f"HTTP error: {e}") from e
        if response.status_code == 429:
            raise RateLimitedError(self.name, "rate limited")
        if response.status_code >= 400:
            raise ProviderUnavailableError(self.name, f"HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise ProviderUnavailableError(self.name, f"non-JSON response: {e}") from e

    async def close(self):
        await self._client.aclose()


class OllamaEmbeddingBackend(EmbeddingBackend):
    name = "ollama"

    def __init__(self, client=None, base_url: Optional[str] = None, model: Optional[str] = None):
        super().__init__(client)
        self._base_url = base_url or settings.ollama_url
        self._model = model or settings.ollama_embedding_model

    @property
    def model_tag(self) -> str:
        return f"ollama:{self._model}"

    async def embed(self, text: str) -> list[float]:
        data = await self._post(
            f"{self._base_url}/api/embeddings",
            json={"model": self._model, "prompt": text},
        )
        vector = data.get("embedding")
        if not vector:
            raise ProviderUnavailableError(self.name, "empty embedding")
        return [float(x) for x in vector]


class GeminiEmbeddingBackend(EmbeddingBackend):
    name = "gemini"

    def __init__(
        self,
        client=None,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
    ):
        super().__init__(client)
        self._api_key = api_key if api_key is not None else settings.gemini_api_key
        self._model = model or settings.gemini_embedding_model
        self._base_url = base_url or settings.gemini_base_url

    @property
    def model_tag(self) -> str:
        return f"gemini:{self._model}"

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._api_key.strip())

    async def embed(self, text: str) -> list[float]:
        if not self.configured:
            raise ProviderUnavailableError(self.name, "API key not configured")
        data = await self._post(
            f"{self._base_url}/models/{self._model}:embedContent",
            params={"key": self._api_key},
            json={"model": f"models/{self._model}", "content": {"parts": [{"text": text}]}},
        )
        vector = (data.get("embedding") or {}).get("values")
        if not vector:
            raise ProviderUnavailableError(self.name, "empty embedding")
        return [float(x) for x in vector]


class EmbeddingService:
    """Primary backend with bounded exponential retry, then the secondary backend."""

    def __init__(
        self,
        primary: EmbeddingBackend,
        secondary: Optional[EmbeddingBackend] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_chars: Optional[int] = None,
        sleep=asyncio.sleep,
    ):
        self.primary = primary
        self.secondary = secondary
        self._max_attempts = max_attempts or settings.embedding_max_attempts
        self._base_delay = base_delay if base_delay is not None else settings.embedding_retry_base_delay
        self._max_chars = max_chars or settings.embedding_max_chars
        self._sleep = sleep

    @property
    def backends(self) -> list[EmbeddingBackend]:
        return [b for b in (self.primary, self.secondary) if b is not None and b.configured]

    async def embed(self, text: str) -> Optional[EmbeddingResult]:
        """Embed text, or None when every backend fails."""
        safe_text = sanitize(text, self._max_chars)
        if not safe_text:
            return None

        for backend in self.backends:
            result = await self._embed_with_retry(backend, safe_text)
            if result:
                return result

        logger.error("All embedding backends failed")
        return None

    async def embed_each(self, text: str) -> list[EmbeddingResult]:
        """Embed with every configured backend concurrently; failed backends are omitted."""
        safe_text = sanitize(text, self._max_chars)
        if not safe_text:
            return []

        results = await asyncio.gather(
            *(self._embed_with_retry(b, safe_text) for b in self.backends)
        )
        return [r for r in results if r is not None]

    async def close(self):
        for backend in (self.primary, self.secondary):
            if backend is not None:
                await backend.close()

    async def _embed_with_retry(self, backend: EmbeddingBackend, text: str) -> Optional[EmbeddingResult]:
        for attempt in range(1, self._max_attempts + 1):
            try:
                vector = await backend.embed(text)
                if attempt > 1:
                    logger.info(f"{backend.model_tag} embedding succeeded on attempt {attempt}")
                return EmbeddingResult(vector=vector, model=backend.model_tag)
            except ProviderError as e:
                if attempt == self._max_attempts:
                    logger.warning(f"{backend.model_tag} embedding failed after {attempt} attempts: {e}")
                    break
                delay = self._base_delay * 2 ** (attempt - 1)
                logger.warning(f"{backend.model_tag} attempt {attempt} failed: {e}. Retrying in {delay}s")
                await self._sleep(delay)
        return None


def build_default_embedding_service() -> EmbeddingService:
    ollama = OllamaEmbeddingBackend()
    gemini = GeminiEmbeddingBackend()
    if settings.embedding_primary == "gemini":
        return EmbeddingService(primary=gemini, secondary=ollama)
    return EmbeddingService(primary=ollama, secondary=gemini)


# Singleton
embedding_service = build_default_embedding_service()
