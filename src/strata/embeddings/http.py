"""HTTP embedding providers (Ollama, OpenAI-compatible) over aiohttp."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
import numpy as np

from strata.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


class _HTTPEmbedder:
    """Shared POST/timeout/error handling. Subclasses build payloads and parse responses."""

    provider = "http"

    def __init__(self, base_url: str, model: str, dimensions: int, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        return f"{self.provider}/{self.model}"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            return await asyncio.wait_for(self._request(url, payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ProviderError(self.name, f"timed out after {self.timeout}s") from None
        except aiohttp.ClientError as e:
            raise ProviderError(self.name, f"request to {url} failed: {e}") from e

    async def _request(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        async with aiohttp.ClientSession() as session:
            async with session.post(url, json=payload, headers=self._headers()) as resp:
                if resp.status >= 300:
                    body = await resp.text()
                    raise ProviderError(self.name, f"HTTP {resp.status}: {body[:200]}")
                return await resp.json()

    def _to_vector(self, values: list[float]) -> np.ndarray:
        vec = np.asarray(values, dtype=np.float32)
        if vec.shape[0] != self._dimensions:
            logger.debug("%s returned %d dims (expected %d)", self.name, vec.shape[0], self._dimensions)
            self._dimensions = int(vec.shape[0])
        return vec


class OllamaEmbedder(_HTTPEmbedder):
    """Ollama ``/api/embed``. Default model nomic-embed-text (768 dims)."""

    provider = "ollama"

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        dimensions: int = 768,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            base_url or "http://localhost:11434", model or "nomic-embed-text", dimensions, timeout
        )

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        data = await self._post("/api/embed", {"model": self.model, "input": texts})
        try:
            return [self._to_vector(e) for e in data["embeddings"]]
        except (KeyError, TypeError) as e:
            raise ProviderError(self.name, f"malformed response: {e}") from e


class OpenAIEmbedder(_HTTPEmbedder):
    """OpenAI-compatible ``/v1/embeddings``. Default model text-embedding-3-small (1536 dims)."""

    provider = "openai"

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        dimensions: int = 1536,
        timeout: float = 30.0,
    ) -> None:
        super().__init__(
            base_url or "https://api.openai.com",
            model or "text-embedding-3-small",
            dimensions,
            timeout,
        )
        if not api_key:
            raise ConfigurationError("openai embeddings require an API key (set OPENAI_API_KEY)")
        self.api_key = api_key

    def _headers(self) -> dict[str, str]:
        return {**super()._headers(), "Authorization": f"Bearer {self.api_key}"}

    async def embed(self, text: str) -> np.ndarray:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        data = await self._post("/v1/embeddings", {"model": self.model, "input": texts})
        try:
            items = sorted(data["data"], key=lambda d: d.get("index", 0))
            return [self._to_vector(d["embedding"]) for d in items]
        except (KeyError, TypeError) as e:
            raise ProviderError(self.name, f"malformed response: {e}") from e
