"""Deterministic embedder for tests and offline runs."""

from __future__ import annotations

import hashlib

import numpy as np


class MockEmbedder:
    """Unit vectors seeded from a hash of the input text. Same text, same vector."""

    def __init__(self, dimensions: int = 64) -> None:
        self._dimensions = dimensions

    @property
    def name(self) -> str:
        return "mock"

    @property
    def dimensions(self) -> int:
        return self._dimensions

    async def embed(self, text: str) -> np.ndarray:
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[np.ndarray]:
        return [self._vector(t) for t in texts]

    def _vector(self, text: str) -> np.ndarray:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        vec = np.random.default_rng(seed).uniform(-0.5, 0.5, self._dimensions).astype(np.float32)
        norm = np.linalg.norm(vec)
        return vec / norm if norm > 0 else vec
