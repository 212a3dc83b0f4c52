"""Embedding providers, selected by configuration.

    base.py   — EmbeddingProvider protocol, cosine similarity
    mock.py   — deterministic hash-seeded vectors
    http.py   — Ollama and OpenAI-compatible endpoints (aiohttp)
    jobs.py   — bounded-concurrency batch embedding of nodes
"""

from __future__ import annotations

import logging

from strata.config import EmbeddingConfig
from strata.embeddings.base import EmbeddingProvider, cosine_similarity
from strata.embeddings.http import OllamaEmbedder, OpenAIEmbedder
from strata.embeddings.jobs import EmbedReport, embed_nodes, node_text
from strata.embeddings.mock import MockEmbedder
from strata.errors import ConfigurationError

logger = logging.getLogger(__name__)

PROVIDERS = ("ollama", "openai", "mock")

__all__ = [
    "EmbedReport",
    "EmbeddingProvider",
    "MockEmbedder",
    "OllamaEmbedder",
    "OpenAIEmbedder",
    "cosine_similarity",
    "embed_nodes",
    "node_text",
    "resolve_provider",
]


def resolve_provider(
    config: EmbeddingConfig,
    name: str | None = None,
    allow_none: bool = False,
) -> EmbeddingProvider | None:
    """Build the provider named explicitly, else the one in config."""
    name = name or config.provider
    if not name:
        if allow_none:
            return None
        raise ConfigurationError(
            "No embedding provider configured. Set [embeddings] provider in strata.toml "
            f"or STRATA_EMBEDDING_PROVIDER. Available: {', '.join(PROVIDERS)}"
        )

    if name == "ollama":
        provider = OllamaEmbedder(base_url=config.base_url, model=config.model, timeout=config.timeout)
    elif name == "openai":
        provider = OpenAIEmbedder(
            api_key=config.api_key, base_url=config.base_url, model=config.model, timeout=config.timeout
        )
    elif name == "mock":
        provider = MockEmbedder()
    else:
        raise ConfigurationError(
            f'Unknown embedding provider: "{name}". Available: {", ".join(PROVIDERS)}'
        )
    logger.info("Embedding provider: %s (%d dims)", provider.name, provider.dimensions)
    return provider
