"""Configuration loading from environment variables and strata.toml."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib
from pathlib import Path

_DEFAULT_HOME = Path.home() / ".strata"
_CONFIG_FILENAME = "strata.toml"


@dataclass
class BaseWeights:
    """Initial weight of a freshly formed edge, per edge type."""

    explicit: float = 1.0
    co_occurrence: float = 0.3
    temporal: float = 0.1
    causal: float = 0.8

    def for_type(self, edge_type: str) -> float:
        return {
            "explicit": self.explicit,
            "co-occurrence": self.co_occurrence,
            "temporal": self.temporal,
            "causal": self.causal,
        }[edge_type]


@dataclass
class GraphConfig:
    """Decay and edge-formation parameters."""

    decay_rate: float = 0.015
    reinforcement_boost: float = 1.5
    visibility_threshold: float = 0.05
    co_occurrence_threshold: int = 2
    base_weights: BaseWeights = field(default_factory=BaseWeights)


@dataclass
class RecallWeights:
    """Weights of the four recall subscores."""

    semantic: float = 0.5
    graph: float = 0.25
    recency: float = 0.15
    importance: float = 0.1


@dataclass
class RecallConfig:
    """Recall defaults."""

    weights: RecallWeights = field(default_factory=RecallWeights)
    limit: int = 10
    hops: int = 2
    procedure_limit: int = 3


@dataclass
class EmbeddingConfig:
    """Embedding provider selection."""

    provider: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    timeout: float = 30.0
    concurrency: int = 4


@dataclass
class StrataConfig:
    """Top-level strata configuration."""

    graph: GraphConfig = field(default_factory=GraphConfig)
    recall: RecallConfig = field(default_factory=RecallConfig)
    embeddings: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    db_path: Path = _DEFAULT_HOME / "graph.db"
    entity_map: Path | None = None
    ignore: list[str] = field(default_factory=list)
    log_level: str = "INFO"


def _float(env: str, value) -> float:
    return float(os.getenv(env, value))


def load_config(config_path: Path | None = None) -> StrataConfig:
    """Load configuration from environment variables and optional strata.toml.

    Priority: environment variables > strata.toml > defaults.
    """
    file_data: dict = {}
    if config_path and config_path.exists():
        file_data = tomllib.loads(config_path.read_text())
    else:
        # Search current dir and ~/.strata/
        for candidate in [Path.cwd() / _CONFIG_FILENAME, _DEFAULT_HOME / _CONFIG_FILENAME]:
            if candidate.exists():
                file_data = tomllib.loads(candidate.read_text())
                break

    graph_data = file_data.get("graph", {})
    weights_data = graph_data.get("base_weights", {})
    recall_data = file_data.get("recall", {})
    recall_weights = recall_data.get("weights", {})
    embed_data = file_data.get("embeddings", {})

    entity_map = os.getenv("STRATA_ENTITY_MAP", file_data.get("entity_map"))

    config = StrataConfig(
        graph=GraphConfig(
            decay_rate=_float("STRATA_DECAY_RATE", graph_data.get("decay_rate", 0.015)),
            reinforcement_boost=graph_data.get("reinforcement_boost", 1.5),
            visibility_threshold=graph_data.get("visibility_threshold", 0.05),
            co_occurrence_threshold=int(graph_data.get("co_occurrence_threshold", 2)),
            base_weights=BaseWeights(
                explicit=weights_data.get("explicit", 1.0),
                co_occurrence=weights_data.get("co_occurrence", 0.3),
                temporal=weights_data.get("temporal", 0.1),
                causal=weights_data.get("causal", 0.8),
            ),
        ),
        recall=RecallConfig(
            weights=RecallWeights(
                semantic=recall_weights.get("semantic", 0.5),
                graph=recall_weights.get("graph", 0.25),
                recency=recall_weights.get("recency", 0.15),
                importance=recall_weights.get("importance", 0.1),
            ),
            limit=int(recall_data.get("limit", 10)),
            hops=int(recall_data.get("hops", 2)),
            procedure_limit=int(recall_data.get("procedure_limit", 3)),
        ),
        embeddings=EmbeddingConfig(
            provider=embed_data.get("provider") or os.getenv("STRATA_EMBEDDING_PROVIDER"),
            model=os.getenv("STRATA_EMBEDDING_MODEL", embed_data.get("model")),
            base_url=os.getenv("STRATA_OLLAMA_URL", embed_data.get("base_url")),
            api_key=os.getenv("OPENAI_API_KEY", embed_data.get("api_key")),
            timeout=_float("STRATA_EMBEDDING_TIMEOUT", embed_data.get("timeout", 30.0)),
            concurrency=int(embed_data.get("concurrency", 4)),
        ),
        db_path=Path(os.getenv("STRATA_DB", str(file_data.get("db_path", _DEFAULT_HOME / "graph.db")))),
        entity_map=Path(entity_map) if entity_map else None,
        ignore=list(file_data.get("ignore", [])),
        log_level=os.getenv("STRATA_LOG_LEVEL", file_data.get("log_level", "INFO")),
    )
    return config
