"""Record types of the memory graph.

Every record is a plain dataclass. The store hands out fresh copies on each
read, so mutating a returned record never changes persisted state until it is
written back with one of the store's ``put_*`` methods.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Literal

EntityType = Literal[
    "person", "project", "tool", "concept", "decision", "event", "lesson", "place", "tag"
]
EdgeType = Literal["explicit", "co-occurrence", "temporal", "causal"]
EpisodeType = Literal["observation", "decision", "event", "conversation"]
EpisodeRole = Literal["participant", "topic", "outcome", "mentioned"]
ProcedureType = Literal["preference", "skill", "antipattern", "insight", "heuristic"]
Feedback = Literal["positive", "negative", "neutral"]

ENTITY_TYPES = frozenset(
    {"person", "project", "tool", "concept", "decision", "event", "lesson", "place", "tag"}
)
EDGE_TYPES = frozenset({"explicit", "co-occurrence", "temporal", "causal"})
EPISODE_TYPES = frozenset({"observation", "decision", "event", "conversation"})
EPISODE_ROLES = frozenset({"participant", "topic", "outcome", "mentioned"})
PROCEDURE_TYPES = frozenset({"preference", "skill", "antipattern", "insight", "heuristic"})

MAX_EXCERPTS = 10
MAX_EVIDENCE = 20


@dataclass
class Excerpt:
    file: str
    text: str
    date: str


@dataclass
class Evidence:
    file: str
    date: str
    context: str


@dataclass
class Node:
    """A resolved entity. Adjacency is derived from edges, never stored here."""

    id: str
    label: str
    type: EntityType
    first_seen: str
    last_reinforced: str
    aliases: list[str] = field(default_factory=list)
    mention_count: int = 1
    reinforcement_count: int = 0
    source_files: list[str] = field(default_factory=list)
    excerpts: list[Excerpt] = field(default_factory=list)

    def add_excerpt(self, excerpt: Excerpt) -> None:
        """Append evidence, dropping the oldest once the cap is reached."""
        self.excerpts.append(excerpt)
        del self.excerpts[:-MAX_EXCERPTS]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Node:
        return cls(
            id=data["id"],
            label=data["label"],
            type=data["type"],
            first_seen=data["first_seen"],
            last_reinforced=data["last_reinforced"],
            aliases=list(data.get("aliases", [])),
            mention_count=data.get("mention_count", 1),
            reinforcement_count=data.get("reinforcement_count", 0),
            source_files=list(data.get("source_files", [])),
            excerpts=[Excerpt(**e) for e in data.get("excerpts", [])],
        )


@dataclass
class Edge:
    """A typed, weighted relation. ``weight`` is a cache of the decayed value."""

    id: str
    source: str
    target: str
    type: EdgeType
    base_weight: float
    weight: float
    first_formed: str
    last_reinforced: str
    directed: bool = False
    reinforcement_count: int = 0
    stability: float = 1.0
    evidence: list[Evidence] = field(default_factory=list)

    def other(self, node_id: str) -> str:
        return self.target if self.source == node_id else self.source

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Edge:
        return cls(
            id=data["id"],
            source=data["source"],
            target=data["target"],
            type=data["type"],
            base_weight=data["base_weight"],
            weight=data["weight"],
            first_formed=data["first_formed"],
            last_reinforced=data["last_reinforced"],
            directed=bool(data.get("directed", False)),
            reinforcement_count=data.get("reinforcement_count", 0),
            stability=data.get("stability", 1.0),
            evidence=[Evidence(**e) for e in data.get("evidence", [])],
        )


@dataclass
class PendingEdge:
    """A co-occurrence seen fewer times than the materialization threshold."""

    source: str
    target: str
    type: EdgeType
    count: int
    first_seen: str
    evidence: list[Evidence] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingEdge:
        return cls(
            source=data["source"],
            target=data["target"],
            type=data["type"],
            count=data["count"],
            first_seen=data["first_seen"],
            evidence=[Evidence(**e) for e in data.get("evidence", [])],
        )


@dataclass
class Episode:
    """An atomic unit of experience. Immutable apart from access bookkeeping."""

    id: str
    timestamp: str
    type: EpisodeType
    title: str
    content: str
    source: str
    source_type: str = "manual"
    sequence: int = 0
    importance: float = 0.5
    access_count: int = 0
    last_accessed: str | None = None
    end_timestamp: str | None = None
    summary: str | None = None
    parent_id: str | None = None
    participants: list[str] = field(default_factory=list)
    topics: list[str] = field(default_factory=list)
    outcomes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class EpisodeLink:
    episode_id: str
    node_id: str
    role: EpisodeRole


class ReviewState(str, Enum):
    """One-way latch: a procedure moves CLEAR -> FLAGGED and never back."""

    CLEAR = "clear"
    FLAGGED = "flagged"


@dataclass
class Procedure:
    """A learned heuristic whose confidence follows applied feedback."""

    id: str
    statement: str
    type: ProcedureType
    created_at: str
    updated_at: str
    trigger_keywords: list[str] = field(default_factory=list)
    trigger_contexts: list[str] = field(default_factory=list)
    source_episodes: list[str] = field(default_factory=list)
    source_nodes: list[str] = field(default_factory=list)
    confidence: float = 0.5
    stability: float = 1.0
    applications: int = 0
    contradictions: int = 0
    last_applied: str | None = None
    review: ReviewState = ReviewState.CLEAR

    @property
    def flagged_for_review(self) -> bool:
        return self.review is ReviewState.FLAGGED

    def flag_for_review(self) -> None:
        self.review = ReviewState.FLAGGED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["review"] = self.review.value
        data["flagged_for_review"] = self.flagged_for_review
        return data


@dataclass
class FileHash:
    path: str
    hash: str
    last_processed: str


@dataclass
class Snapshot:
    """Counts and metadata of a point-in-time capture (graph stored alongside)."""

    id: str
    trigger: str
    created_at: str
    node_count: int
    edge_count: int
    episode_count: int
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class GraphExport:
    """Whole-graph interchange format used for JSON export/import and snapshots."""

    version: int = 2
    last_consolidated: str = ""
    processed_files: list[FileHash] = field(default_factory=list)
    nodes: dict[str, Node] = field(default_factory=dict)
    edges: dict[str, Edge] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "last_consolidated": self.last_consolidated,
            "processed_files": [asdict(f) for f in self.processed_files],
            "nodes": {k: n.to_dict() for k, n in self.nodes.items()},
            "edges": {k: e.to_dict() for k, e in self.edges.items()},
            "config": self.config,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphExport:
        return cls(
            version=data.get("version", 2),
            last_consolidated=data.get("last_consolidated", ""),
            processed_files=[FileHash(**f) for f in data.get("processed_files", [])],
            nodes={k: Node.from_dict(n) for k, n in data.get("nodes", {}).items()},
            edges={k: Edge.from_dict(e) for k, e in data.get("edges", {}).items()},
            config=dict(data.get("config", {})),
        )
