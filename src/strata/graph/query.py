"""Read-only queries over the decayed graph.

All of these work on a :class:`GraphView`, a snapshot of the store with every
edge's effective weight computed once at ``now``. Edges below the visibility
threshold are dormant and count as absent for traversal.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from strata.config import GraphConfig
from strata.errors import NotFound, ProviderError, ValidationError
from strata.graph.decay import current_weight, days_between, stability
from strata.graph.models import Edge, Node, Procedure
from strata.graph.mutate import adjacency

if TYPE_CHECKING:
    from strata.embeddings import EmbeddingProvider
    from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)

URGENT_DAYS = 7


@dataclass
class GraphView:
    nodes: dict[str, Node]
    edges: dict[str, Edge]
    weights: dict[str, float]
    config: GraphConfig

    @classmethod
    def load(cls, store: GraphStore, now: datetime | None = None) -> GraphView:
        now = now or datetime.now(timezone.utc)
        nodes = {n.id: n for n in store.list_nodes()}
        edges = {e.id: e for e in store.list_edges()}
        weights = {id: current_weight(e, now, store.config) for id, e in edges.items()}
        return cls(nodes, edges, weights, store.config)

    def is_active(self, edge: Edge) -> bool:
        return self.weights[edge.id] >= self.config.visibility_threshold

    def active_adjacency(self) -> dict[str, list[Edge]]:
        return adjacency(e for e in self.edges.values() if self.is_active(e))

    def lookup(self, search: str) -> Node:
        return lookup(self.nodes, search)


def lookup(nodes: dict[str, Node], search: str) -> Node:
    """Node by id, label or alias (case-insensitive)."""
    if search in nodes:
        return nodes[search]
    needle = search.lower().strip()
    for node in nodes.values():
        if node.label.lower() == needle or any(a.lower() == needle for a in node.aliases):
            return node
    raise NotFound("node", search)


def neighbor_ids(adj: dict[str, list[Edge]], node_id: str) -> set[str]:
    return {e.other(node_id) for e in adj.get(node_id, [])}


# ── Neighbourhoods ────────────────────────────────────────────


@dataclass
class Neighborhood:
    center: Node
    nodes: list[Node] = field(default_factory=list)
    edges: list[Edge] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "center": self.center.to_dict(),
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass
class Related:
    node: Node
    relationship: str
    weight: float

    def to_dict(self) -> dict[str, Any]:
        return {"node": self.node.to_dict(), "relationship": self.relationship, "weight": self.weight}


def neighbors(view: GraphView, search: str, hops: int = 1) -> Neighborhood:
    """Nodes within ``hops`` active edges of ``search``, in discovery order.

    Returned edges carry their effective weight.
    """
    if hops < 1:
        raise ValidationError(f"hops must be >= 1, got {hops}")
    center = view.lookup(search)
    adj = view.active_adjacency()
    visited = {center.id}
    found: list[str] = []
    seen_edges: dict[str, Edge] = {}
    frontier = [center.id]

    for _ in range(hops):
        next_frontier = []
        for node_id in frontier:
            for edge in adj.get(node_id, []):
                seen_edges.setdefault(edge.id, edge)
                neighbour = edge.other(node_id)
                if neighbour in view.nodes and neighbour not in visited:
                    visited.add(neighbour)
                    found.append(neighbour)
                    next_frontier.append(neighbour)
        frontier = next_frontier

    edges = []
    for edge in seen_edges.values():
        edge.weight = view.weights[edge.id]
        edges.append(edge)
    return Neighborhood(center, [view.nodes[i] for i in found], edges)


def related(view: GraphView, search: str) -> list[Related]:
    """Direct neighbours, strongest effective connection first."""
    center = view.lookup(search)
    best: dict[str, Related] = {}
    for edge in view.active_adjacency().get(center.id, []):
        other = view.nodes.get(edge.other(center.id))
        if other is None:
            continue
        weight = view.weights[edge.id]
        if other.id not in best or weight > best[other.id].weight:
            best[other.id] = Related(other, edge.type, weight)
    return sorted(best.values(), key=lambda r: r.weight, reverse=True)


# ── Clusters ──────────────────────────────────────────────────


@dataclass
class Cluster:
    hub: str
    hub_type: str
    label: str
    members: list[Node]
    dominant_type: str
    type_counts: dict[str, int]

    @property
    def size(self) -> int:
        return len(self.members)

    def to_dict(self) -> dict[str, Any]:
        return {
            "hub": self.hub,
            "hub_type": self.hub_type,
            "label": self.label,
            "members": [{"id": n.id, "label": n.label, "type": n.type} for n in self.members],
            "size": self.size,
            "dominant_type": self.dominant_type,
            "type_counts": dict(self.type_counts),
        }


def _label_cluster(hub: Node, members: list[Node]) -> Cluster:
    counts = Counter(n.type for n in members)
    ranked = counts.most_common()
    if len(members) <= 3:
        label = ", ".join(n.label for n in members)
    else:
        parts = [f"{count} {type}{'s' if count > 1 else ''}" for type, count in ranked[:2]]
        label = f"{hub.label} ({', '.join(parts)})"
    return Cluster(hub.label, hub.type, label, members, ranked[0][0], dict(counts))


def clusters(view: GraphView) -> list[Cluster]:
    """Connected components over active edges, largest first.

    Each is named after its most-mentioned member; isolated nodes are
    singleton clusters.
    """
    adj = view.active_adjacency()
    order = {id: i for i, id in enumerate(view.nodes)}
    visited: set[str] = set()
    found = []
    for start in view.nodes:
        if start in visited:
            continue
        component = []
        queue = deque([start])
        visited.add(start)
        while queue:
            current = queue.popleft()
            component.append(view.nodes[current])
            for neighbour in sorted(neighbor_ids(adj, current), key=lambda i: order.get(i, len(order))):
                if neighbour in view.nodes and neighbour not in visited:
                    visited.add(neighbour)
                    queue.append(neighbour)
        hub = component[0]
        for node in component:
            if node.mention_count > hub.mention_count:
                hub = node
        found.append(_label_cluster(hub, component))
    found.sort(key=lambda c: c.size, reverse=True)
    return found


# ── Fading and stats ──────────────────────────────────────────


@dataclass
class FadingEdge:
    edge: Edge
    source_label: str
    target_label: str
    weight: float
    days_since_reinforced: int
    days_until_dormant: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "edge": self.edge.to_dict(),
            "source_label": self.source_label,
            "target_label": self.target_label,
            "weight": self.weight,
            "days_since_reinforced": self.days_since_reinforced,
            "days_until_dormant": self.days_until_dormant,
        }


def days_until_dormant(edge: Edge, now: datetime, config: GraphConfig) -> int:
    """Whole days until ``edge`` decays below the visibility threshold."""
    threshold = config.visibility_threshold
    if edge.base_weight <= 0 or threshold <= 0 or config.decay_rate <= 0:
        return 0
    s = stability(edge.reinforcement_count, config.reinforcement_boost)
    total = (s / config.decay_rate) * math.log(edge.base_weight / threshold)
    return max(0, round(total - days_between(edge.last_reinforced, now)))


def fading(view: GraphView, now: datetime) -> list[FadingEdge]:
    """Visible edges within twice the threshold, soonest-dormant first."""
    threshold = view.config.visibility_threshold
    result = []
    for edge in view.edges.values():
        weight = view.weights[edge.id]
        if not threshold <= weight <= threshold * 2:
            continue
        source = view.nodes.get(edge.source)
        target = view.nodes.get(edge.target)
        result.append(
            FadingEdge(
                edge=edge,
                source_label=source.label if source else edge.source,
                target_label=target.label if target else edge.target,
                weight=weight,
                days_since_reinforced=days_between(edge.last_reinforced, now),
                days_until_dormant=days_until_dormant(edge, now, view.config),
            )
        )
    result.sort(key=lambda f: f.days_until_dormant)
    return result


@dataclass
class GraphStats:
    total_nodes: int
    total_edges: int
    entity_types: dict[str, int]
    edge_types: dict[str, int]
    average_weight: float
    dormant_edges: int

    def to_dict(self) -> dict[str, Any]:
        return vars(self).copy()


def graph_stats(view: GraphView) -> GraphStats:
    weights = list(view.weights.values())
    return GraphStats(
        total_nodes=len(view.nodes),
        total_edges=len(view.edges),
        entity_types=dict(Counter(n.type for n in view.nodes.values())),
        edge_types=dict(Counter(e.type for e in view.edges.values())),
        average_weight=sum(weights) / len(weights) if weights else 0.0,
        dormant_edges=sum(1 for w in weights if w < view.config.visibility_threshold),
    )


# ── Brief ─────────────────────────────────────────────────────


@dataclass
class ScoredNode:
    node: Node
    score: float
    edge_count: int
    days_since_reinforced: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node.to_dict(),
            "score": self.score,
            "edge_count": self.edge_count,
            "days_since_reinforced": self.days_since_reinforced,
        }


def _days_ago(days: int) -> str:
    if days == 0:
        return "today"
    if days == 1:
        return "yesterday"
    return f"{days} days ago"


@dataclass
class Brief:
    top_entities: list[ScoredNode]
    active_nodes: list[ScoredNode]
    fading: list[FadingEdge]
    clusters: list[Cluster]
    stats: GraphStats

    @property
    def summary(self) -> str:
        lines = []
        if self.active_nodes:
            described = ", ".join(
                f"{s.node.label} ({s.edge_count} connections, last seen {_days_ago(s.days_since_reinforced)})"
                for s in self.active_nodes[:8]
            )
            lines.append(f"Active: {described}.")
        if self.fading:
            described = ", ".join(
                f"{f.source_label} <-> {f.target_label} "
                f"({f.days_since_reinforced}d ago, ~{f.days_until_dormant}d until dormant)"
                for f in self.fading[:5]
            )
            lines.append(f"Fading: {described}.")
        if len(self.clusters) > 1:
            largest = self.clusters[0]
            lines.append(
                f"Clusters: {len(self.clusters)} (largest: {largest.hub} with {largest.size} nodes)."
            )
        s = self.stats
        lines.append(
            f"Graph: {s.total_nodes} nodes, {s.total_edges} edges, "
            f"avg weight {s.average_weight:.3f}, {s.dormant_edges} dormant."
        )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "top_entities": [s.to_dict() for s in self.top_entities],
            "active_nodes": [s.to_dict() for s in self.active_nodes],
            "fading": [f.to_dict() for f in self.fading],
            "clusters": [c.to_dict() for c in self.clusters],
            "stats": self.stats.to_dict(),
            "summary": self.summary,
        }


def score_nodes(view: GraphView, now: datetime, recent_days: int) -> list[ScoredNode]:
    """Activity score: mentions and reinforcements plus a recency bonus."""
    adj = view.active_adjacency()
    scored = []
    for node in view.nodes.values():
        days = days_between(node.last_reinforced, now)
        if days <= recent_days:
            bonus = 1.0 - (days / recent_days) * 0.5 if recent_days else 1.0
        else:
            bonus = max(0.0, 0.5 - (days - recent_days) / 60)
        score = node.mention_count * 0.3 + node.reinforcement_count * 0.3 + bonus * 10 * 0.4
        scored.append(ScoredNode(node, score, len(adj.get(node.id, [])), days))
    return scored


def brief(
    store: GraphStore, top: int = 20, recent_days: int = 7, now: datetime | None = None
) -> Brief:
    """What the graph currently holds: busiest entities, recent activity, fading links."""
    now = now or datetime.now(timezone.utc)
    view = GraphView.load(store, now)
    scored = sorted(score_nodes(view, now, recent_days), key=lambda s: s.score, reverse=True)
    return Brief(
        top_entities=scored[:top],
        active_nodes=[s for s in scored if s.days_since_reinforced <= recent_days],
        fading=fading(view, now),
        clusters=clusters(view),
        stats=graph_stats(view),
    )


# ── Alerts ────────────────────────────────────────────────────


@dataclass
class Alerts:
    fading: list[FadingEdge]
    orphans: list[Node]
    flagged_procedures: list[Procedure]
    health_score: float

    @property
    def summary(self) -> str:
        lines = []
        if self.fading:
            n = len(self.fading)
            lines.append(f"{n} connection{'' if n == 1 else 's'} fading.")
            urgent = [f for f in self.fading if f.days_until_dormant <= URGENT_DAYS]
            if urgent:
                pairs = ", ".join(f"{f.source_label} <-> {f.target_label}" for f in urgent)
                lines.append(f"Urgent (< {URGENT_DAYS} days): {pairs}.")
        if self.orphans:
            n = len(self.orphans)
            lines.append(f"{n} orphan node{'' if n == 1 else 's'} (no active connections).")
        if self.flagged_procedures:
            n = len(self.flagged_procedures)
            lines.append(f"{n} procedure{'' if n == 1 else 's'} flagged for review.")
        if not lines:
            lines.append("No alerts. Graph is healthy.")
        lines.append(f"Health: {self.health_score * 100:.0f}%")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fading": [f.to_dict() for f in self.fading],
            "orphans": [n.to_dict() for n in self.orphans],
            "flagged_procedures": [p.to_dict() for p in self.flagged_procedures],
            "health_score": self.health_score,
            "summary": self.summary,
        }


def alerts(store: GraphStore, now: datetime | None = None) -> Alerts:
    now = now or datetime.now(timezone.utc)
    view = GraphView.load(store, now)
    fading_edges = fading(view, now)

    connected: set[str] = set()
    active = 0
    for edge in view.edges.values():
        if view.is_active(edge):
            active += 1
            connected.update((edge.source, edge.target))
    orphans = [n for n in view.nodes.values() if n.id not in connected]

    edge_health = active / len(view.edges) if view.edges else 1.0
    node_health = len(connected & view.nodes.keys()) / len(view.nodes) if view.nodes else 1.0
    penalty = min(len(fading_edges) * 0.02, 0.3)
    health = max(0.0, min(1.0, edge_health * 0.5 + node_health * 0.5 - penalty))

    result = Alerts(fading_edges, orphans, store.list_procedures(flagged_only=True), health)
    logger.debug(
        "Alerts: %d fading, %d orphans, health %.2f", len(fading_edges), len(orphans), health
    )
    return result


# ── Similarity ────────────────────────────────────────────────


@dataclass
class SimilarItem:
    id: str
    kind: str
    content: str
    similarity: float

    def to_dict(self) -> dict[str, Any]:
        return vars(self).copy()


def _items(store: GraphStore, hits: list[tuple[str, float]]) -> list[SimilarItem]:
    items = []
    for id, similarity in hits:
        record = store.get_embedding(id)
        if record is not None:
            items.append(SimilarItem(id, record["kind"], record["content"], similarity))
    return items


def similar_nodes(
    store: GraphStore, search: str, limit: int = 10, min_similarity: float = 0.0
) -> list[SimilarItem]:
    """Nodes whose stored embedding is closest to that of ``search``."""
    node = lookup({n.id: n for n in store.list_nodes()}, search)
    record = store.get_embedding(node.id)
    if record is None:
        raise NotFound("embedding", node.id)
    hits = store.search_similar(record["vector"], kind="node", limit=limit + 1, min_similarity=min_similarity)
    return _items(store, [(id, s) for id, s in hits if id != node.id][:limit])


async def similar_text(
    store: GraphStore,
    provider: EmbeddingProvider,
    text: str,
    limit: int = 10,
    min_similarity: float = 0.0,
    kind: str | None = None,
    timeout: float | None = None,
) -> list[SimilarItem]:
    """Embedded records closest to free text."""
    try:
        vector = await asyncio.wait_for(provider.embed(text), timeout)
    except asyncio.TimeoutError:
        raise ProviderError(provider.name, f"query embedding timed out after {timeout}s") from None
    return _items(store, store.search_similar(vector, kind=kind, limit=limit, min_similarity=min_similarity))
