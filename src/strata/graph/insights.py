"""Connection suggestions and significance analysis over the live graph."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import combinations
from typing import TYPE_CHECKING, Any

from strata.graph.decay import days_between
from strata.graph.mutate import adjacency
from strata.graph.query import Cluster, GraphView, ScoredNode, clusters, neighbor_ids

if TYPE_CHECKING:
    from strata.graph.store import GraphStore

HUB_DEGREE = 3
MAX_HUBS = 30
BRIDGE_WEIGHT = 0.3
BRIDGE_TYPES = ("person", "project")


def _pair(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a < b else (b, a)


# ── Suggestions ───────────────────────────────────────────────


@dataclass
class Suggestion:
    source_id: str
    source_label: str
    target_id: str
    target_label: str
    reason: str
    confidence: float
    explanation: str

    def to_dict(self) -> dict[str, Any]:
        return vars(self).copy()


@dataclass
class SuggestionReport:
    suggestions: list[Suggestion] = field(default_factory=list)

    @property
    def summary(self) -> str:
        if not self.suggestions:
            return "No connection suggestions at this time."
        n = len(self.suggestions)
        lines = [f"{n} suggestion{'' if n == 1 else 's'}:"]
        for s in self.suggestions:
            lines.append(
                f"  {s.source_label} <-> {s.target_label} ({round(s.confidence * 100)}%): {s.explanation}"
            )
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        return {"suggestions": [s.to_dict() for s in self.suggestions], "summary": self.summary}


def suggest(store: GraphStore, limit: int = 10, now: datetime | None = None) -> SuggestionReport:
    """Candidate links, most confident first. ``Suggestion.reason`` names the heuristic."""
    now = now or datetime.now(timezone.utc)
    view = GraphView.load(store, now)
    adj = view.active_adjacency()
    pending = store.list_pending_edges()
    threshold = view.config.co_occurrence_threshold
    suggestions: list[Suggestion] = []

    for pe in sorted(pending, key=lambda p: p.count, reverse=True):
        if pe.count < max(1, threshold - 1):
            continue
        source, target = view.nodes.get(pe.source), view.nodes.get(pe.target)
        if source is None or target is None:
            continue
        progress = pe.count / threshold
        suggestions.append(
            Suggestion(
                source.id, source.label, target.id, target.label,
                reason="pending-near-threshold",
                confidence=min(progress, 0.95),
                explanation=f"Co-occurred {pe.count}/{threshold} times ({round(progress * 100)}% to auto-link)",
            )
        )

    linked = {_pair(e.source, e.target) for e in view.edges.values()}
    linked.update(_pair(p.source, p.target) for p in pending)
    degree = {id: len(neighbor_ids(adj, id)) for id in view.nodes}
    hubs = sorted((id for id in view.nodes if degree[id] >= HUB_DEGREE), key=lambda i: degree[i], reverse=True)
    for a, b in combinations(hubs[:MAX_HUBS], 2):
        if _pair(a, b) in linked:
            continue
        shared = len(neighbor_ids(adj, a) & neighbor_ids(adj, b))
        if shared < 2:
            continue
        confidence = min(shared / min(degree[a], degree[b]), 0.9) * 0.8
        suggestions.append(
            Suggestion(
                a, view.nodes[a].label, b, view.nodes[b].label,
                reason="structural-hole",
                confidence=confidence,
                explanation=f"{shared} shared neighbors but no direct connection",
            )
        )

    for edge in view.edges.values():
        source, target = view.nodes.get(edge.source), view.nodes.get(edge.target)
        weight = view.weights[edge.id]
        if source is None or target is None or edge.type != "co-occurrence":
            continue
        if source.type == target.type or weight < BRIDGE_WEIGHT:
            continue
        if source.type not in BRIDGE_TYPES and target.type not in BRIDGE_TYPES:
            continue
        if degree[source.id] < 2 or degree[target.id] < 2:
            continue
        suggestions.append(
            Suggestion(
                source.id, source.label, target.id, target.label,
                reason="type-bridge",
                confidence=min(weight, 0.85),
                explanation=(
                    f'{source.type} "{source.label}" and {target.type} "{target.label}" '
                    f"strongly co-occur (weight: {weight:.2f})"
                ),
            )
        )

    suggestions.sort(key=lambda s: s.confidence, reverse=True)
    return SuggestionReport(suggestions[:limit])


# ── Significance ──────────────────────────────────────────────


@dataclass
class Insights:
    emerging: list[ScoredNode]
    anchors: list[ScoredNode]
    fading_important: list[ScoredNode]
    clusters: list[Cluster]

    @property
    def summary(self) -> str:
        lines = []
        if self.emerging:
            lines.append(f"Emerging: {', '.join(s.node.label for s in self.emerging)}.")
        if self.anchors:
            described = ", ".join(f"{s.node.label} ({s.edge_count} connections)" for s in self.anchors[:5])
            lines.append(f"Anchors: {described}.")
        if self.fading_important:
            lines.append(f"Fading but important: {', '.join(s.node.label for s in self.fading_important)}.")
        if len(self.clusters) > 1:
            top = " | ".join(c.label for c in self.clusters[:3])
            lines.append(f"{len(self.clusters)} clusters: {top}.")
        return "\n".join(lines) or "No significant patterns detected."

    def to_dict(self) -> dict[str, Any]:
        return {
            "emerging": [s.to_dict() for s in self.emerging],
            "anchors": [s.to_dict() for s in self.anchors],
            "fading_important": [s.to_dict() for s in self.fading_important],
            "clusters": [c.to_dict() for c in self.clusters],
            "summary": self.summary,
        }


def analyze(store: GraphStore, recent_days: int = 7, now: datetime | None = None) -> Insights:
    """Rank nodes by growth and centrality.

    Edge counts include dormant edges, so a once-central node still counts
    while its connections fade.
    """
    now = now or datetime.now(timezone.utc)
    view = GraphView.load(store, now)
    adj = adjacency(view.edges.values())

    scored = []
    for node in view.nodes.values():
        days = days_between(node.last_reinforced, now)
        score = node.mention_count * 0.3 + node.reinforcement_count * 0.3 + (4 if days <= recent_days else 0)
        scored.append(ScoredNode(node, score, len(adj.get(node.id, [])), days))

    def age(s: ScoredNode) -> int:
        return days_between(s.node.first_seen, now) or 1

    def velocity(s: ScoredNode) -> float:
        return s.node.mention_count / age(s)

    emerging = sorted(
        (s for s in scored if age(s) <= recent_days * 2 and velocity(s) >= 0.5 and s.edge_count >= 2),
        key=velocity,
        reverse=True,
    )[:10]

    anchors = sorted(
        (s for s in scored if s.edge_count >= 5 and s.node.mention_count >= 3),
        key=lambda s: s.edge_count * 0.5 + s.node.mention_count * 0.3 + s.node.reinforcement_count * 0.2,
        reverse=True,
    )[:10]

    def mean_weight(s: ScoredNode) -> float:
        incident = adj.get(s.node.id, [])
        return sum(view.weights[e.id] for e in incident) / (len(incident) or 1)

    fading_important = sorted(
        (
            s
            for s in scored
            if s.edge_count >= 3
            and s.node.mention_count >= 2
            and s.days_since_reinforced > recent_days
            and mean_weight(s) < 0.4
        ),
        key=lambda s: s.edge_count,
        reverse=True,
    )[:10]

    return Insights(emerging, anchors, fading_important, clusters(view))
