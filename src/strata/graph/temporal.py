"""Structural diff between two snapshots."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from strata.graph.models import Edge, GraphExport, Node

if TYPE_CHECKING:
    from strata.graph.store import GraphStore


@dataclass
class NodeChange:
    before: Node
    after: Node
    changes: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {"before": self.before.to_dict(), "after": self.after.to_dict(), "changes": self.changes}


@dataclass
class GraphDiff:
    from_snapshot: str
    to_snapshot: str
    nodes_added: list[Node] = field(default_factory=list)
    nodes_removed: list[Node] = field(default_factory=list)
    nodes_changed: list[NodeChange] = field(default_factory=list)
    edges_added: list[Edge] = field(default_factory=list)
    edges_removed: list[Edge] = field(default_factory=list)
    edges_strengthened: list[Edge] = field(default_factory=list)
    edges_weakened: list[Edge] = field(default_factory=list)

    @property
    def net_change(self) -> int:
        return (len(self.nodes_added) - len(self.nodes_removed)) + (
            len(self.edges_added) - len(self.edges_removed)
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            "nodes_added": len(self.nodes_added),
            "nodes_removed": len(self.nodes_removed),
            "nodes_changed": len(self.nodes_changed),
            "edges_added": len(self.edges_added),
            "edges_removed": len(self.edges_removed),
            "edges_strengthened": len(self.edges_strengthened),
            "edges_weakened": len(self.edges_weakened),
            "net_change": self.net_change,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "from_snapshot": self.from_snapshot,
            "to_snapshot": self.to_snapshot,
            "nodes": {
                "added": [n.to_dict() for n in self.nodes_added],
                "removed": [n.to_dict() for n in self.nodes_removed],
                "changed": [c.to_dict() for c in self.nodes_changed],
            },
            "edges": {
                "added": [e.to_dict() for e in self.edges_added],
                "removed": [e.to_dict() for e in self.edges_removed],
                "strengthened": [e.to_dict() for e in self.edges_strengthened],
                "weakened": [e.to_dict() for e in self.edges_weakened],
            },
            "stats": self.stats,
        }


def node_changes(before: Node, after: Node) -> list[str]:
    """Names of the fields that differ between two versions of a node."""
    changes = []
    for name in ("label", "type", "mention_count", "reinforcement_count", "last_reinforced", "aliases"):
        if getattr(before, name) != getattr(after, name):
            changes.append(name)
    if len(before.source_files) != len(after.source_files):
        changes.append("source_files")
    if len(before.excerpts) != len(after.excerpts):
        changes.append("excerpts")
    return changes


def diff_graphs(before: GraphExport, after: GraphExport, from_id: str = "", to_id: str = "") -> GraphDiff:
    diff = GraphDiff(from_id, to_id)

    for id, node in after.nodes.items():
        old = before.nodes.get(id)
        if old is None:
            diff.nodes_added.append(node)
        elif changes := node_changes(old, node):
            diff.nodes_changed.append(NodeChange(old, node, changes))
    diff.nodes_removed = [n for id, n in before.nodes.items() if id not in after.nodes]

    for id, edge in after.edges.items():
        old = before.edges.get(id)
        if old is None:
            diff.edges_added.append(edge)
        elif edge.weight > old.weight:
            diff.edges_strengthened.append(edge)
        elif edge.weight < old.weight:
            diff.edges_weakened.append(edge)
    diff.edges_removed = [e for id, e in before.edges.items() if id not in after.edges]
    return diff


def diff_snapshots(store: GraphStore, from_id: str, to_id: str) -> GraphDiff:
    """Diff two stored snapshots. Raises NotFound if either id is unknown."""
    return diff_graphs(store.get_snapshot_graph(from_id), store.get_snapshot_graph(to_id), from_id, to_id)
