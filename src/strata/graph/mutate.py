"""Graph mutation helpers: stable ids, node/edge creation and reinforcement."""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import TYPE_CHECKING

from strata.errors import NotFound
from strata.graph.decay import stability
from strata.graph.models import MAX_EVIDENCE, Edge, Evidence, Excerpt, Node

if TYPE_CHECKING:
    from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)


def node_id(label: str) -> str:
    return hashlib.sha256(label.lower().strip().encode("utf-8")).hexdigest()[:12]


def edge_id(source: str, target: str, type: str) -> str:
    """Identity of a relation, independent of direction."""
    a, b = sorted((source, target))
    return f"{a}--{b}--{type}"


def create_node(
    store: GraphStore,
    label: str,
    type: str,
    date: str,
    file: str | None = None,
    excerpt: Excerpt | None = None,
    id: str | None = None,
) -> Node:
    """Persist a freshly observed entity. The first sighting counts as a reinforcement."""
    node = Node(
        id=id or node_id(label),
        label=label,
        type=type,
        first_seen=date,
        last_reinforced=date,
        mention_count=1,
        reinforcement_count=1,
        source_files=[file] if file else [],
    )
    if excerpt:
        node.add_excerpt(excerpt)
    store.put_node(node)
    logger.debug("New node %s (%s)", node.label, node.id)
    return node


def reinforce_node(
    store: GraphStore,
    id: str,
    file: str,
    date: str,
    excerpt: Excerpt | None = None,
) -> Node:
    with store.transaction():
        node = store.get_node(id)
        if node is None:
            raise NotFound("node", id)
        node.mention_count += 1
        node.reinforcement_count += 1
        node.last_reinforced = max(node.last_reinforced, date)
        if file not in node.source_files:
            node.source_files.append(file)
        if excerpt:
            node.add_excerpt(excerpt)
        store.put_node(node)
    return node


def create_edge(
    store: GraphStore,
    source: str,
    target: str,
    type: str,
    date: str,
    evidence: Iterable[Evidence] = (),
    directed: bool = False,
) -> Edge:
    base = store.config.base_weights.for_type(type)
    edge = Edge(
        id=edge_id(source, target, type),
        source=source,
        target=target,
        type=type,
        base_weight=base,
        weight=base,
        first_formed=date,
        last_reinforced=date,
        directed=directed,
        evidence=list(evidence)[-MAX_EVIDENCE:],
    )
    store.put_edge(edge)
    logger.debug("New %s edge %s", type, edge.id)
    return edge


def reinforce_edge(store: GraphStore, id: str, evidence: Evidence) -> Edge:
    """Bump reinforcement, reset the decay clock and refresh the cached weight."""
    with store.transaction():
        edge = store.get_edge(id)
        if edge is None:
            raise NotFound("edge", id)
        edge.reinforcement_count += 1
        edge.last_reinforced = max(edge.last_reinforced, evidence.date)
        edge.stability = stability(edge.reinforcement_count, store.config.reinforcement_boost)
        edge.weight = edge.base_weight
        edge.evidence.append(evidence)
        del edge.evidence[:-MAX_EVIDENCE]
        store.put_edge(edge)
    return edge


def adjacency(edges: Iterable[Edge]) -> dict[str, list[Edge]]:
    """Node id -> incident edges, in both directions."""
    adj: dict[str, list[Edge]] = defaultdict(list)
    for edge in edges:
        adj[edge.source].append(edge)
        adj[edge.target].append(edge)
    return adj
