"""Hybrid recall — semantic, graph, recency and importance signals in one ranking.

Each candidate node gets four subscores in [0, 1]:

    semantic    cosine similarity of the query embedding to the node (or to a
                linked episode, discounted)
    graph       proximity to nodes lexically matched by the query, via a
                bounded walk over edges weighted by their decayed strength
    recency     linear fall-off over a year since last reinforcement
    importance  log-saturating mentions + reinforcements

The composite score is their weighted sum. Without a provider the engine
degrades to structural scoring only.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from strata.config import RecallWeights, StrataConfig
from strata.embeddings import EmbeddingProvider
from strata.errors import ProviderError, ValidationError
from strata.graph.decay import current_weight, days_between, parse_timestamp
from strata.graph.models import Edge, Episode, Node
from strata.graph.mutate import adjacency
from strata.graph.procedures import ProcedureMatch, find_relevant
from strata.graph.resolve import extract_query_terms, levenshtein, normalize
from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)

EPISODE_DISCOUNT = 0.8
MAX_EXCERPTS = 5
MAX_CONNECTIONS = 5
MAX_EPISODES = 3
FUZZY_SEEDS = 5

_DATE_ONLY = re.compile(r"\d{4}-\d{2}-\d{2}")


@dataclass
class RecallOptions:
    limit: int | None = None
    hops: int | None = None
    types: list[str] | None = None
    since: str | None = None
    until: str | None = None
    min_score: float | None = None
    weights: RecallWeights | None = None
    include_procedures: bool = True
    procedure_limit: int | None = None


@dataclass
class DateWindow:
    """Inclusive ``last_reinforced`` bounds, compared as instants.

    A date-only ``until`` covers that whole day; a date-only ``since`` starts
    at its midnight UTC.
    """

    start: datetime | None = None
    end: datetime | None = None

    @classmethod
    def parse(cls, since: str | None, until: str | None) -> DateWindow:
        try:
            start = parse_timestamp(since) if since else None
            end = parse_timestamp(until) if until else None
        except ValueError as e:
            raise ValidationError(f"invalid recall window: {e}") from None
        if end is not None and _DATE_ONLY.fullmatch(until.strip()):
            end += timedelta(days=1) - timedelta(microseconds=1)
        return cls(start, end)

    def contains(self, timestamp: str) -> bool:
        if self.start is None and self.end is None:
            return True
        instant = parse_timestamp(timestamp)
        if self.start is not None and instant < self.start:
            return False
        return self.end is None or instant <= self.end


@dataclass
class Connection:
    label: str
    type: str
    relationship: str
    weight: float


@dataclass
class RecallResult:
    id: str
    label: str
    type: str
    score: float
    scores: dict[str, float]
    excerpts: list[str] = field(default_factory=list)
    connections: list[Connection] = field(default_factory=list)
    episodes: list[Episode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "type": self.type,
            "score": self.score,
            "scores": dict(self.scores),
            "excerpts": list(self.excerpts),
            "connections": [vars(c).copy() for c in self.connections],
            "episodes": [e.to_dict() for e in self.episodes],
        }


@dataclass
class RecallResponse:
    results: list[RecallResult] = field(default_factory=list)
    procedures: list[ProcedureMatch] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": [r.to_dict() for r in self.results],
            "procedures": [p.to_dict() for p in self.procedures],
        }


# ── Lexical seeding ───────────────────────────────────────────


def find_node(nodes: dict[str, Node], search: str) -> Node | None:
    """Exact lookup by id, normalized label or normalized alias."""
    if search in nodes:
        return nodes[search]
    norm = normalize(search)
    for node in nodes.values():
        if normalize(node.label) == norm or any(normalize(a) == norm for a in node.aliases):
            return node
    return None


def search_nodes(nodes: Iterable[Node], terms: list[str]) -> list[tuple[Node, float]]:
    """Approximate label/alias search: substring containment, then edit distance."""
    normalized = [normalize(t) for t in terms]
    if not normalized:
        return []
    results = []
    for node in nodes:
        names = [normalize(node.label)] + [normalize(a) for a in node.aliases]
        total = 0.0
        for term in normalized:
            best = 0.0
            for name in names:
                if name == term:
                    best = max(best, 1.0)
                elif term in name:
                    best = max(best, 0.8)
                elif name in term:
                    best = max(best, 0.6)
                else:
                    longest = max(len(term), len(name))
                    ratio = levenshtein(term, name) / longest if longest else 1.0
                    if ratio <= 0.3:
                        best = max(best, 0.4 * (1 - ratio))
            total += best
        score = total / len(normalized)
        if score > 0:
            results.append((node, score))
    results.sort(key=lambda r: r[1], reverse=True)
    return results


def graph_walk(
    nodes: dict[str, Node],
    edges: list[Edge],
    seeds: list[str],
    hops: int,
    now: datetime,
    config,
) -> dict[str, float]:
    """Breadth-first proximity scores. Seeds score 1.0; a hop-h neighbour scores
    ``weight * 1/(2+h)``, keeping the best score per node."""
    adj = adjacency(edges)
    frontier = [s for s in dict.fromkeys(seeds) if s in nodes]
    scores = {s: 1.0 for s in frontier}
    visited = set(frontier)

    for hop in range(hops):
        penalty = 1 / (2 + hop)
        next_frontier = []
        for node_id in frontier:
            for edge in adj.get(node_id, []):
                weight = current_weight(edge, now, config)
                if weight < config.visibility_threshold:
                    continue
                neighbour = edge.other(node_id)
                if neighbour not in nodes:
                    continue
                scores[neighbour] = max(scores.get(neighbour, 0.0), weight * penalty)
                if neighbour not in visited:
                    visited.add(neighbour)
                    next_frontier.append(neighbour)
        frontier = next_frontier
    return scores


# ── Engine ────────────────────────────────────────────────────


class RecallEngine:
    def __init__(
        self,
        store: GraphStore,
        config: StrataConfig | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self.store = store
        self.config = config or StrataConfig()
        self.provider = provider

    async def recall(
        self,
        query: str,
        options: RecallOptions | None = None,
        now: datetime | None = None,
    ) -> RecallResponse:
        opts = options or RecallOptions()
        now = now or datetime.now(timezone.utc)
        defaults = self.config.recall
        weights = opts.weights or defaults.weights
        limit = opts.limit or defaults.limit
        hops = defaults.hops if opts.hops is None else opts.hops
        graph_config = self.store.config
        window = DateWindow.parse(opts.since, opts.until)

        semantic, episode_hits = await self._semantic(query, limit)

        nodes = {n.id: n for n in self.store.list_nodes()}
        edges = self.store.list_edges()
        terms = extract_query_terms(query)

        seeds = [n.id for n in (find_node(nodes, t) for t in [query, *terms]) if n is not None]
        if not seeds and terms:
            seeds = [n.id for n, _ in search_nodes(nodes.values(), terms)[:FUZZY_SEEDS]]
        proximity = graph_walk(nodes, edges, seeds, hops, now, graph_config) if seeds else {}

        candidates = [i for i in dict.fromkeys([*semantic, *proximity]) if i in nodes]
        procedures = self._procedures(query, opts)
        if not candidates:
            return RecallResponse([], procedures)

        max_mentions = max(
            1, max(nodes[i].mention_count + nodes[i].reinforcement_count for i in candidates)
        )

        scored: list[tuple[float, Node, dict[str, float]]] = []
        for node_id in candidates:
            node = nodes[node_id]
            if opts.types and node.type not in opts.types:
                continue
            if not window.contains(node.last_reinforced):
                continue

            mentions = node.mention_count + node.reinforcement_count
            subscores = {
                "semantic": max(0.0, semantic.get(node_id, 0.0)),
                "graph": proximity.get(node_id, 0.0),
                "recency": max(0.0, 1 - days_between(node.last_reinforced, now) / 365),
                "importance": min(1.0, math.log1p(mentions) / math.log1p(max_mentions)),
            }
            score = (
                weights.semantic * subscores["semantic"]
                + weights.graph * subscores["graph"]
                + weights.recency * subscores["recency"]
                + weights.importance * subscores["importance"]
            )
            if opts.min_score is not None and score < opts.min_score:
                continue
            scored.append((score, node, subscores))

        scored.sort(key=lambda s: s[0], reverse=True)
        adj = adjacency(edges)
        results = [
            RecallResult(
                id=node.id,
                label=node.label,
                type=node.type,
                score=score,
                scores=subscores,
                excerpts=[e.text for e in node.excerpts][:MAX_EXCERPTS],
                connections=self._connections(node.id, adj.get(node.id, []), nodes, now),
                episodes=self._episodes(node.id, episode_hits.get(node.id, []), now),
            )
            for score, node, subscores in scored[:limit]
        ]
        logger.debug("Recall %r: %d candidates, %d results", query, len(candidates), len(results))
        return RecallResponse(results, procedures)

    async def _semantic(self, query: str, limit: int) -> tuple[dict[str, float], dict[str, list[Episode]]]:
        semantic: dict[str, float] = {}
        episode_hits: dict[str, list[Episode]] = {}
        if self.provider is None or self.store.embedding_count() == 0:
            return semantic, episode_hits

        timeout = self.config.embeddings.timeout
        try:
            vector = await asyncio.wait_for(self.provider.embed(query), timeout)
        except asyncio.TimeoutError:
            raise ProviderError(self.provider.name, f"query embedding timed out after {timeout}s") from None

        stored = self.store.get_meta("embedding_dimensions")
        if stored and int(stored) != len(vector):
            logger.warning(
                "Embedding dimension mismatch: stored=%s, query=%d. Re-embed with --force.",
                stored,
                len(vector),
            )

        for node_id, sim in self.store.search_similar(vector, kind="node", limit=limit * 3):
            semantic[node_id] = max(semantic.get(node_id, 0.0), sim)

        for episode_id, sim in self.store.search_similar(vector, kind="episode", limit=limit):
            episode = self.store.get_episode(episode_id)
            for link in self.store.get_episode_entities(episode_id):
                semantic[link.node_id] = max(semantic.get(link.node_id, 0.0), sim * EPISODE_DISCOUNT)
                if episode is not None:
                    episode_hits.setdefault(link.node_id, []).append(episode)
        return semantic, episode_hits

    def _connections(
        self, node_id: str, incident: list[Edge], nodes: dict[str, Node], now: datetime
    ) -> list[Connection]:
        weighted = sorted(
            ((current_weight(e, now, self.store.config), e) for e in incident),
            key=lambda we: we[0],
            reverse=True,
        )
        connections = []
        for weight, edge in weighted:
            neighbour = nodes.get(edge.other(node_id))
            if neighbour is not None:
                connections.append(Connection(neighbour.label, neighbour.type, edge.type, weight))
            if len(connections) == MAX_CONNECTIONS:
                break
        return connections

    def _episodes(self, node_id: str, hits: list[Episode], now: datetime) -> list[Episode]:
        merged = {e.id: e for e in [*self.store.get_entity_episodes(node_id), *hits]}
        newest = sorted(merged.values(), key=lambda e: e.timestamp, reverse=True)[:MAX_EPISODES]
        touched = []
        for episode in newest:
            self.store.touch_episode(episode.id, now)
            touched.append(self.store.get_episode(episode.id) or episode)
        return touched

    def _procedures(self, query: str, opts: RecallOptions) -> list[ProcedureMatch]:
        if not opts.include_procedures:
            return []
        return find_relevant(
            self.store,
            query,
            [],
            limit=opts.procedure_limit or self.config.recall.procedure_limit,
            min_score=0.1,
        )
