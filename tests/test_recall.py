"""Tests for hybrid recall."""

import asyncio
from datetime import datetime, timezone

import numpy as np
import pytest

from strata.config import RecallWeights, StrataConfig
from strata.errors import ProviderError, ValidationError
from strata.graph import procedures
from strata.graph.models import Episode
from strata.graph.mutate import create_edge, create_node, reinforce_node
from strata.graph.recall import RecallEngine, RecallOptions, find_node, graph_walk, search_nodes
from strata.graph.store import GraphStore

DAY = "2025-06-01"
NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


class FixedEmbedder:
    """Returns the same vector for every text."""

    def __init__(self, vector, delay: float = 0.0):
        self.vector = np.asarray(vector, dtype=np.float32)
        self.delay = delay

    @property
    def name(self) -> str:
        return "fixed"

    @property
    def dimensions(self) -> int:
        return len(self.vector)

    async def embed(self, text):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.vector

    async def embed_batch(self, texts):
        return [self.vector for _ in texts]


@pytest.fixture
def store():
    s = GraphStore()
    yield s
    s.close()


@pytest.fixture
def graph(store: GraphStore):
    """redis -- marcus -- kafka, plus an isolated node."""
    redis = create_node(store, "redis", "tool", DAY)
    marcus = create_node(store, "marcus", "person", DAY)
    kafka = create_node(store, "kafka", "tool", DAY)
    lonely = create_node(store, "gardening", "concept", DAY)
    create_edge(store, redis.id, marcus.id, "explicit", DAY)
    create_edge(store, marcus.id, kafka.id, "explicit", DAY)
    return {"redis": redis, "marcus": marcus, "kafka": kafka, "lonely": lonely}


class TestSeeding:
    def test_find_node_by_label_and_alias(self, graph):
        nodes = {n.id: n for n in graph.values()}
        assert find_node(nodes, "Redis").id == graph["redis"].id
        assert find_node(nodes, graph["kafka"].id).id == graph["kafka"].id
        assert find_node(nodes, "postgres") is None

    def test_search_nodes_scores(self, graph):
        results = dict((n.label, s) for n, s in search_nodes(graph.values(), ["redi"]))
        assert results["redis"] == pytest.approx(0.8)
        assert "kafka" not in results


class TestGraphWalk:
    def test_hop_penalty(self, store: GraphStore, graph):
        nodes = {n.id: n for n in store.list_nodes()}
        scores = graph_walk(nodes, store.list_edges(), [graph["redis"].id], 2, NOW, store.config)
        assert scores[graph["redis"].id] == 1.0
        assert scores[graph["marcus"].id] == pytest.approx(0.5)
        assert scores[graph["kafka"].id] == pytest.approx(1 / 3)
        assert graph["lonely"].id not in scores

    def test_hops_bound_walk(self, store: GraphStore, graph):
        nodes = {n.id: n for n in store.list_nodes()}
        scores = graph_walk(nodes, store.list_edges(), [graph["redis"].id], 1, NOW, store.config)
        assert graph["kafka"].id not in scores

    def test_dormant_edges_not_traversed(self, store: GraphStore, graph):
        nodes = {n.id: n for n in store.list_nodes()}
        much_later = datetime(2035, 6, 1, tzinfo=timezone.utc)
        scores = graph_walk(nodes, store.list_edges(), [graph["redis"].id], 2, much_later, store.config)
        assert scores == {graph["redis"].id: 1.0}


class TestRecall:
    @pytest.mark.asyncio
    async def test_structural_only(self, store: GraphStore, graph):
        response = await RecallEngine(store).recall("what about redis", now=NOW)
        labels = [r.label for r in response.results]
        assert labels[0] == "redis"
        assert "marcus" in labels
        assert "gardening" not in labels

        top = response.results[0]
        assert set(top.scores) == {"semantic", "graph", "recency", "importance"}
        assert top.scores["semantic"] == 0.0
        assert top.scores["graph"] == 1.0
        assert top.scores["recency"] == 1.0
        assert top.connections[0].label == "marcus"
        assert top.connections[0].relationship == "explicit"

    @pytest.mark.asyncio
    async def test_identical_embedding_scores_one(self, store: GraphStore, graph):
        store.put_embedding(graph["lonely"].id, "node", "gardening", [1.0, 0.0, 0.0], "fixed")
        store.put_embedding(graph["kafka"].id, "node", "kafka", [0.0, 1.0, 0.0], "fixed")
        engine = RecallEngine(store, provider=FixedEmbedder([1.0, 0.0, 0.0]))

        response = await engine.recall("tomatoes in spring", now=NOW)
        top = response.results[0]
        assert top.label == "gardening"
        assert top.scores["semantic"] == pytest.approx(1.0, abs=1e-6)

    @pytest.mark.asyncio
    async def test_episode_hit_is_discounted(self, store: GraphStore, graph):
        store.put_episode(
            Episode(
                id="ep-1",
                timestamp="2025-05-30T10:00:00+00:00",
                type="conversation",
                title="Kafka chat",
                content="we talked about kafka",
                source="session-1",
            )
        )
        store.link_episode_entity("ep-1", graph["kafka"].id, "topic")
        store.put_embedding("ep-1", "episode", "we talked about kafka", [1.0, 0.0], "fixed")
        engine = RecallEngine(store, provider=FixedEmbedder([1.0, 0.0]))

        response = await engine.recall("streaming", now=NOW)
        kafka = next(r for r in response.results if r.label == "kafka")
        assert kafka.scores["semantic"] == pytest.approx(0.8, abs=1e-6)
        assert [e.id for e in kafka.episodes] == ["ep-1"]
        assert store.get_episode("ep-1").access_count == 1
        # returned episodes reflect this read
        assert kafka.episodes[0].access_count == 1
        assert kafka.episodes[0].last_accessed == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_provider_timeout(self, store: GraphStore, graph):
        store.put_embedding(graph["kafka"].id, "node", "kafka", [1.0, 0.0], "fixed")
        config = StrataConfig()
        config.embeddings.timeout = 0.01
        engine = RecallEngine(store, config, provider=FixedEmbedder([1.0, 0.0], delay=1.0))
        with pytest.raises(ProviderError):
            await engine.recall("kafka", now=NOW)

    @pytest.mark.asyncio
    async def test_no_match(self, store: GraphStore, graph):
        response = await RecallEngine(store).recall("zzzz qqqq", now=NOW)
        assert response.results == []
        assert response.to_dict() == {"results": [], "procedures": []}

    @pytest.mark.asyncio
    async def test_type_filter(self, store: GraphStore, graph):
        response = await RecallEngine(store).recall(
            "redis", RecallOptions(types=["person"]), now=NOW
        )
        assert [r.label for r in response.results] == ["marcus"]

    @pytest.fixture
    def dated(self, store: GraphStore):
        redis = create_node(store, "redis", "tool", "2025-05-20")
        marcus = create_node(store, "marcus", "person", "2025-06-01T10:00:00+00:00")
        kafka = create_node(store, "kafka", "tool", "2025-06-02T08:00:00+00:00")
        create_edge(store, redis.id, marcus.id, "explicit", DAY)
        create_edge(store, redis.id, kafka.id, "explicit", DAY)
        return store

    async def _labels(self, store: GraphStore, **window) -> set[str]:
        response = await RecallEngine(store).recall("redis", RecallOptions(**window), now=NOW)
        return {r.label for r in response.results}

    @pytest.mark.asyncio
    async def test_until_date_covers_the_whole_day(self, dated: GraphStore):
        assert await self._labels(dated, until="2025-06-01") == {"redis", "marcus"}
        assert await self._labels(dated, until="2025-06-01T09:00:00Z") == {"redis"}

    @pytest.mark.asyncio
    async def test_since_compares_instants(self, dated: GraphStore):
        assert await self._labels(dated, since="2025-06-01") == {"marcus", "kafka"}
        assert await self._labels(dated, since="2025-06-01T12:00:00Z") == {"kafka"}
        assert await self._labels(dated, since="2025-06-01", until="2025-06-01") == {"marcus"}

    @pytest.mark.asyncio
    async def test_invalid_window_rejected(self, dated: GraphStore):
        with pytest.raises(ValidationError):
            await self._labels(dated, since="last week")

    @pytest.mark.asyncio
    async def test_limit_and_min_score(self, store: GraphStore, graph):
        response = await RecallEngine(store).recall("redis", RecallOptions(limit=1), now=NOW)
        assert len(response.results) == 1

        response = await RecallEngine(store).recall("redis", RecallOptions(min_score=0.4), now=NOW)
        assert [r.label for r in response.results] == ["redis"]

    @pytest.mark.asyncio
    async def test_importance_favours_reinforced_nodes(self, store: GraphStore, graph):
        for _ in range(5):
            reinforce_node(store, graph["kafka"].id, "a.md", DAY)
        weights = RecallWeights(semantic=0.0, graph=0.0, recency=0.0, importance=1.0)
        response = await RecallEngine(store).recall(
            "redis", RecallOptions(weights=weights), now=NOW
        )
        scores = {r.label: r.scores["importance"] for r in response.results}
        assert scores["kafka"] == 1.0
        assert scores["redis"] < scores["kafka"]

    @pytest.mark.asyncio
    async def test_procedures_returned_without_nodes(self, store: GraphStore):
        procedures.create_procedure(store, "Warm the cache before deploys", keywords=["cache"])
        response = await RecallEngine(store).recall("cache warming", now=NOW)
        assert response.results == []
        assert len(response.procedures) == 1

    @pytest.mark.asyncio
    async def test_procedures_can_be_excluded(self, store: GraphStore, graph):
        procedures.create_procedure(store, "Pin the redis version", keywords=["redis"])
        response = await RecallEngine(store).recall(
            "redis", RecallOptions(include_procedures=False), now=NOW
        )
        assert response.procedures == []
        assert response.results
