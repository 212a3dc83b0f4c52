"""Tests for graph mutation helpers."""

import pytest
from hypothesis import given, strategies as st

from strata.errors import NotFound
from strata.graph.decay import stability
from strata.graph.models import Evidence, Excerpt
from strata.graph.mutate import (
    adjacency,
    create_edge,
    create_node,
    edge_id,
    node_id,
    reinforce_edge,
    reinforce_node,
)
from strata.graph.store import GraphStore

ids = st.text(alphabet="0123456789abcdef", min_size=1, max_size=12)


@pytest.fixture
def store():
    s = GraphStore()
    yield s
    s.close()


class TestIds:
    def test_node_id_is_case_insensitive(self):
        assert node_id("Marcus") == node_id("  marcus ")
        assert len(node_id("Marcus")) == 12

    @given(a=ids, b=ids, type=st.sampled_from(["explicit", "co-occurrence", "temporal", "causal"]))
    def test_edge_id_symmetric(self, a, b, type):
        assert edge_id(a, b, type) == edge_id(b, a, type)

    def test_edge_id_depends_on_type(self):
        assert edge_id("a", "b", "explicit") != edge_id("a", "b", "causal")


class TestNodes:
    def test_create(self, store: GraphStore):
        node = create_node(
            store,
            "redis",
            "tool",
            "2025-01-01",
            file="notes/a.md",
            excerpt=Excerpt("notes/a.md", "we cache in redis", "2025-01-01"),
        )
        stored = store.get_node(node.id)
        assert stored.mention_count == 1
        assert stored.reinforcement_count == 1
        assert stored.source_files == ["notes/a.md"]
        assert stored.excerpts[0].text == "we cache in redis"

    def test_reinforce(self, store: GraphStore):
        node = create_node(store, "redis", "tool", "2025-01-01", file="a.md")
        reinforce_node(store, node.id, "b.md", "2025-02-01")
        reinforce_node(store, node.id, "b.md", "2025-01-15")
        stored = store.get_node(node.id)
        assert stored.mention_count == 3
        assert stored.reinforcement_count == 3
        assert stored.source_files == ["a.md", "b.md"]
        assert stored.last_reinforced == "2025-02-01"

    def test_reinforce_missing(self, store: GraphStore):
        with pytest.raises(NotFound):
            reinforce_node(store, "ghost", "a.md", "2025-01-01")


class TestEdges:
    def test_create_uses_type_base_weight(self, store: GraphStore):
        edge = create_edge(store, "b", "a", "co-occurrence", "2025-01-01")
        assert edge.id == "a--b--co-occurrence"
        assert edge.base_weight == 0.3
        assert edge.weight == 0.3
        assert edge.reinforcement_count == 0

    def test_reinforce(self, store: GraphStore):
        edge = create_edge(store, "a", "b", "explicit", "2025-01-01")
        reinforce_edge(store, edge.id, Evidence("b.md", "2025-03-01", "a and b again"))
        stored = store.get_edge(edge.id)
        assert stored.reinforcement_count == 1
        assert stored.last_reinforced == "2025-03-01"
        assert stored.stability == pytest.approx(stability(1, 1.5))
        assert stored.evidence[-1].context == "a and b again"

    def test_evidence_capped(self, store: GraphStore):
        edge = create_edge(store, "a", "b", "explicit", "2025-01-01")
        for i in range(25):
            reinforce_edge(store, edge.id, Evidence("a.md", "2025-01-02", str(i)))
        stored = store.get_edge(edge.id)
        assert len(stored.evidence) == 20
        assert stored.evidence[0].context == "5"

    def test_reinforce_missing(self, store: GraphStore):
        with pytest.raises(NotFound):
            reinforce_edge(store, "a--b--explicit", Evidence("a.md", "2025-01-01", ""))

    def test_adjacency_both_directions(self, store: GraphStore):
        e1 = create_edge(store, "a", "b", "explicit", "2025-01-01")
        e2 = create_edge(store, "b", "c", "causal", "2025-01-01", directed=True)
        adj = adjacency([e1, e2])
        assert [e.id for e in adj["b"]] == [e1.id, e2.id]
        assert adj["c"] == [e2]
        assert adj["missing"] == []
