"""Tests for the SQLite graph store."""

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

from strata.config import GraphConfig
from strata.errors import NotFound, ValidationError
from strata.graph.models import Edge, Episode, Excerpt, FileHash, Node, PendingEdge, Procedure
from strata.graph.store import GraphStore

T0 = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _node(id: str, label: str, type: str = "concept", **kwargs) -> Node:
    return Node(
        id=id,
        label=label,
        type=type,
        first_seen="2025-03-01",
        last_reinforced="2025-03-01",
        **kwargs,
    )


def _edge(source: str, target: str, type: str = "explicit", base: float = 1.0, **kwargs) -> Edge:
    return Edge(
        id=f"{source}--{target}--{type}",
        source=source,
        target=target,
        type=type,
        base_weight=base,
        weight=base,
        first_formed="2025-03-01",
        last_reinforced="2025-03-01",
        **kwargs,
    )


@pytest.fixture
def store():
    s = GraphStore()
    yield s
    s.close()


class TestNodes:
    def test_put_and_get(self, store: GraphStore):
        store.put_node(_node("n1", "Marcus", "person", aliases=["Marc"]))
        node = store.get_node("n1")
        assert node.label == "Marcus"
        assert node.type == "person"
        assert node.aliases == ["Marc"]

    def test_get_missing_returns_none(self, store: GraphStore):
        assert store.get_node("nope") is None

    def test_require_missing_raises(self, store: GraphStore):
        with pytest.raises(NotFound) as exc:
            store.require_node("nope")
        assert exc.value.kind == "node"
        assert exc.value.id == "nope"

    def test_find_by_label_and_alias(self, store: GraphStore):
        store.put_node(_node("n1", "Kubernetes", "tool", aliases=["k8s"]))
        assert store.find_node("kubernetes").id == "n1"
        assert store.find_node("K8S").id == "n1"
        assert store.find_node("docker") is None

    def test_insertion_order_survives_update(self, store: GraphStore):
        store.put_node(_node("b", "Beta"))
        store.put_node(_node("a", "Alpha"))
        updated = store.get_node("b")
        updated.mention_count = 5
        store.put_node(updated)
        assert [n.id for n in store.list_nodes()] == ["b", "a"]

    def test_list_filters(self, store: GraphStore):
        store.put_node(_node("p", "Marcus", "person"))
        store.put_node(_node("t", "Python", "tool"))
        assert [n.id for n in store.list_nodes(type="tool")] == ["t"]
        assert [n.id for n in store.list_nodes(label="mar")] == ["p"]

    def test_mentions_must_cover_reinforcements(self, store: GraphStore):
        with pytest.raises(ValidationError):
            store.put_node(_node("n1", "Bad", mention_count=1, reinforcement_count=2))

    def test_excerpts_round_trip(self, store: GraphStore):
        node = _node("n1", "Redis")
        node.add_excerpt(Excerpt(file="a.md", text="cache layer", date="2025-03-01"))
        store.put_node(node)
        assert store.get_node("n1").excerpts[0].text == "cache layer"

    def test_excerpts_capped(self):
        node = _node("n1", "Redis")
        for i in range(15):
            node.add_excerpt(Excerpt(file="a.md", text=str(i), date="2025-03-01"))
        assert len(node.excerpts) == 10
        assert node.excerpts[0].text == "5"

    def test_delete_removes_incident_edges(self, store: GraphStore):
        store.put_node(_node("a", "A"))
        store.put_node(_node("b", "B"))
        store.put_edge(_edge("a", "b"))
        store.delete_node("a")
        assert store.get_node("a") is None
        assert store.edge_count() == 0

    def test_delete_missing_raises(self, store: GraphStore):
        with pytest.raises(NotFound):
            store.delete_node("ghost")


class TestEdges:
    def test_put_and_list(self, store: GraphStore):
        store.put_edge(_edge("a", "b"))
        store.put_edge(_edge("a", "c", "co-occurrence", base=0.3))
        assert store.edge_count() == 2
        assert [e.id for e in store.list_edges(type="co-occurrence")] == ["a--c--co-occurrence"]
        assert len(store.list_edges(node="a")) == 2
        assert len(store.list_edges(node="b")) == 1

    def test_weight_clamped_to_base(self, store: GraphStore):
        edge = _edge("a", "b", base=0.3)
        edge.weight = 5.0
        store.put_edge(edge)
        assert store.get_edge(edge.id).weight == 0.3

    def test_delete_missing_raises(self, store: GraphStore):
        with pytest.raises(NotFound):
            store.delete_edge("a--b--explicit")


class TestPendingEdges:
    def test_upsert_and_delete(self, store: GraphStore):
        pending = PendingEdge(source="a", target="b", type="co-occurrence", count=1, first_seen="2025-03-01")
        store.put_pending_edge(pending)
        pending.count = 2
        store.put_pending_edge(pending)
        assert store.get_pending_edge("a", "b", "co-occurrence").count == 2
        assert len(store.list_pending_edges()) == 1
        store.delete_pending_edge("a", "b", "co-occurrence")
        assert store.list_pending_edges() == []


class TestEmbeddings:
    def test_round_trip(self, store: GraphStore):
        store.put_embedding("n1", "node", "Redis", [1.0, 0.0, 0.0], "mock")
        record = store.get_embedding("n1")
        assert record["kind"] == "node"
        assert record["vector"].dtype == np.float32
        assert list(record["vector"]) == [1.0, 0.0, 0.0]

    def test_search_similar_orders_by_cosine(self, store: GraphStore):
        store.put_embedding("x", "node", "x", [1.0, 0.0], "mock")
        store.put_embedding("y", "node", "y", [0.0, 1.0], "mock")
        store.put_embedding("xy", "node", "xy", [1.0, 1.0], "mock")
        results = store.search_similar([1.0, 0.0], kind="node")
        assert [r[0] for r in results] == ["x", "xy", "y"]
        assert results[0][1] == pytest.approx(1.0)

    def test_search_skips_other_dimensions(self, store: GraphStore):
        store.put_embedding("x", "node", "x", [1.0, 0.0], "mock")
        store.put_embedding("z", "node", "z", [1.0, 0.0, 0.0], "mock")
        assert [r[0] for r in store.search_similar([1.0, 0.0])] == ["x"]

    def test_search_filters_kind(self, store: GraphStore):
        store.put_embedding("x", "node", "x", [1.0, 0.0], "mock")
        store.put_embedding("e", "episode", "e", [1.0, 0.0], "mock")
        assert [r[0] for r in store.search_similar([1.0, 0.0], kind="episode")] == ["e"]

    def test_embedded_ids(self, store: GraphStore):
        store.put_embedding("x", "node", "x", [1.0], "mock")
        store.put_embedding("e", "episode", "e", [1.0], "mock")
        assert store.embedded_ids("node") == {"x"}
        assert store.embedded_ids() == {"x", "e"}


class TestEpisodes:
    def _episode(self, id: str, timestamp: str, **kwargs) -> Episode:
        return Episode(
            id=id,
            timestamp=timestamp,
            type="conversation",
            title=id,
            content=f"content of {id}",
            source="session-1",
            **kwargs,
        )

    def test_list_newest_first(self, store: GraphStore):
        store.put_episode(self._episode("e1", "2025-03-01T10:00:00+00:00"))
        store.put_episode(self._episode("e2", "2025-03-02T10:00:00+00:00"))
        assert [e.id for e in store.list_episodes()] == ["e2", "e1"]
        assert [e.id for e in store.list_episodes(since="2025-03-02")] == ["e2"]

    def test_links_populate_roles(self, store: GraphStore):
        store.put_node(_node("p", "Marcus", "person"))
        store.put_node(_node("t", "Redis", "tool"))
        store.put_episode(self._episode("e1", "2025-03-01T10:00:00+00:00"))
        store.link_episode_entity("e1", "p", "participant")
        store.link_episode_entity("e1", "t", "topic")
        episode = store.get_episode("e1")
        assert episode.participants == ["p"]
        assert episode.topics == ["t"]
        assert [e.id for e in store.get_entity_episodes("t")] == ["e1"]

    def test_links_survive_episode_update(self, store: GraphStore):
        store.put_node(_node("p", "Marcus", "person"))
        episode = self._episode("e1", "2025-03-01T10:00:00+00:00")
        store.put_episode(episode)
        store.link_episode_entity("e1", "p", "participant")
        episode.title = "renamed"
        store.put_episode(episode)
        assert len(store.get_episode_entities("e1")) == 1

    def test_unknown_role_rejected(self, store: GraphStore):
        store.put_episode(self._episode("e1", "2025-03-01T10:00:00+00:00"))
        with pytest.raises(ValidationError):
            store.link_episode_entity("e1", "p", "bystander")

    def test_touch_bumps_access(self, store: GraphStore):
        store.put_episode(self._episode("e1", "2025-03-01T10:00:00+00:00"))
        store.touch_episode("e1", T0)
        episode = store.get_episode("e1")
        assert episode.access_count == 1
        assert episode.last_accessed == T0.isoformat()

    def test_importance_clamped(self, store: GraphStore):
        store.put_episode(self._episode("e1", "2025-03-01T10:00:00+00:00", importance=3.0))
        assert store.get_episode("e1").importance == 1.0

    def test_delete_missing_raises(self, store: GraphStore):
        with pytest.raises(NotFound):
            store.delete_episode("ghost")


class TestProcedures:
    def test_confidence_clamped(self, store: GraphStore):
        proc = Procedure(
            id="proc-1",
            statement="Check the logs first",
            type="heuristic",
            created_at="2025-03-01",
            updated_at="2025-03-01",
            confidence=1.5,
        )
        store.put_procedure(proc)
        assert store.get_procedure("proc-1").confidence == 0.99

    def test_delete_missing_raises(self, store: GraphStore):
        with pytest.raises(NotFound):
            store.delete_procedure("proc-x")


class TestSnapshots:
    def test_snapshot_is_isolated_from_later_writes(self, store: GraphStore):
        store.put_node(_node("a", "A"))
        snap = store.create_snapshot("manual", now=T0)
        store.put_node(_node("b", "B"))

        graph = store.get_snapshot_graph(snap.id)
        assert set(graph.nodes) == {"a"}
        assert snap.node_count == 1
        assert store.node_count() == 2

    def test_snapshot_freezes_decayed_weights(self, store: GraphStore):
        store.put_edge(_edge("a", "b"))
        snap = store.create_snapshot("manual", now=T0 + timedelta(days=30))
        frozen = store.get_snapshot_graph(snap.id).edges["a--b--explicit"]
        assert frozen.weight < 1.0
        assert store.get_edge("a--b--explicit").weight == 1.0

    def test_list_and_metadata(self, store: GraphStore):
        first = store.create_snapshot("manual", {"note": "first"}, now=T0)
        second = store.create_snapshot("consolidation", now=T0 + timedelta(days=1))
        listed = store.list_snapshots()
        assert [s.id for s in listed] == [second.id, first.id]
        assert store.get_snapshot(first.id).metadata == {"note": "first"}
        assert store.list_snapshots(limit=1)[0].id == second.id

    def test_missing_snapshot_graph_raises(self, store: GraphStore):
        with pytest.raises(NotFound):
            store.get_snapshot_graph("snap-missing")


class TestExportImport:
    def test_round_trip_through_json(self, store: GraphStore, tmp_path: Path):
        store.put_node(_node("a", "A"))
        store.put_node(_node("b", "B"))
        store.put_edge(_edge("a", "b"))
        store.put_file_hash(FileHash("notes/a.md", "abc", "2025-03-01"))
        store.set_meta("last_consolidated", "2025-03-01T00:00:00+00:00")

        path = tmp_path / "graph.json"
        store.save_json(path)
        data = json.loads(path.read_text())
        assert set(data["nodes"]) == {"a", "b"}

        other = GraphStore()
        other.load_json(path)
        assert other.export_graph().to_dict() == store.export_graph().to_dict()

    def test_import_replaces(self, store: GraphStore):
        store.put_node(_node("old", "Old"))
        other = GraphStore()
        other.put_node(_node("new", "New"))
        store.import_graph(other.export_graph())
        assert [n.id for n in store.list_nodes()] == ["new"]

    def test_import_adopts_config(self, store: GraphStore):
        other = GraphStore(config=GraphConfig(decay_rate=0.5))
        store.import_graph(other.export_graph())
        assert store.config.decay_rate == 0.5


class TestPersistence:
    def test_reopen_file_database(self, tmp_path: Path):
        db = tmp_path / "graph.db"
        with GraphStore(db, GraphConfig(co_occurrence_threshold=4)) as store:
            store.put_node(_node("a", "A"))
        with GraphStore(db) as reopened:
            assert reopened.get_node("a").label == "A"
            assert reopened.config.co_occurrence_threshold == 4

    def test_failed_transaction_rolls_back(self, store: GraphStore):
        with pytest.raises(RuntimeError):
            with store.transaction():
                store.put_node(_node("a", "A"))
                raise RuntimeError("boom")
        assert store.get_node("a") is None
