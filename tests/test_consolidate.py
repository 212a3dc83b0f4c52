"""Tests for the consolidation pipeline."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from strata.config import StrataConfig
from strata.embeddings import MockEmbedder
from strata.extract import MarkdownExtractor
from strata.graph.consolidate import Consolidator, discover, file_date
from strata.graph.mutate import edge_id, node_id
from strata.graph.recall import RecallEngine
from strata.graph.store import GraphStore

NOW = datetime(2025, 6, 10, tzinfo=timezone.utc)


@pytest.fixture
def store():
    s = GraphStore()
    yield s
    s.close()


@pytest.fixture
def notes(tmp_path: Path) -> Path:
    d = tmp_path / "notes"
    d.mkdir()
    return d


class FlakyExtractor(MarkdownExtractor):
    def extract(self, path, text):
        if path.endswith("bad.md"):
            raise RuntimeError("parser exploded")
        return super().extract(path, text)


class TestDiscovery:
    def test_finds_markdown_sorted(self, notes: Path):
        (notes / "b.md").write_text("b")
        (notes / "a.md").write_text("a")
        (notes / "skip.txt").write_text("x")
        (notes / "sub").mkdir()
        (notes / "sub" / "c.md").write_text("c")
        found = discover([notes])
        assert [p.name for p in found] == ["a.md", "b.md", "c.md"]

    def test_ignore_globs(self, notes: Path):
        (notes / "a.md").write_text("a")
        (notes / "draft-1.md").write_text("d")
        assert [p.name for p in discover([notes], ["draft-*"])] == ["a.md"]

    def test_missing_input_skipped(self, tmp_path: Path):
        assert discover([tmp_path / "nope"]) == []

    def test_file_date(self):
        assert file_date(Path("2025-06-01-standup.md"), {}, NOW) == "2025-06-01"
        assert file_date(Path("standup.md"), {"date": "2025-05-02"}, NOW) == "2025-05-02"
        assert file_date(Path("standup.md"), {}, NOW) == NOW.isoformat()

    def test_file_date_keeps_only_a_parseable_prefix(self):
        assert file_date(Path("s.md"), {"date": "2024-01-05 (Friday)"}, NOW) == "2024-01-05"
        assert file_date(Path("s.md"), {"date": "2024-01-05T09:30:00Z"}, NOW) == "2024-01-05T09:30:00Z"
        assert file_date(Path("s.md"), {"date": "2024-13-45"}, NOW) == NOW.isoformat()
        assert file_date(Path("s.md"), {"date": "last friday"}, NOW) == NOW.isoformat()
        assert file_date(Path("2024-99-99-notes.md"), {}, NOW) == NOW.isoformat()



class TestConsolidate:
    @pytest.mark.asyncio
    async def test_same_entity_in_two_sections(self, store: GraphStore, notes: Path):
        (notes / "journal.md").write_text(
            "# Monday\n\nPaired with **Marcus** on the importer.\n\n"
            "# Tuesday\n\n**Marcus** reviewed the patch.\n"
        )
        result = await Consolidator(store).run([notes], now=NOW)

        marcus = store.get_node(node_id("marcus"))
        assert marcus is not None
        assert marcus.mention_count == 2
        assert marcus.reinforcement_count == 2
        assert result.new_nodes == 1
        assert result.reinforced_nodes == 1
        assert store.node_count() == 1

    @pytest.mark.asyncio
    async def test_edges_from_wikilinks_and_sections(self, store: GraphStore, notes: Path):
        (notes / "2025-06-01-standup.md").write_text(
            "# Standup\n\n**Marcus** wants [[Redis]] for sessions.\n\n"
            "# Retro\n\n**Marcus** said [[Redis]] worked well.\n"
        )
        result = await Consolidator(store).run([notes], now=NOW)

        redis, marcus = node_id("redis"), node_id("marcus")
        explicit = store.get_edge(edge_id(redis, marcus, "explicit"))
        assert explicit.base_weight == 1.0
        assert explicit.reinforcement_count == 1
        assert explicit.first_formed == "2025-06-01"

        # second sighting of the pair materializes the co-occurrence edge
        assert store.get_edge(edge_id(redis, marcus, "co-occurrence")) is not None
        assert store.list_pending_edges() == []
        assert result.pending_edges == []

        temporal = store.get_edge(edge_id(redis, marcus, "temporal"))
        assert temporal.base_weight == 0.1
        assert result.new_edges == 3

    @pytest.mark.asyncio
    async def test_single_co_occurrence_stays_pending(self, store: GraphStore, notes: Path):
        (notes / "a.md").write_text("**Postgres** and **Kafka** in one paragraph.\n")
        result = await Consolidator(store).run([notes], now=NOW)

        assert store.get_edge(edge_id(node_id("postgres"), node_id("kafka"), "co-occurrence")) is None
        assert len(result.pending_edges) == 1
        assert result.pending_edges[0].count == 1

        (notes / "b.md").write_text("**Kafka** feeds **Postgres** nightly.\n")
        await Consolidator(store).run([notes], now=NOW)
        assert store.get_edge(edge_id(node_id("postgres"), node_id("kafka"), "co-occurrence")) is not None
        assert store.list_pending_edges() == []

    @pytest.mark.asyncio
    async def test_causal_edge_is_directed(self, store: GraphStore, notes: Path):
        (notes / "incident.md").write_text("The [[Outage]] led to a [[Postmortem]] review.\n")
        await Consolidator(store).run([notes], now=NOW)

        outage, postmortem = node_id("outage"), node_id("postmortem")
        causal = store.get_edge(edge_id(outage, postmortem, "causal"))
        assert causal.directed
        assert causal.source == outage
        assert causal.target == postmortem
        assert causal.base_weight == 0.8

    @pytest.mark.asyncio
    async def test_rerun_skips_unchanged_files(self, store: GraphStore, notes: Path):
        (notes / "a.md").write_text("Talked to **Marcus**.\n")
        first = await Consolidator(store).run([notes], now=NOW)
        second = await Consolidator(store).run([notes], now=NOW)

        assert first.files_processed == 1
        assert second.files_processed == 0
        assert second.files_skipped == 1
        assert second.new_nodes == 0
        assert store.get_node(node_id("marcus")).mention_count == 1

    @pytest.mark.asyncio
    async def test_changed_file_is_reprocessed(self, store: GraphStore, notes: Path):
        path = notes / "a.md"
        path.write_text("Talked to **Marcus**.\n")
        await Consolidator(store).run([notes], now=NOW)
        path.write_text("Talked to **Marcus** again.\n")
        result = await Consolidator(store).run([notes], now=NOW)

        assert result.files_processed == 1
        assert store.get_node(node_id("marcus")).mention_count == 2
        assert store.get_file_hash(str(path.resolve())) is not None

    @pytest.mark.asyncio
    async def test_extraction_failure_is_reported(self, store: GraphStore, notes: Path):
        (notes / "bad.md").write_text("**Broken** file.\n")
        (notes / "good.md").write_text("**Marcus** is fine.\n")
        result = await Consolidator(store, extractor=FlakyExtractor()).run([notes], now=NOW)

        assert len(result.failures) == 1
        assert result.failures[0]["path"].endswith("bad.md")
        assert "parser exploded" in result.failures[0]["error"]
        assert store.get_node(node_id("marcus")) is not None
        assert store.get_node(node_id("broken")) is None
        # failed files are retried next run
        assert store.get_file_hash(str((notes / "bad.md").resolve())) is None

    @pytest.mark.asyncio
    async def test_frontmatter_people(self, store: GraphStore, notes: Path):
        (notes / "meeting.md").write_text(
            "---\npeople: [Marcus]\ntags: planning\n---\n\n**Marcus** drafted the roadmap.\n"
        )
        await Consolidator(store).run([notes], now=NOW)

        marcus = store.get_node(node_id("marcus"))
        assert marcus.type == "person"
        assert marcus.mention_count == 1
        assert store.get_node(node_id("planning")).type == "tag"

    @pytest.mark.asyncio
    async def test_snapshot_and_ledger(self, store: GraphStore, notes: Path):
        (notes / "a.md").write_text("**Marcus** and **Priya**.\n")
        result = await Consolidator(store).run([notes], now=NOW)

        snapshot = store.get_snapshot(result.snapshot_id)
        assert snapshot.trigger == "consolidation"
        assert snapshot.node_count == 2
        assert snapshot.metadata["files_processed"] == 1
        assert store.get_meta("last_consolidated") == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_embeds_touched_nodes(self, store: GraphStore, notes: Path):
        (notes / "a.md").write_text("**Marcus** and **Priya**.\n")
        result = await Consolidator(store, provider=MockEmbedder()).run([notes], now=NOW)

        assert result.new_embeddings == 2
        assert store.embedded_ids("node") == {node_id("marcus"), node_id("priya")}

    @pytest.mark.asyncio
    async def test_ignored_entities(self, store: GraphStore, notes: Path, tmp_path: Path):
        entity_map = tmp_path / "entities.json"
        entity_map.write_text('{"aliases": {"Marc": "Marcus"}, "ignore": ["note"]}')
        config = StrataConfig(entity_map=entity_map)
        (notes / "a.md").write_text("**Note**: **Marcus** called.\n\n# Later\n\n**Marc** again.\n")
        await Consolidator(store, config).run([notes], now=NOW)

        assert store.get_node(node_id("note")) is None
        assert store.get_node(node_id("marcus")).mention_count == 2

    @pytest.mark.asyncio
    async def test_annotated_frontmatter_date(self, store: GraphStore, notes: Path):
        (notes / "friday.md").write_text(
            '---\ndate: "2024-01-05 (Friday)"\n---\n\n[[Alice]] paired with [[Bob]].\n'
        )
        result = await Consolidator(store).run([notes], now=NOW)

        assert result.failures == []
        alice = store.get_node(node_id("alice"))
        assert alice.first_seen == "2024-01-05"
        assert alice.last_reinforced == "2024-01-05"
        assert store.get_file_hash(str((notes / "friday.md").resolve())) is not None

        response = await RecallEngine(store).recall("Alice", now=NOW)
        assert response.results[0].label == "alice"
