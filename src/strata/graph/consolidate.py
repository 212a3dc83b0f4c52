"""Consolidation — turn changed markdown files into graph mutations.

One run: discover → skip unchanged (hash ledger) → extract → resolve →
reinforce/create nodes and edges → decay sweep → snapshot → ledger update →
embed touched nodes. A file that fails extraction is reported and skipped;
the run always completes.
"""

from __future__ import annotations

import asyncio
import fnmatch
import hashlib
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from strata.config import StrataConfig
from strata.embeddings import EmbeddingProvider, embed_nodes
from strata.errors import StrataError
from strata.extract import Extraction, Extractor, MarkdownExtractor, RawEntity, has_causal_phrase
from strata.graph.decay import decay_all, now_iso, parse_timestamp
from strata.graph.models import Evidence, Excerpt, FileHash, Node, PendingEdge
from strata.graph.mutate import create_edge, create_node, edge_id, reinforce_edge, reinforce_node
from strata.graph.resolve import EntityMap, load_entity_map, normalize, resolve
from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)

_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
EXCERPT_CHARS = 200
STRUCTURAL_LINK_CONFIDENCE = 0.9


@dataclass
class ConsolidationResult:
    new_nodes: int = 0
    new_edges: int = 0
    reinforced_nodes: int = 0
    reinforced_edges: int = 0
    decayed_edges: int = 0
    pending_edges: list[PendingEdge] = field(default_factory=list)
    new_embeddings: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    snapshot_id: str | None = None
    files_processed: int = 0
    files_skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["pending_edges"] = [p.to_dict() for p in self.pending_edges]
        return data


# ── Discovery ─────────────────────────────────────────────────


def discover(paths: list[Path], ignore: list[str] | None = None) -> list[Path]:
    """All ``.md`` files under ``paths``, sorted, minus those matching ``ignore`` globs."""
    ignore = ignore or []
    found: set[Path] = set()
    for root in paths:
        root = root.expanduser().resolve()
        if root.is_file() and root.suffix == ".md":
            found.add(root)
        elif root.is_dir():
            found.update(p for p in root.rglob("*.md") if p.is_file())
        else:
            logger.warning("Skipping missing input: %s", root)

    def ignored(p: Path) -> bool:
        return any(fnmatch.fnmatch(p.name, g) or fnmatch.fnmatch(str(p), g) for g in ignore)

    return sorted(p for p in found if not ignored(p))


def hash_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _is_timestamp(text: str) -> bool:
    try:
        parse_timestamp(text)
    except ValueError:
        return False
    return True


def file_date(path: Path, metadata: dict[str, Any], now: datetime) -> str:
    """Leading YYYY-MM-DD of the filename, else frontmatter ``date``, else ``now``.

    A frontmatter string that is not a whole ISO timestamp keeps only its
    leading date, so every stored timestamp stays parseable.
    """
    m = _DATE_PREFIX.match(path.name)
    if m and _is_timestamp(m.group(1)):
        return m.group(1)
    value = metadata.get("date")
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, str):
        text = value.strip()
        m = _DATE_PREFIX.match(text)
        if m and _is_timestamp(text):
            return text
        if m and _is_timestamp(m.group(1)):
            return m.group(1)
        logger.warning("Ignoring unparseable date %r in %s", value, path)
    return now_iso(now)


def dedupe_entities(entities: list[RawEntity]) -> list[RawEntity]:
    """One candidate per normalized text, keeping the most confident."""
    best: dict[str, RawEntity] = {}
    for entity in entities:
        key = normalize(entity.text)
        if key not in best or entity.confidence > best[key].confidence:
            best[key] = entity
    return list(best.values())


def _excerpt(content: str, mention: str) -> str:
    needle = mention.lower()
    for line in content.splitlines():
        if needle in line.lower():
            return line.strip()[:EXCERPT_CHARS]
    return content.strip()[:EXCERPT_CHARS]


# ── Pipeline ──────────────────────────────────────────────────


class Consolidator:
    """Incremental, idempotent ingestion of markdown into a GraphStore."""

    def __init__(
        self,
        store: GraphStore,
        config: StrataConfig | None = None,
        extractor: Extractor | None = None,
        provider: EmbeddingProvider | None = None,
        entity_map: EntityMap | None = None,
    ) -> None:
        self.store = store
        self.config = config or StrataConfig()
        self.extractor = extractor or MarkdownExtractor()
        self.provider = provider
        self.entity_map = entity_map or load_entity_map(self.config.entity_map)

    async def run(self, paths: list[Path], now: datetime | None = None) -> ConsolidationResult:
        now = now or datetime.now(timezone.utc)
        result = ConsolidationResult()
        self._nodes: list[Node] = self.store.list_nodes()
        self._reinforced_nodes: set[str] = set()
        self._reinforced_edges: set[str] = set()
        touched: set[str] = set()
        ledger: list[FileHash] = []

        for path in discover(paths, self.config.ignore):
            key = str(path)
            try:
                text = path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                logger.error("Cannot read %s: %s", path, e)
                result.failures.append({"path": key, "error": str(e)})
                continue

            digest = hash_text(text)
            previous = self.store.get_file_hash(key)
            if previous and previous.hash == digest:
                result.files_skipped += 1
                continue

            try:
                extraction = await asyncio.to_thread(self.extractor.extract, key, text)
            except Exception as e:
                logger.error("Extraction failed for %s: %s", path, e)
                result.failures.append({"path": key, "error": str(e)})
                continue

            when = file_date(path, extraction.metadata, now)
            try:
                with self.store.transaction():
                    ids = self._merge_file(key, when, extraction, result)
            except (StrataError, ValueError) as e:
                logger.error("Merge failed for %s: %s", path, e)
                result.failures.append({"path": key, "error": str(e)})
                self._nodes = self.store.list_nodes()
                continue
            touched.update(ids)
            ledger.append(FileHash(key, digest, now_iso(now)))
            result.files_processed += 1
            logger.debug("Merged %s (%d entities)", path, len(ids))

        result.reinforced_nodes = len(self._reinforced_nodes)
        result.reinforced_edges = len(self._reinforced_edges)

        result.decayed_edges = decay_all(self.store, now).decayed
        result.pending_edges = self.store.list_pending_edges()

        snapshot = self.store.create_snapshot(
            "consolidation",
            {
                "files_processed": result.files_processed,
                "new_nodes": result.new_nodes,
                "new_edges": result.new_edges,
            },
            now=now,
        )
        result.snapshot_id = snapshot.id

        with self.store.transaction():
            for file_hash in ledger:
                self.store.put_file_hash(file_hash)
            self.store.set_meta("last_consolidated", now_iso(now))

        if self.provider is not None and touched:
            report = await embed_nodes(
                self.store,
                self.provider,
                sorted(touched),
                concurrency=self.config.embeddings.concurrency,
                force=True,
                timeout=self.config.embeddings.timeout,
            )
            result.new_embeddings = report.embedded
            result.failures.extend({"path": f["id"], "error": f["error"]} for f in report.failures)

        logger.info(
            "Consolidated %d files (%d unchanged): +%d nodes, +%d edges, %d reinforced, %d decayed",
            result.files_processed,
            result.files_skipped,
            result.new_nodes,
            result.new_edges,
            result.reinforced_nodes,
            result.decayed_edges,
        )
        return result

    # ── Per-file merge ────────────────────────────────────────

    def _merge_file(
        self, path: str, when: str, extraction: Extraction, result: ConsolidationResult
    ) -> set[str]:
        by_section: list[list[str]] = []

        for index, section in enumerate(extraction.sections):
            candidates = dedupe_entities(extraction.entities_in(index))
            ids: list[str] = []
            linked: list[str] = []

            for raw in candidates:
                node_id = self._resolve_and_record(raw, path, when, section.content, result)
                if node_id is None:
                    continue
                if node_id not in ids:
                    ids.append(node_id)
                if raw.source == "wikilink" and raw.confidence >= STRUCTURAL_LINK_CONFIDENCE:
                    linked.append(node_id)

            for link_id in dict.fromkeys(linked):
                for other in ids:
                    if other != link_id:
                        self._link(link_id, other, "explicit", path, when, "wikilink connection", result)

            for i, a in enumerate(ids):
                for b in ids[i + 1 :]:
                    self._co_occur(a, b, path, when, result)

            if len(ids) >= 2 and has_causal_phrase(section.content):
                eid = edge_id(ids[0], ids[1], "causal")
                if self.store.get_edge(eid) is None:
                    create_edge(
                        self.store,
                        ids[0],
                        ids[1],
                        "causal",
                        when,
                        [Evidence(path, when, "causal language detected")],
                        directed=True,
                    )
                    result.new_edges += 1

            by_section.append(ids)

        for i, ids_a in enumerate(by_section):
            for ids_b in by_section[i + 1 :]:
                for a in ids_a:
                    for b in ids_b:
                        if a != b:
                            self._link(a, b, "temporal", path, when, "same file, different sections", result)

        return {nid for ids in by_section for nid in ids}

    def _resolve_and_record(
        self, raw: RawEntity, path: str, when: str, content: str, result: ConsolidationResult
    ) -> str | None:
        resolution = resolve(raw, self._nodes, self.entity_map)
        if resolution is None:
            return None
        excerpt = Excerpt(path, _excerpt(content, raw.text), when)

        if resolution.is_new and self.store.get_node(resolution.node_id) is None:
            node = create_node(
                self.store,
                resolution.canonical_label,
                resolution.type,
                when,
                file=path,
                excerpt=excerpt,
                id=resolution.node_id,
            )
            self._nodes.append(node)
            result.new_nodes += 1
        else:
            reinforce_node(self.store, resolution.node_id, path, when, excerpt)
            self._reinforced_nodes.add(resolution.node_id)
        return resolution.node_id

    def _link(
        self, a: str, b: str, type: str, path: str, when: str, context: str, result: ConsolidationResult
    ) -> None:
        eid = edge_id(a, b, type)
        if self.store.get_edge(eid) is not None:
            reinforce_edge(self.store, eid, Evidence(path, when, context))
            self._reinforced_edges.add(eid)
        else:
            create_edge(self.store, a, b, type, when, [Evidence(path, when, context)])
            result.new_edges += 1

    def _co_occur(self, a: str, b: str, path: str, when: str, result: ConsolidationResult) -> None:
        """Reinforce an existing co-occurrence edge, or count the pair toward materializing one."""
        eid = edge_id(a, b, "co-occurrence")
        if self.store.get_edge(eid) is not None:
            reinforce_edge(self.store, eid, Evidence(path, when, "co-occurrence reinforcement"))
            self._reinforced_edges.add(eid)
            return

        source, target = sorted((a, b))
        pending = self.store.get_pending_edge(source, target, "co-occurrence")
        evidence = Evidence(path, when, "co-occurrence observation")
        if pending is None:
            pending = PendingEdge(source, target, "co-occurrence", 0, when)
        pending.count += 1
        pending.evidence.append(evidence)

        if pending.count >= self.store.config.co_occurrence_threshold:
            edge = create_edge(self.store, source, target, "co-occurrence", when, pending.evidence)
            edge.first_formed = pending.first_seen
            self.store.put_edge(edge)
            self.store.delete_pending_edge(source, target, "co-occurrence")
            result.new_edges += 1
        else:
            self.store.put_pending_edge(pending)
