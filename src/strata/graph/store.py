"""GraphStore — durable storage for the memory graph.

A graph is a single SQLite file (or ``:memory:``). Every record type has its
own table; list-valued fields are stored as JSON text. All writes, and snapshot
capture, run under one re-entrant lock inside a SQLite transaction, so a
snapshot always observes a consistent point in time.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import numpy as np

from strata.config import BaseWeights, GraphConfig
from strata.errors import NotFound, ValidationError
from strata.graph.decay import current_weight, now_iso
from strata.graph.models import (
    EPISODE_ROLES,
    Edge,
    Episode,
    EpisodeLink,
    Evidence,
    Excerpt,
    FileHash,
    GraphExport,
    Node,
    PendingEdge,
    Procedure,
    ReviewState,
    Snapshot,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 3

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS meta (
  key   TEXT PRIMARY KEY,
  value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS nodes (
  id                  TEXT PRIMARY KEY,
  label               TEXT NOT NULL,
  type                TEXT NOT NULL,
  aliases             TEXT NOT NULL DEFAULT '[]',
  first_seen          TEXT NOT NULL,
  last_reinforced     TEXT NOT NULL,
  mention_count       INTEGER NOT NULL DEFAULT 1,
  reinforcement_count INTEGER NOT NULL DEFAULT 0,
  source_files        TEXT NOT NULL DEFAULT '[]',
  excerpts            TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS edges (
  id                  TEXT PRIMARY KEY,
  source              TEXT NOT NULL,
  target              TEXT NOT NULL,
  type                TEXT NOT NULL,
  directed            INTEGER NOT NULL DEFAULT 0,
  weight              REAL NOT NULL,
  base_weight         REAL NOT NULL,
  reinforcement_count INTEGER NOT NULL DEFAULT 0,
  first_formed        TEXT NOT NULL,
  last_reinforced     TEXT NOT NULL,
  stability           REAL NOT NULL DEFAULT 1.0,
  evidence            TEXT NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS pending_edges (
  source     TEXT NOT NULL,
  target     TEXT NOT NULL,
  type       TEXT NOT NULL,
  count      INTEGER NOT NULL,
  first_seen TEXT NOT NULL,
  evidence   TEXT NOT NULL DEFAULT '[]',
  PRIMARY KEY (source, target, type)
);

CREATE TABLE IF NOT EXISTS processed_files (
  path           TEXT PRIMARY KEY,
  hash           TEXT NOT NULL,
  last_processed TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS embeddings (
  id         TEXT PRIMARY KEY,
  kind       TEXT NOT NULL,
  content    TEXT NOT NULL,
  vector     BLOB NOT NULL,
  dimensions INTEGER NOT NULL,
  provider   TEXT NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS episodes (
  id            TEXT PRIMARY KEY,
  timestamp     TEXT NOT NULL,
  end_timestamp TEXT,
  type          TEXT NOT NULL,
  title         TEXT NOT NULL,
  summary       TEXT,
  content       TEXT NOT NULL,
  sequence      INTEGER NOT NULL DEFAULT 0,
  parent_id     TEXT,
  importance    REAL NOT NULL DEFAULT 0.5,
  access_count  INTEGER NOT NULL DEFAULT 0,
  last_accessed TEXT,
  source        TEXT NOT NULL,
  source_type   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS episode_entities (
  episode_id TEXT NOT NULL REFERENCES episodes(id) ON DELETE CASCADE,
  node_id    TEXT NOT NULL REFERENCES nodes(id) ON DELETE CASCADE,
  role       TEXT NOT NULL,
  PRIMARY KEY (episode_id, node_id, role)
);

CREATE TABLE IF NOT EXISTS procedures (
  id               TEXT PRIMARY KEY,
  statement        TEXT NOT NULL,
  type             TEXT NOT NULL,
  trigger_keywords TEXT NOT NULL DEFAULT '[]',
  trigger_contexts TEXT NOT NULL DEFAULT '[]',
  source_episodes  TEXT NOT NULL DEFAULT '[]',
  source_nodes     TEXT NOT NULL DEFAULT '[]',
  confidence       REAL NOT NULL,
  stability        REAL NOT NULL,
  applications     INTEGER NOT NULL DEFAULT 0,
  contradictions   INTEGER NOT NULL DEFAULT 0,
  review           TEXT NOT NULL DEFAULT 'clear',
  last_applied     TEXT,
  created_at       TEXT NOT NULL,
  updated_at       TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS snapshots (
  id            TEXT PRIMARY KEY,
  trigger       TEXT NOT NULL,
  created_at    TEXT NOT NULL,
  node_count    INTEGER NOT NULL,
  edge_count    INTEGER NOT NULL,
  episode_count INTEGER NOT NULL,
  metadata      TEXT NOT NULL DEFAULT '{}',
  graph         TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_nodes_type ON nodes(type);
CREATE INDEX IF NOT EXISTS idx_nodes_label ON nodes(label);
CREATE INDEX IF NOT EXISTS idx_edges_source ON edges(source);
CREATE INDEX IF NOT EXISTS idx_edges_target ON edges(target);
CREATE INDEX IF NOT EXISTS idx_edges_type ON edges(type);
CREATE INDEX IF NOT EXISTS idx_embeddings_kind ON embeddings(kind);
CREATE INDEX IF NOT EXISTS idx_episodes_timestamp ON episodes(timestamp);
CREATE INDEX IF NOT EXISTS idx_episodes_source ON episodes(source);
CREATE INDEX IF NOT EXISTS idx_episode_entities_node ON episode_entities(node_id);
CREATE INDEX IF NOT EXISTS idx_snapshots_created ON snapshots(created_at);
"""


# ── Row conversion ────────────────────────────────────────────


def _row_to_node(row: sqlite3.Row) -> Node:
    return Node(
        id=row["id"],
        label=row["label"],
        type=row["type"],
        aliases=json.loads(row["aliases"]),
        first_seen=row["first_seen"],
        last_reinforced=row["last_reinforced"],
        mention_count=row["mention_count"],
        reinforcement_count=row["reinforcement_count"],
        source_files=json.loads(row["source_files"]),
        excerpts=[Excerpt(**e) for e in json.loads(row["excerpts"])],
    )


def _row_to_edge(row: sqlite3.Row) -> Edge:
    return Edge(
        id=row["id"],
        source=row["source"],
        target=row["target"],
        type=row["type"],
        directed=bool(row["directed"]),
        weight=row["weight"],
        base_weight=row["base_weight"],
        reinforcement_count=row["reinforcement_count"],
        first_formed=row["first_formed"],
        last_reinforced=row["last_reinforced"],
        stability=row["stability"],
        evidence=[Evidence(**e) for e in json.loads(row["evidence"])],
    )


def _row_to_pending(row: sqlite3.Row) -> PendingEdge:
    return PendingEdge(
        source=row["source"],
        target=row["target"],
        type=row["type"],
        count=row["count"],
        first_seen=row["first_seen"],
        evidence=[Evidence(**e) for e in json.loads(row["evidence"])],
    )


def _row_to_episode(row: sqlite3.Row) -> Episode:
    return Episode(
        id=row["id"],
        timestamp=row["timestamp"],
        end_timestamp=row["end_timestamp"],
        type=row["type"],
        title=row["title"],
        summary=row["summary"],
        content=row["content"],
        sequence=row["sequence"],
        parent_id=row["parent_id"],
        importance=row["importance"],
        access_count=row["access_count"],
        last_accessed=row["last_accessed"],
        source=row["source"],
        source_type=row["source_type"],
    )


def _row_to_procedure(row: sqlite3.Row) -> Procedure:
    return Procedure(
        id=row["id"],
        statement=row["statement"],
        type=row["type"],
        trigger_keywords=json.loads(row["trigger_keywords"]),
        trigger_contexts=json.loads(row["trigger_contexts"]),
        source_episodes=json.loads(row["source_episodes"]),
        source_nodes=json.loads(row["source_nodes"]),
        confidence=row["confidence"],
        stability=row["stability"],
        applications=row["applications"],
        contradictions=row["contradictions"],
        review=ReviewState(row["review"]),
        last_applied=row["last_applied"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_snapshot(row: sqlite3.Row) -> Snapshot:
    return Snapshot(
        id=row["id"],
        trigger=row["trigger"],
        created_at=row["created_at"],
        node_count=row["node_count"],
        edge_count=row["edge_count"],
        episode_count=row["episode_count"],
        metadata=json.loads(row["metadata"]),
    )


def _config_to_dict(config: GraphConfig) -> dict[str, Any]:
    return asdict(config)


def _config_from_dict(data: dict[str, Any]) -> GraphConfig:
    weights = data.get("base_weights", {})
    return GraphConfig(
        decay_rate=data.get("decay_rate", 0.015),
        reinforcement_boost=data.get("reinforcement_boost", 1.5),
        visibility_threshold=data.get("visibility_threshold", 0.05),
        co_occurrence_threshold=data.get("co_occurrence_threshold", 2),
        base_weights=BaseWeights(**weights) if weights else BaseWeights(),
    )


class GraphStore:
    """SQLite-backed store for nodes, edges, episodes, procedures, embeddings and snapshots."""

    def __init__(self, db_path: Path | str | None = None, config: GraphConfig | None = None) -> None:
        self.db_path = str(db_path) if db_path else ":memory:"
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._depth = 0
        self._conn = sqlite3.connect(self.db_path, isolation_level=None, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_database()

        if config is not None:
            self.config = config
        else:
            stored = self.get_meta("config")
            self.config = _config_from_dict(json.loads(stored)) if stored else GraphConfig()
        self.set_meta("config", json.dumps(_config_to_dict(self.config)))

    # ── Initialization ────────────────────────────────────────

    def _init_database(self) -> None:
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA_SQL)
        if self.get_meta("schema_version") is None:
            self.set_meta("schema_version", str(SCHEMA_VERSION))
            self.set_meta("created_at", now_iso())

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Serialize writers; nested calls join the outermost transaction."""
        with self._lock:
            outer = self._depth == 0
            if outer:
                self._conn.execute("BEGIN")
            self._depth += 1
            try:
                yield
            except BaseException:
                self._depth -= 1
                if outer:
                    self._conn.execute("ROLLBACK")
                raise
            self._depth -= 1
            if outer:
                self._conn.execute("COMMIT")

    def _query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def _execute(self, sql: str, params: tuple | list = ()) -> int:
        with self.transaction():
            return self._conn.execute(sql, params).rowcount

    def _count(self, table: str) -> int:
        return self._query_one(f"SELECT COUNT(*) AS c FROM {table}")["c"]

    # ── Nodes ─────────────────────────────────────────────────

    def get_node(self, id: str) -> Node | None:
        row = self._query_one("SELECT * FROM nodes WHERE id = ?", (id,))
        return _row_to_node(row) if row else None

    def require_node(self, id: str) -> Node:
        node = self.get_node(id)
        if node is None:
            raise NotFound("node", id)
        return node

    def find_node(self, label: str) -> Node | None:
        """Case-insensitive lookup by label, then by alias."""
        needle = label.lower().strip()
        row = self._query_one(
            "SELECT * FROM nodes WHERE LOWER(label) = ? ORDER BY rowid LIMIT 1", (needle,)
        )
        if row:
            return _row_to_node(row)
        for node in self.list_nodes():
            if any(a.lower() == needle for a in node.aliases):
                return node
        return None

    def list_nodes(
        self,
        type: str | None = None,
        label: str | None = None,
    ) -> list[Node]:
        """List nodes in insertion order, which the resolver relies on."""
        sql = "SELECT * FROM nodes"
        conditions: list[str] = []
        params: list[Any] = []
        if type:
            conditions.append("type = ?")
            params.append(type)
        if label:
            conditions.append("LOWER(label) LIKE ?")
            params.append(f"%{label.lower()}%")
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY rowid"
        return [_row_to_node(r) for r in self._query(sql, params)]

    def put_node(self, node: Node) -> None:
        if node.mention_count < node.reinforcement_count or node.reinforcement_count < 0:
            raise ValidationError(
                f"node {node.id}: mention_count must be >= reinforcement_count >= 0"
            )
        self._execute(
            """INSERT INTO nodes
               (id, label, type, aliases, first_seen, last_reinforced,
                mention_count, reinforcement_count, source_files, excerpts)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 label = excluded.label, type = excluded.type, aliases = excluded.aliases,
                 first_seen = excluded.first_seen, last_reinforced = excluded.last_reinforced,
                 mention_count = excluded.mention_count,
                 reinforcement_count = excluded.reinforcement_count,
                 source_files = excluded.source_files, excerpts = excluded.excerpts""",
            (
                node.id,
                node.label,
                node.type,
                json.dumps(node.aliases),
                node.first_seen,
                node.last_reinforced,
                node.mention_count,
                node.reinforcement_count,
                json.dumps(node.source_files),
                json.dumps([asdict(e) for e in node.excerpts]),
            ),
        )

    def delete_node(self, id: str) -> None:
        with self.transaction():
            if self._execute("DELETE FROM nodes WHERE id = ?", (id,)) == 0:
                raise NotFound("node", id)
            self._execute("DELETE FROM edges WHERE source = ? OR target = ?", (id, id))
            self._execute("DELETE FROM embeddings WHERE id = ?", (id,))

    def node_count(self) -> int:
        return self._count("nodes")

    # ── Edges ─────────────────────────────────────────────────

    def get_edge(self, id: str) -> Edge | None:
        row = self._query_one("SELECT * FROM edges WHERE id = ?", (id,))
        return _row_to_edge(row) if row else None

    def list_edges(
        self,
        type: str | None = None,
        source: str | None = None,
        target: str | None = None,
        node: str | None = None,
    ) -> list[Edge]:
        sql = "SELECT * FROM edges"
        conditions: list[str] = []
        params: list[Any] = []
        if type:
            conditions.append("type = ?")
            params.append(type)
        if source:
            conditions.append("source = ?")
            params.append(source)
        if target:
            conditions.append("target = ?")
            params.append(target)
        if node:
            conditions.append("(source = ? OR target = ?)")
            params.extend([node, node])
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY rowid"
        return [_row_to_edge(r) for r in self._query(sql, params)]

    def put_edge(self, edge: Edge) -> None:
        self._execute(
            """INSERT INTO edges
               (id, source, target, type, directed, weight, base_weight, reinforcement_count,
                first_formed, last_reinforced, stability, evidence)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 source = excluded.source, target = excluded.target, type = excluded.type,
                 directed = excluded.directed, weight = excluded.weight,
                 base_weight = excluded.base_weight,
                 reinforcement_count = excluded.reinforcement_count,
                 first_formed = excluded.first_formed, last_reinforced = excluded.last_reinforced,
                 stability = excluded.stability, evidence = excluded.evidence""",
            (
                edge.id,
                edge.source,
                edge.target,
                edge.type,
                1 if edge.directed else 0,
                min(max(edge.weight, 0.0), edge.base_weight),
                edge.base_weight,
                edge.reinforcement_count,
                edge.first_formed,
                edge.last_reinforced,
                edge.stability,
                json.dumps([asdict(e) for e in edge.evidence]),
            ),
        )

    def delete_edge(self, id: str) -> None:
        if self._execute("DELETE FROM edges WHERE id = ?", (id,)) == 0:
            raise NotFound("edge", id)

    def edge_count(self) -> int:
        return self._count("edges")

    # ── Pending edges ─────────────────────────────────────────

    def get_pending_edge(self, source: str, target: str, type: str) -> PendingEdge | None:
        row = self._query_one(
            "SELECT * FROM pending_edges WHERE source = ? AND target = ? AND type = ?",
            (source, target, type),
        )
        return _row_to_pending(row) if row else None

    def list_pending_edges(self) -> list[PendingEdge]:
        return [_row_to_pending(r) for r in self._query("SELECT * FROM pending_edges ORDER BY rowid")]

    def put_pending_edge(self, pending: PendingEdge) -> None:
        self._execute(
            """INSERT INTO pending_edges (source, target, type, count, first_seen, evidence)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT(source, target, type) DO UPDATE SET
                 count = excluded.count, evidence = excluded.evidence""",
            (
                pending.source,
                pending.target,
                pending.type,
                pending.count,
                pending.first_seen,
                json.dumps([asdict(e) for e in pending.evidence]),
            ),
        )

    def delete_pending_edge(self, source: str, target: str, type: str) -> None:
        self._execute(
            "DELETE FROM pending_edges WHERE source = ? AND target = ? AND type = ?",
            (source, target, type),
        )

    # ── File tracking ─────────────────────────────────────────

    def get_file_hash(self, path: str) -> FileHash | None:
        row = self._query_one("SELECT * FROM processed_files WHERE path = ?", (path,))
        return FileHash(row["path"], row["hash"], row["last_processed"]) if row else None

    def list_file_hashes(self) -> list[FileHash]:
        rows = self._query("SELECT * FROM processed_files ORDER BY path")
        return [FileHash(r["path"], r["hash"], r["last_processed"]) for r in rows]

    def put_file_hash(self, file_hash: FileHash) -> None:
        self._execute(
            """INSERT OR REPLACE INTO processed_files (path, hash, last_processed)
               VALUES (?, ?, ?)""",
            (file_hash.path, file_hash.hash, file_hash.last_processed),
        )

    # ── Embeddings ────────────────────────────────────────────

    def put_embedding(
        self, id: str, kind: str, content: str, vector: np.ndarray | list[float], provider: str
    ) -> None:
        vec = np.asarray(vector, dtype=np.float32)
        self._execute(
            """INSERT OR REPLACE INTO embeddings
               (id, kind, content, vector, dimensions, provider, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (id, kind, content, vec.tobytes(), int(vec.shape[0]), provider, now_iso()),
        )

    def get_embedding(self, id: str) -> dict[str, Any] | None:
        row = self._query_one("SELECT * FROM embeddings WHERE id = ?", (id,))
        if not row:
            return None
        return {
            "id": row["id"],
            "kind": row["kind"],
            "content": row["content"],
            "vector": np.frombuffer(row["vector"], dtype=np.float32),
            "provider": row["provider"],
        }

    def search_similar(
        self,
        query: np.ndarray | list[float],
        kind: str | None = None,
        limit: int = 10,
        min_similarity: float = 0.0,
    ) -> list[tuple[str, float]]:
        """Cosine similarity search. Vectors of another dimensionality are skipped."""
        q = np.asarray(query, dtype=np.float32)
        sql = "SELECT id, vector, dimensions FROM embeddings"
        params: list[Any] = []
        if kind:
            sql += " WHERE kind = ?"
            params.append(kind)
        rows = [r for r in self._query(sql, params) if r["dimensions"] == q.shape[0]]
        if not rows:
            return []

        matrix = np.stack([np.frombuffer(r["vector"], dtype=np.float32) for r in rows])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(q)
        with np.errstate(divide="ignore", invalid="ignore"):
            sims = np.where(norms > 0, matrix @ q / norms, 0.0)

        scored = [
            (r["id"], float(s)) for r, s in zip(rows, sims) if float(s) >= min_similarity
        ]
        scored.sort(key=lambda x: x[1], reverse=True)
        return scored[:limit]

    def embedded_ids(self, kind: str | None = None) -> set[str]:
        if kind:
            return {r["id"] for r in self._query("SELECT id FROM embeddings WHERE kind = ?", (kind,))}
        return {r["id"] for r in self._query("SELECT id FROM embeddings")}

    def delete_embedding(self, id: str) -> None:
        self._execute("DELETE FROM embeddings WHERE id = ?", (id,))

    def embedding_count(self) -> int:
        return self._count("embeddings")

    # ── Episodes ──────────────────────────────────────────────

    def put_episode(self, episode: Episode) -> None:
        self._execute(
            """INSERT INTO episodes
               (id, timestamp, end_timestamp, type, title, summary, content, sequence,
                parent_id, importance, access_count, last_accessed, source, source_type)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 timestamp = excluded.timestamp, end_timestamp = excluded.end_timestamp,
                 type = excluded.type, title = excluded.title, summary = excluded.summary,
                 content = excluded.content, sequence = excluded.sequence,
                 parent_id = excluded.parent_id, importance = excluded.importance,
                 access_count = excluded.access_count, last_accessed = excluded.last_accessed,
                 source = excluded.source, source_type = excluded.source_type""",
            (
                episode.id,
                episode.timestamp,
                episode.end_timestamp,
                episode.type,
                episode.title,
                episode.summary,
                episode.content,
                episode.sequence,
                episode.parent_id,
                min(max(episode.importance, 0.0), 1.0),
                episode.access_count,
                episode.last_accessed,
                episode.source,
                episode.source_type,
            ),
        )

    def get_episode(self, id: str) -> Episode | None:
        row = self._query_one("SELECT * FROM episodes WHERE id = ?", (id,))
        return self._populate_links(_row_to_episode(row)) if row else None

    def list_episodes(
        self,
        type: str | None = None,
        since: str | None = None,
        until: str | None = None,
        source: str | None = None,
        has_entity: str | None = None,
        limit: int | None = None,
    ) -> list[Episode]:
        sql = "SELECT DISTINCT e.* FROM episodes e"
        conditions: list[str] = []
        params: list[Any] = []
        if has_entity:
            sql += " JOIN episode_entities ee ON e.id = ee.episode_id"
            conditions.append("ee.node_id = ?")
            params.append(has_entity)
        if type:
            conditions.append("e.type = ?")
            params.append(type)
        if since:
            conditions.append("e.timestamp >= ?")
            params.append(since)
        if until:
            conditions.append("e.timestamp <= ?")
            params.append(until)
        if source:
            conditions.append("e.source = ?")
            params.append(source)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY e.timestamp DESC, e.sequence"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._populate_links(_row_to_episode(r)) for r in self._query(sql, params)]

    def delete_episode(self, id: str) -> None:
        with self.transaction():
            if self._execute("DELETE FROM episodes WHERE id = ?", (id,)) == 0:
                raise NotFound("episode", id)
            self._execute("DELETE FROM embeddings WHERE id = ?", (id,))

    def episode_count(self) -> int:
        return self._count("episodes")

    def link_episode_entity(self, episode_id: str, node_id: str, role: str) -> None:
        if role not in EPISODE_ROLES:
            raise ValidationError(f"unknown episode role: {role}")
        self._execute(
            "INSERT OR REPLACE INTO episode_entities (episode_id, node_id, role) VALUES (?, ?, ?)",
            (episode_id, node_id, role),
        )

    def unlink_episode_entity(self, episode_id: str, node_id: str, role: str) -> None:
        self._execute(
            "DELETE FROM episode_entities WHERE episode_id = ? AND node_id = ? AND role = ?",
            (episode_id, node_id, role),
        )

    def get_episode_entities(self, episode_id: str) -> list[EpisodeLink]:
        rows = self._query(
            "SELECT episode_id, node_id, role FROM episode_entities WHERE episode_id = ? ORDER BY rowid",
            (episode_id,),
        )
        return [EpisodeLink(r["episode_id"], r["node_id"], r["role"]) for r in rows]

    def get_entity_episodes(self, node_id: str) -> list[Episode]:
        return self.list_episodes(has_entity=node_id)

    def touch_episode(self, id: str, now: datetime | None = None) -> None:
        """Record a read: bump access_count and last_accessed."""
        self._execute(
            "UPDATE episodes SET access_count = access_count + 1, last_accessed = ? WHERE id = ?",
            (now_iso(now), id),
        )

    def _populate_links(self, episode: Episode) -> Episode:
        for link in self.get_episode_entities(episode.id):
            if link.role == "participant":
                episode.participants.append(link.node_id)
            elif link.role == "topic":
                episode.topics.append(link.node_id)
            elif link.role == "outcome":
                episode.outcomes.append(link.node_id)
        return episode

    # ── Procedures ────────────────────────────────────────────

    def put_procedure(self, proc: Procedure) -> None:
        self._execute(
            """INSERT OR REPLACE INTO procedures
               (id, statement, type, trigger_keywords, trigger_contexts, source_episodes,
                source_nodes, confidence, stability, applications, contradictions, review,
                last_applied, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                proc.id,
                proc.statement,
                proc.type,
                json.dumps(proc.trigger_keywords),
                json.dumps(proc.trigger_contexts),
                json.dumps(proc.source_episodes),
                json.dumps(proc.source_nodes),
                min(max(proc.confidence, 0.01), 0.99),
                min(max(proc.stability, 0.0), 2.0),
                proc.applications,
                proc.contradictions,
                proc.review.value,
                proc.last_applied,
                proc.created_at,
                proc.updated_at,
            ),
        )

    def get_procedure(self, id: str) -> Procedure | None:
        row = self._query_one("SELECT * FROM procedures WHERE id = ?", (id,))
        return _row_to_procedure(row) if row else None

    def list_procedures(self, type: str | None = None, flagged_only: bool = False) -> list[Procedure]:
        sql = "SELECT * FROM procedures"
        conditions: list[str] = []
        params: list[Any] = []
        if type:
            conditions.append("type = ?")
            params.append(type)
        if flagged_only:
            conditions.append("review = ?")
            params.append(ReviewState.FLAGGED.value)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY confidence DESC, rowid"
        return [_row_to_procedure(r) for r in self._query(sql, params)]

    def delete_procedure(self, id: str) -> None:
        if self._execute("DELETE FROM procedures WHERE id = ?", (id,)) == 0:
            raise NotFound("procedure", id)

    # ── Snapshots ─────────────────────────────────────────────

    def create_snapshot(
        self,
        trigger: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Snapshot:
        """Capture counts and a frozen copy of every node and edge.

        Edge weights are frozen at their effective (decayed) value at ``now``.
        """
        now = now or datetime.now(timezone.utc)
        with self.transaction():
            graph = self.export_graph()
            for edge in graph.edges.values():
                edge.weight = current_weight(edge, now, self.config)
            snapshot = Snapshot(
                id=f"snap-{uuid.uuid4().hex[:12]}",
                trigger=trigger,
                created_at=now_iso(now),
                node_count=len(graph.nodes),
                edge_count=len(graph.edges),
                episode_count=self.episode_count(),
                metadata=dict(metadata or {}),
            )
            self._execute(
                """INSERT INTO snapshots
                   (id, trigger, created_at, node_count, edge_count, episode_count, metadata, graph)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    snapshot.id,
                    snapshot.trigger,
                    snapshot.created_at,
                    snapshot.node_count,
                    snapshot.edge_count,
                    snapshot.episode_count,
                    json.dumps(snapshot.metadata),
                    json.dumps(graph.to_dict()),
                ),
            )
        logger.info(
            "Snapshot %s (%s): %d nodes, %d edges",
            snapshot.id,
            trigger,
            snapshot.node_count,
            snapshot.edge_count,
        )
        return snapshot

    def get_snapshot(self, id: str) -> Snapshot | None:
        row = self._query_one(
            """SELECT id, trigger, created_at, node_count, edge_count, episode_count, metadata
               FROM snapshots WHERE id = ?""",
            (id,),
        )
        return _row_to_snapshot(row) if row else None

    def list_snapshots(
        self, since: str | None = None, until: str | None = None, limit: int | None = None
    ) -> list[Snapshot]:
        sql = """SELECT id, trigger, created_at, node_count, edge_count, episode_count, metadata
                 FROM snapshots"""
        conditions: list[str] = []
        params: list[Any] = []
        if since:
            conditions.append("created_at >= ?")
            params.append(since)
        if until:
            conditions.append("created_at <= ?")
            params.append(until)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_snapshot(r) for r in self._query(sql, params)]

    def get_snapshot_graph(self, id: str) -> GraphExport:
        row = self._query_one("SELECT graph FROM snapshots WHERE id = ?", (id,))
        if row is None:
            raise NotFound("snapshot", id)
        return GraphExport.from_dict(json.loads(row["graph"]))

    # ── Bulk operations ───────────────────────────────────────

    def export_graph(self) -> GraphExport:
        """Export nodes, edges, the file ledger and config as one value."""
        with self._lock:
            return GraphExport(
                version=SCHEMA_VERSION,
                last_consolidated=self.get_meta("last_consolidated") or "",
                processed_files=self.list_file_hashes(),
                nodes={n.id: n for n in self.list_nodes()},
                edges={e.id: e for e in self.list_edges()},
                config=_config_to_dict(self.config),
            )

    def import_graph(self, graph: GraphExport) -> None:
        """Replace nodes, edges and the file ledger with ``graph``."""
        with self.transaction():
            self._conn.execute("DELETE FROM edges")
            self._conn.execute("DELETE FROM episode_entities")
            self._conn.execute("DELETE FROM nodes")
            self._conn.execute("DELETE FROM processed_files")
            for node in graph.nodes.values():
                self.put_node(node)
            for edge in graph.edges.values():
                self.put_edge(edge)
            for file_hash in graph.processed_files:
                self.put_file_hash(file_hash)
            if graph.config:
                self.config = _config_from_dict(graph.config)
                self.set_meta("config", json.dumps(graph.config))
            self.set_meta("last_consolidated", graph.last_consolidated)
        logger.info("Imported graph: %d nodes, %d edges", len(graph.nodes), len(graph.edges))

    def save_json(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.export_graph().to_dict(), indent=2), encoding="utf-8")

    def load_json(self, path: Path) -> None:
        self.import_graph(GraphExport.from_dict(json.loads(path.read_text(encoding="utf-8"))))

    # ── Metadata ──────────────────────────────────────────────

    def get_meta(self, key: str) -> str | None:
        row = self._query_one("SELECT value FROM meta WHERE key = ?", (key,))
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        self._execute("INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value))

    # ── Lifecycle ─────────────────────────────────────────────

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> GraphStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
