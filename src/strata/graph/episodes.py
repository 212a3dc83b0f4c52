"""Conversation ingest — chunk a message log into episodes and link them to entities."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from strata.errors import ProviderError, ValidationError
from strata.graph.decay import now_iso, parse_timestamp
from strata.graph.models import Episode, Excerpt
from strata.graph.mutate import create_node, reinforce_node
from strata.graph.resolve import resolve

if TYPE_CHECKING:
    from strata.embeddings import EmbeddingProvider
    from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)

MAX_MESSAGES = 20
MAX_TOKENS = 4000
CHARS_PER_TOKEN = 4
GAP_SECONDS = 30 * 60
TITLE_CHARS = 80

DEDUPLICATE_MODES = ("session_id", "content_hash", "none")


@dataclass
class Message:
    role: str
    content: str
    timestamp: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(role=data["role"], content=data["content"], timestamp=data.get("timestamp"))


@dataclass
class Chunk:
    messages: list[Message]
    start_time: str | None = None
    end_time: str | None = None
    topic: str | None = None

    @property
    def text(self) -> str:
        return "\n".join(f"{m.role}: {m.content}" for m in self.messages)


def estimate_tokens(messages: list[Message]) -> int:
    chars = sum(len(m.content) + len(m.role) + 2 for m in messages)
    return -(-chars // CHARS_PER_TOKEN)


def _seconds(message: Message) -> float | None:
    if not message.timestamp:
        return None
    try:
        return parse_timestamp(message.timestamp).timestamp()
    except ValueError:
        return None


def _topic(messages: list[Message], topic: str | None) -> str | None:
    if topic:
        return topic
    first = next((m for m in messages if m.role == "user"), None)
    if first is None:
        return None
    text = first.content.strip()
    return text if len(text) <= TITLE_CHARS else text[: TITLE_CHARS - 3] + "..."


def chunk_conversation(
    messages: list[Message],
    max_messages: int = MAX_MESSAGES,
    max_tokens: int = MAX_TOKENS,
    topic: str | None = None,
) -> list[Chunk]:
    """Split a conversation into chunks.

    A chunk ends at a gap of more than 30 minutes, or when adding the next
    message would exceed ``max_messages`` or ``max_tokens``. An assistant reply
    that closes a user turn is kept with it even if that overshoots the limit.
    """
    chunks: list[Chunk] = []
    current: list[Message] = []

    def flush() -> None:
        nonlocal current
        if current:
            chunks.append(
                Chunk(current, current[0].timestamp, current[-1].timestamp, _topic(current, topic))
            )
            current = []

    def closes_pair(msg: Message) -> bool:
        return msg.role == "assistant" and bool(current) and current[-1].role == "user"

    for msg in messages:
        if current:
            prev, cur = _seconds(current[-1]), _seconds(msg)
            if prev is not None and cur is not None and cur - prev > GAP_SECONDS:
                flush()

        over_count = len(current) >= max_messages
        over_tokens = bool(current) and estimate_tokens([*current, msg]) > max_tokens
        if over_count or over_tokens:
            if closes_pair(msg):
                current.append(msg)
                flush()
                continue
            flush()

        current.append(msg)

    flush()
    return chunks


def chunk_to_episode(chunk: Chunk, sequence: int, source: str, now: datetime) -> Episode:
    content = chunk.text
    return Episode(
        id=hashlib.sha256(f"{source}\n{sequence}\n{content}".encode("utf-8")).hexdigest()[:16],
        timestamp=chunk.start_time or now_iso(now),
        end_timestamp=chunk.end_time,
        type="conversation",
        title=chunk.topic or f"Conversation {sequence + 1}",
        content=content,
        sequence=sequence,
        source=source,
        source_type="conversation",
    )


@dataclass
class IngestResult:
    chunks_processed: int = 0
    episodes_created: int = 0
    nodes_created: int = 0
    nodes_reinforced: int = 0
    duplicates_skipped: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)


async def ingest_conversation(
    store: GraphStore,
    messages: list[Message],
    metadata: dict[str, Any] | None = None,
    extract_entities: Callable[[Chunk], list] | None = None,
    provider: EmbeddingProvider | None = None,
    deduplicate_by: str = "session_id",
    now: datetime | None = None,
) -> IngestResult:
    """Write one ``conversation`` episode per chunk.

    ``extract_entities`` maps a chunk to raw entity candidates (``text``,
    ``type``, ``confidence``); they are resolved against the graph and linked
    to the episode. Episode embeddings are best-effort.
    """
    if deduplicate_by not in DEDUPLICATE_MODES:
        raise ValidationError(f"unknown deduplication mode {deduplicate_by!r}")
    metadata = metadata or {}
    now = now or datetime.now(timezone.utc)
    result = IngestResult()
    if not messages:
        return result

    session_id = metadata.get("session_id")
    source = session_id or "conversation"

    if deduplicate_by == "session_id" and session_id:
        existing = store.list_episodes(source=session_id)
        if existing:
            result.duplicates_skipped = len(existing)
            logger.info("Session %s already ingested (%d episodes)", session_id, len(existing))
            return result
    elif deduplicate_by == "content_hash":
        digest = hashlib.sha256(
            "\n".join(f"{m.role}:{m.content}" for m in messages).encode("utf-8")
        ).hexdigest()[:32]
        key = f"ingest_hash_{digest}"
        if store.get_meta(key):
            result.duplicates_skipped = 1
            return result
        store.set_meta(key, now_iso(now))

    stamp = now_iso(now)
    for sequence, chunk in enumerate(chunk_conversation(messages, topic=metadata.get("topic"))):
        result.chunks_processed += 1
        episode = chunk_to_episode(chunk, sequence, source, now)

        with store.transaction():
            store.put_episode(episode)
            result.episodes_created += 1
            for raw in extract_entities(chunk) if extract_entities else []:
                _link_entity(store, episode, raw, stamp, result)

        if provider is not None:
            try:
                vector = await provider.embed(episode.content)
            except ProviderError as e:
                logger.error("Episode embedding failed for %s: %s", episode.id, e)
                result.failures.append({"id": episode.id, "error": str(e)})
                continue
            store.put_embedding(episode.id, "episode", episode.content, vector, provider.name)

    logger.info(
        "Ingested %s: %d episodes, %d new nodes, %d reinforced",
        source,
        result.episodes_created,
        result.nodes_created,
        result.nodes_reinforced,
    )
    return result


def _link_entity(store: GraphStore, episode: Episode, raw, stamp: str, result: IngestResult) -> None:
    resolution = resolve(raw, store.list_nodes())
    if resolution is None:
        return
    excerpt = Excerpt(episode.source, raw.text, stamp)
    if resolution.is_new and store.get_node(resolution.node_id) is None:
        create_node(
            store,
            resolution.canonical_label,
            resolution.type,
            stamp,
            file=episode.source,
            excerpt=excerpt,
            id=resolution.node_id,
        )
        result.nodes_created += 1
    else:
        reinforce_node(store, resolution.node_id, episode.source, stamp, excerpt)
        result.nodes_reinforced += 1

    store.link_episode_entity(episode.id, resolution.node_id, "mentioned")
    if resolution.type == "person":
        store.link_episode_entity(episode.id, resolution.node_id, "participant")
