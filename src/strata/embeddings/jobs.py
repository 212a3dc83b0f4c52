"""Batch embedding of graph nodes on a bounded worker pool."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from strata.embeddings.base import EmbeddingProvider
from strata.errors import ProviderError

if TYPE_CHECKING:
    from strata.graph.models import Node
    from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)


@dataclass
class EmbedReport:
    embedded: int = 0
    skipped: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"embedded": self.embedded, "skipped": self.skipped, "failures": self.failures}


def node_text(node: Node) -> str:
    if not node.excerpts:
        return node.label
    return f"{node.label}: " + ". ".join(e.text for e in node.excerpts)


async def embed_nodes(
    store: GraphStore,
    provider: EmbeddingProvider,
    node_ids: list[str] | None = None,
    concurrency: int = 4,
    force: bool = False,
    timeout: float | None = None,
) -> EmbedReport:
    """Embed ``node_ids`` (default: every node), at most ``concurrency`` calls in flight.

    A failing node is reported and skipped; the rest of the batch carries on.
    """
    report = EmbedReport()
    if node_ids is None:
        nodes = store.list_nodes()
    else:
        nodes = [n for n in (store.get_node(i) for i in node_ids) if n is not None]

    existing = set() if force else store.embedded_ids("node")
    todo = [n for n in nodes if n.id not in existing]
    report.skipped = len(nodes) - len(todo)
    if not todo:
        return report

    sem = asyncio.Semaphore(max(1, concurrency))

    async def _one(node: Node) -> None:
        text = node_text(node)
        async with sem:
            try:
                coro = provider.embed(text)
                vector = await (asyncio.wait_for(coro, timeout) if timeout else coro)
            except ProviderError as e:
                logger.error("Embedding failed for %s: %s", node.label, e)
                report.failures.append({"id": node.id, "error": str(e)})
                return
            except asyncio.TimeoutError:
                logger.error("Embedding timed out for %s", node.label)
                report.failures.append({"id": node.id, "error": f"timed out after {timeout}s"})
                return
        store.put_embedding(node.id, "node", text, vector, provider.name)
        report.embedded += 1

    await asyncio.gather(*(_one(n) for n in todo))
    store.set_meta("embedding_dimensions", str(provider.dimensions))
    store.set_meta("embedding_provider", provider.name)
    logger.info(
        "Embedded %d nodes with %s (%d skipped, %d failed)",
        report.embedded,
        provider.name,
        report.skipped,
        len(report.failures),
    )
    return report
