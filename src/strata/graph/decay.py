"""Time-based edge decay and reinforcement stability.

Pure functions: nothing here writes to the store except ``decay_all``, which
is the explicit sweep run at the end of consolidation. Read paths call
``current_weight`` directly so they never depend on a stale cached weight.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from strata.config import GraphConfig

if TYPE_CHECKING:
    from strata.graph.models import Edge
    from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)

_MS_PER_DAY = 86_400_000


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO date or datetime (``Z`` suffix allowed) as an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def now_iso(now: datetime | None = None) -> str:
    return parse_timestamp(now or datetime.now(timezone.utc)).isoformat()


def days_between(a: str | datetime, b: str | datetime) -> int:
    """Absolute whole days between two timestamps, independent of order."""
    delta_ms = abs((parse_timestamp(a) - parse_timestamp(b)).total_seconds() * 1000)
    return math.floor(delta_ms / _MS_PER_DAY)


def stability(reinforcement_count: int, boost: float) -> float:
    """Stability grows logarithmically with reinforcement and stretches the half-life."""
    return 1 + boost * math.log(max(reinforcement_count, 0) + 1)


def current_weight(edge: Edge, now: datetime, config: GraphConfig) -> float:
    """Effective weight of ``edge`` at ``now``, always within ``[0, base_weight]``."""
    days = days_between(edge.last_reinforced, now)
    s = stability(edge.reinforcement_count, config.reinforcement_boost)
    weight = edge.base_weight * math.exp(-(config.decay_rate * days) / s)
    return min(max(weight, 0.0), max(edge.base_weight, 0.0))


@dataclass
class DecayReport:
    decayed: int = 0
    dormant: int = 0


def decay_all(store: GraphStore, now: datetime) -> DecayReport:
    """Recompute and persist the weight of every edge."""
    report = DecayReport()
    config = store.config
    with store.transaction():
        for edge in store.list_edges():
            before = edge.weight
            edge.weight = current_weight(edge, now, config)
            if edge.weight < before:
                report.decayed += 1
            if edge.weight < config.visibility_threshold:
                report.dormant += 1
            store.put_edge(edge)
    logger.info("Decay sweep: %d decayed, %d dormant", report.decayed, report.dormant)
    return report


def fading_edges(store: GraphStore, now: datetime) -> list[Edge]:
    """Edges still visible but within 2x of the visibility threshold."""
    threshold = store.config.visibility_threshold
    fading = []
    for edge in store.list_edges():
        w = current_weight(edge, now, store.config)
        if threshold <= w <= threshold * 2:
            edge.weight = w
            fading.append(edge)
    return fading
