"""Entity resolution: map a raw mention onto an existing node or mint a new one.

The match cascade runs from high precision to low:

1. reject empty, single-character and ignored mentions
2. alias substitution (raw text first, then normalized text)
3. exact label match
4. exact alias match
5. fuzzy label match (edit distance for short strings, token overlap otherwise)
6. a new node, only if the extractor was confident enough

Within each step the first node in store order wins.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from strata.graph.models import Node
from strata.graph.mutate import node_id

logger = logging.getLogger(__name__)

NEW_NODE_MIN_CONFIDENCE = 0.5
SHORT_LABEL = 15
MAX_EDIT_DISTANCE = 2
MIN_TOKEN_OVERLAP = 0.5

_SMART_POSSESSIVE = re.compile(r"[’‘]s$")
_QUOTES = re.compile(r"[“”‘’\"]")
_TRAILING_DASH = re.compile(r"[—–-]+\s*$")
_LEADING_DASH = re.compile(r"^\s*[—–-]+")
_WHITESPACE = re.compile(r"\s+")
_POSSESSIVE = re.compile(r"'s$")
_TRAILING_PUNCT = re.compile(r"[.,;:!?]+$")


def _normalize_once(text: str) -> str:
    text = _SMART_POSSESSIVE.sub("", text)
    text = _QUOTES.sub("", text)
    text = _TRAILING_DASH.sub("", text)
    text = _LEADING_DASH.sub("", text)
    text = _WHITESPACE.sub(" ", text.lower().strip())
    text = _POSSESSIVE.sub("", text)
    return _TRAILING_PUNCT.sub("", text)


def normalize(text: str) -> str:
    """Canonical mention form. Repeated until stable, so ``normalize`` is idempotent."""
    previous = None
    while text != previous:
        previous = text
        text = _normalize_once(text)
    return text


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(
                min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (ca != cb))
            )
        previous = current
    return previous[-1]


def fuzzy_match(candidate: str, existing: str, max_distance: int = MAX_EDIT_DISTANCE) -> bool:
    a = normalize(candidate)
    b = normalize(existing)
    if len(a) <= SHORT_LABEL and len(b) <= SHORT_LABEL:
        return levenshtein(a, b) <= max_distance
    tokens_a = set(a.split(" "))
    tokens_b = set(b.split(" "))
    longest = max(len(tokens_a), len(tokens_b))
    return longest > 0 and len(tokens_a & tokens_b) / longest >= MIN_TOKEN_OVERLAP


@dataclass
class EntityMap:
    """User-curated alias table and ignore list."""

    aliases: dict[str, str] = field(default_factory=dict)
    ignore: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._ignored = {w.lower() for w in self.ignore}

    def is_ignored(self, normalized: str) -> bool:
        return normalized in self._ignored


def load_entity_map(path: Path | None) -> EntityMap:
    """Read an entity map JSON file. Missing or malformed files yield an empty map."""
    if path is None or not path.exists():
        return EntityMap()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return EntityMap(
            aliases=dict(data.get("aliases", {})),
            ignore=list(data.get("ignore", [])),
        )
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
        logger.warning("Malformed entity map %s: %s", path, e)
        return EntityMap()


@dataclass
class Resolution:
    node_id: str
    is_new: bool
    canonical_label: str
    type: str


def resolve(raw, nodes: Sequence[Node], entity_map: EntityMap | None = None) -> Resolution | None:
    """Resolve ``raw`` (anything with ``text``, ``type`` and ``confidence``) against ``nodes``.

    ``nodes`` must be in a stable order; the store returns insertion order.
    Returns None when the mention is rejected or too uncertain to mint a node.
    """
    entity_map = entity_map or EntityMap()
    normalized = normalize(raw.text)
    if len(normalized) <= 1 or entity_map.is_ignored(normalized):
        return None

    canonical = normalized
    if raw.text in entity_map.aliases:
        canonical = normalize(entity_map.aliases[raw.text])
    elif normalized in entity_map.aliases:
        canonical = normalize(entity_map.aliases[normalized])

    for node in nodes:
        if normalize(node.label) == canonical:
            return Resolution(node.id, False, node.label, node.type)

    for node in nodes:
        if any(normalize(a) == canonical for a in node.aliases):
            return Resolution(node.id, False, node.label, node.type)

    for node in nodes:
        if fuzzy_match(canonical, node.label):
            return Resolution(node.id, False, node.label, node.type)

    if raw.confidence > NEW_NODE_MIN_CONFIDENCE:
        return Resolution(node_id(canonical), True, canonical, raw.type)
    return None


# ── Query terms ───────────────────────────────────────────────

STOPWORDS = frozenset(
    """
    a an the is are was were be been being have has had do does did will would could
    should may might shall can to of in for on with at by from as into about between
    through after before above below and or but not no nor so if then than that this
    it its what which who how when where why all each every both few more most some any
    i me my we our you your he she they them his her just also very much
    """.split()
)

_TERM_SPLIT = re.compile(r"""[\s,;:!?()\[\]{}"']+""")


def extract_query_terms(query: str) -> list[str]:
    """Normalized, de-duplicated query terms of two or more characters, minus stopwords."""
    terms = (normalize(t) for t in _TERM_SPLIT.split(query))
    return list(dict.fromkeys(t for t in terms if len(t) >= 2 and t not in STOPWORDS))
