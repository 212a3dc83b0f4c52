"""Procedures — learned heuristics whose confidence follows feedback.

Confidence moves asymptotically toward 0.99 on positive feedback and
geometrically toward 0.01 on negative feedback. A procedure that keeps being
contradicted is flagged for human review, and stays flagged.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from strata.errors import NotFound, ValidationError
from strata.graph.decay import days_between, now_iso
from strata.graph.models import PROCEDURE_TYPES, Procedure
from strata.graph.resolve import extract_query_terms

if TYPE_CHECKING:
    from strata.graph.store import GraphStore

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT = 0.7
CONTEXT_WEIGHT = 0.3
MIN_CONFIDENCE = 0.01
MAX_CONFIDENCE = 0.99
MAX_STABILITY = 2.0
FLAG_CONTRADICTIONS = 3
FLAG_CONFIDENCE = 0.3

FEEDBACK = ("positive", "negative", "neutral")

_KEYWORD_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass
class ProcedureMatch:
    procedure: Procedure
    score: float
    matched_keywords: list[str] = field(default_factory=list)
    matched_contexts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.procedure.id,
            "statement": self.procedure.statement,
            "type": self.procedure.type,
            "confidence": self.procedure.confidence,
            "score": self.score,
            "matched_keywords": self.matched_keywords,
            "matched_contexts": self.matched_contexts,
        }


def score_procedure(
    proc: Procedure,
    terms: list[str],
    contexts: list[str],
    now: datetime,
) -> ProcedureMatch:
    keyword_hits = [k for k in proc.trigger_keywords if any(k in q or q in k for q in terms)]
    keyword_score = len(keyword_hits) / max(len(proc.trigger_keywords), 1)

    wanted = {c.lower() for c in contexts}
    context_hits = [c for c in proc.trigger_contexts if c.lower() in wanted]
    context_score = len(context_hits) / max(len(proc.trigger_contexts), 1)

    score = (KEYWORD_WEIGHT * keyword_score + CONTEXT_WEIGHT * context_score) * proc.confidence
    if proc.last_applied:
        score *= max(0.5, 1 - days_between(proc.last_applied, now) / 365)
    return ProcedureMatch(proc, score, keyword_hits, context_hits)


def find_relevant(
    store: GraphStore,
    query: str,
    contexts: list[str] | None = None,
    limit: int = 5,
    min_score: float = 0.3,
    types: list[str] | None = None,
    now: datetime | None = None,
) -> list[ProcedureMatch]:
    """Procedures triggered by ``query`` and ``contexts``, best first."""
    contexts = contexts or []
    terms = extract_query_terms(query)
    if not terms and not contexts:
        return []
    now = now or datetime.now(timezone.utc)

    matches = []
    for proc in store.list_procedures():
        if types and proc.type not in types:
            continue
        match = score_procedure(proc, terms, contexts, now)
        if match.score >= min_score:
            matches.append(match)
    matches.sort(key=lambda m: m.score, reverse=True)
    return matches[:limit]


def apply(
    store: GraphStore,
    procedure_id: str,
    feedback: str,
    now: datetime | None = None,
) -> Procedure:
    """Record the outcome of applying a procedure and adjust its confidence."""
    if feedback not in FEEDBACK:
        raise ValidationError(f"unknown feedback {feedback!r}; expected one of {', '.join(FEEDBACK)}")

    with store.transaction():
        proc = store.get_procedure(procedure_id)
        if proc is None:
            raise NotFound("procedure", procedure_id)

        stamp = now_iso(now)
        proc.last_applied = stamp
        proc.updated_at = stamp

        if feedback == "positive":
            proc.applications += 1
            proc.confidence = min(MAX_CONFIDENCE, proc.confidence + 0.1 * (1 - proc.confidence))
            proc.stability = min(MAX_STABILITY, proc.stability + 0.1)
        elif feedback == "negative":
            proc.contradictions += 1
            proc.confidence = max(MIN_CONFIDENCE, proc.confidence * 0.8)
            if proc.contradictions >= FLAG_CONTRADICTIONS and proc.confidence < FLAG_CONFIDENCE:
                if not proc.flagged_for_review:
                    logger.warning("Procedure %s flagged for review: %s", proc.id, proc.statement)
                proc.flag_for_review()

        store.put_procedure(proc)
    return proc


def default_keywords(statement: str) -> list[str]:
    tokens = _KEYWORD_SPLIT.split(statement.lower())
    return list(dict.fromkeys(t for t in tokens if len(t) >= 3))


def create_procedure(
    store: GraphStore,
    statement: str,
    type: str = "insight",
    keywords: list[str] | None = None,
    contexts: list[str] | None = None,
    source_episodes: list[str] | None = None,
    source_nodes: list[str] | None = None,
    now: datetime | None = None,
) -> Procedure:
    statement = (statement or "").strip()
    if not statement:
        raise ValidationError("procedure statement must not be empty")
    if type not in PROCEDURE_TYPES:
        raise ValidationError(f"unknown procedure type {type!r}")

    stamp = now_iso(now)
    proc = Procedure(
        id="proc-" + hashlib.sha256(statement.encode("utf-8")).hexdigest()[:12],
        statement=statement,
        type=type,
        created_at=stamp,
        updated_at=stamp,
        trigger_keywords=[k.lower() for k in keywords] if keywords else default_keywords(statement),
        trigger_contexts=list(contexts or []),
        source_episodes=list(source_episodes or []),
        source_nodes=list(source_nodes or []),
    )
    store.put_procedure(proc)
    logger.info("Created procedure %s (%s)", proc.id, proc.type)
    return proc
