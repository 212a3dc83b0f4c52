"""Memory graph engine.

Dependency order, leaves first:
    models.py        # record dataclasses
    decay.py         # effective weight, stability, decay sweep
    store.py         # GraphStore (SQLite)
    mutate.py        # ids, node/edge creation and reinforcement
    resolve.py       # normalization, fuzzy matching, entity resolution
    procedures.py    # trigger matching and feedback learning
    temporal.py      # snapshot diff
    episodes.py      # conversation chunking and ingest
    consolidate.py   # markdown -> graph pipeline
    recall.py        # hybrid recall
    query.py         # neighbourhoods, clusters, brief, alerts, similarity
    insights.py      # connection suggestions, significance
"""

from strata.graph.store import GraphStore

__all__ = ["GraphStore"]
