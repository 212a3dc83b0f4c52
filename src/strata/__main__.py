"""Entry point: python -m strata <command>

- consolidate <paths...>   Ingest markdown into the graph
- recall <query>           Hybrid recall (JSON)
- snapshots [list|create|diff]
- procedures [list|add|feedback]
- embed                    Embed every node with the configured provider
- neighbors / related / clusters   Graph structure around a node
- brief / alerts / suggest / insights
- similar <node> | --text <query>
- export <file> / import <file>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from strata.config import StrataConfig, load_config
from strata.errors import StrataError, ValidationError

logger = logging.getLogger("strata")


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def _print(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _open_store(config: StrataConfig):
    from strata.graph.store import GraphStore

    return GraphStore(config.db_path, config.graph)


def _provider(config: StrataConfig, name: str | None, required: bool = False):
    from strata.embeddings import resolve_provider

    return resolve_provider(config.embeddings, name=name, allow_none=not required)


# ── Commands ──────────────────────────────────────────────────


def _cmd_consolidate(args, config: StrataConfig) -> None:
    from strata.graph.consolidate import Consolidator

    with _open_store(config) as store:
        consolidator = Consolidator(store, config, provider=_provider(config, args.provider))
        result = asyncio.run(consolidator.run([Path(p) for p in args.paths]))
        _print(result.to_dict())


def _cmd_recall(args, config: StrataConfig) -> None:
    from strata.graph.recall import RecallEngine, RecallOptions

    options = RecallOptions(
        limit=args.limit,
        hops=args.hops,
        types=args.type or None,
        since=args.since,
        until=args.until,
        include_procedures=not args.no_procedures,
    )
    with _open_store(config) as store:
        engine = RecallEngine(store, config, _provider(config, args.provider))
        response = asyncio.run(engine.recall(" ".join(args.query), options))
        _print(response.to_dict())


def _cmd_snapshots(args, config: StrataConfig) -> None:
    from strata.graph.temporal import diff_snapshots

    with _open_store(config) as store:
        if args.action == "create":
            _print(store.create_snapshot("manual", {"note": args.note} if args.note else None).to_dict())
        elif args.action == "diff":
            if len(args.ids) != 2:
                raise ValidationError("snapshots diff needs exactly two snapshot ids")
            _print(diff_snapshots(store, args.ids[0], args.ids[1]).to_dict())
        else:
            _print([s.to_dict() for s in store.list_snapshots(limit=args.limit)])


def _cmd_procedures(args, config: StrataConfig) -> None:
    from strata.graph import procedures

    with _open_store(config) as store:
        if args.action == "add":
            proc = procedures.create_procedure(
                store,
                " ".join(args.text),
                type=args.type or "insight",
                keywords=args.keyword or None,
                contexts=args.context or None,
            )
            _print(proc.to_dict())
        elif args.action == "feedback":
            if len(args.text) != 2:
                raise ValidationError("procedures feedback needs <id> <positive|negative|neutral>")
            _print(procedures.apply(store, args.text[0], args.text[1]).to_dict())
        else:
            _print([p.to_dict() for p in store.list_procedures(flagged_only=args.flagged)])


def _cmd_embed(args, config: StrataConfig) -> None:
    from strata.embeddings import embed_nodes

    provider = _provider(config, args.provider, required=True)
    with _open_store(config) as store:
        report = asyncio.run(
            embed_nodes(
                store,
                provider,
                concurrency=config.embeddings.concurrency,
                force=args.force,
                timeout=config.embeddings.timeout,
            )
        )
        _print(report.to_dict())


def _cmd_neighbors(args, config: StrataConfig) -> None:
    from strata.graph.query import GraphView, neighbors, related

    with _open_store(config) as store:
        view = GraphView.load(store)
        if args.command == "related":
            _print([r.to_dict() for r in related(view, args.node)])
        else:
            _print(neighbors(view, args.node, hops=args.hops).to_dict())


def _cmd_clusters(args, config: StrataConfig) -> None:
    from strata.graph.query import GraphView, clusters

    with _open_store(config) as store:
        _print([c.to_dict() for c in clusters(GraphView.load(store))])


def _cmd_report(args, config: StrataConfig) -> None:
    from strata.graph import insights, query

    with _open_store(config) as store:
        if args.command == "brief":
            report = query.brief(store, top=args.top, recent_days=args.recent_days)
        elif args.command == "alerts":
            report = query.alerts(store)
        elif args.command == "suggest":
            report = insights.suggest(store, limit=args.limit)
        else:
            report = insights.analyze(store, recent_days=args.recent_days)
        _print(report.to_dict())


def _cmd_similar(args, config: StrataConfig) -> None:
    from strata.graph.query import similar_nodes, similar_text

    if bool(args.node) == bool(args.text):
        raise ValidationError("similar needs either a node or --text")
    with _open_store(config) as store:
        if args.text:
            provider = _provider(config, args.provider, required=True)
            items = asyncio.run(
                similar_text(
                    store,
                    provider,
                    args.text,
                    limit=args.limit,
                    min_similarity=args.threshold,
                    kind=args.kind,
                    timeout=config.embeddings.timeout,
                )
            )
        else:
            items = similar_nodes(store, args.node, limit=args.limit, min_similarity=args.threshold)
        _print([i.to_dict() for i in items])


def _cmd_export(args, config: StrataConfig) -> None:
    with _open_store(config) as store:
        store.save_json(Path(args.file))
        logger.info("Exported graph to %s", args.file)


def _cmd_import(args, config: StrataConfig) -> None:
    with _open_store(config) as store:
        store.load_json(Path(args.file))
        _print({"nodes": store.node_count(), "edges": store.edge_count()})


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="strata", description="Decaying knowledge graph memory")
    parser.add_argument("--config", type=Path, help="path to strata.toml")
    parser.add_argument("--db", type=Path, help="graph database (overrides config)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("consolidate", help="ingest markdown files or directories")
    p.add_argument("paths", nargs="+")
    p.add_argument("--provider")
    p.set_defaults(func=_cmd_consolidate)

    p = sub.add_parser("recall", help="hybrid recall")
    p.add_argument("query", nargs="+")
    p.add_argument("--limit", type=int)
    p.add_argument("--hops", type=int)
    p.add_argument("--type", action="append")
    p.add_argument("--since")
    p.add_argument("--until")
    p.add_argument("--provider")
    p.add_argument("--no-procedures", action="store_true")
    p.set_defaults(func=_cmd_recall)

    p = sub.add_parser("snapshots", help="list, create or diff snapshots")
    p.add_argument("action", nargs="?", choices=["list", "create", "diff"], default="list")
    p.add_argument("ids", nargs="*")
    p.add_argument("--note")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=_cmd_snapshots)

    p = sub.add_parser("procedures", help="list, add or give feedback on procedures")
    p.add_argument("action", nargs="?", choices=["list", "add", "feedback"], default="list")
    p.add_argument("text", nargs="*")
    p.add_argument("--type")
    p.add_argument("--keyword", action="append")
    p.add_argument("--context", action="append")
    p.add_argument("--flagged", action="store_true")
    p.set_defaults(func=_cmd_procedures)

    p = sub.add_parser("embed", help="embed all nodes")
    p.add_argument("--provider")
    p.add_argument("--force", action="store_true")
    p.set_defaults(func=_cmd_embed)

    for name, summary in (("neighbors", "nodes within N active hops"), ("related", "direct neighbours by weight")):
        p = sub.add_parser(name, help=summary)
        p.add_argument("node", help="node id, label or alias")
        p.add_argument("--hops", type=int, default=1)
        p.set_defaults(func=_cmd_neighbors)

    p = sub.add_parser("clusters", help="connected components over active edges")
    p.set_defaults(func=_cmd_clusters)

    p = sub.add_parser("brief", help="summary of active entities and fading links")
    p.add_argument("--top", type=int, default=20)
    p.add_argument("--recent-days", type=int, default=7)
    p.set_defaults(func=_cmd_report)

    p = sub.add_parser("alerts", help="fading links, orphans and flagged procedures")
    p.set_defaults(func=_cmd_report)

    p = sub.add_parser("suggest", help="suggested connections")
    p.add_argument("--limit", type=int, default=10)
    p.set_defaults(func=_cmd_report)

    p = sub.add_parser("insights", help="emerging, anchor and fading-important nodes")
    p.add_argument("--recent-days", type=int, default=7)
    p.set_defaults(func=_cmd_report)

    p = sub.add_parser("similar", help="embedding neighbours of a node or free text")
    p.add_argument("node", nargs="?")
    p.add_argument("--text")
    p.add_argument("--kind", choices=["node", "episode"])
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--threshold", type=float, default=0.0)
    p.add_argument("--provider")
    p.set_defaults(func=_cmd_similar)

    p = sub.add_parser("export", help="write the graph as JSON")
    p.add_argument("file")
    p.set_defaults(func=_cmd_export)

    p = sub.add_parser("import", help="replace the graph from JSON")
    p.add_argument("file")
    p.set_defaults(func=_cmd_import)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    config = load_config(args.config)
    if args.db:
        config.db_path = args.db
    _setup_logging(config.log_level)

    try:
        args.func(args, config)
    except StrataError as e:
        print(f"strata: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
