from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal

from docgraph_ingest.settings import DocgraphSettings, settings

logger = logging.getLogger(__name__)


def _configure_logging(s: DocgraphSettings) -> None:
    level = (s.log_level or "INFO").upper()
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _build_store(s: DocgraphSettings, kind: str):
    if kind == "memory":
        from docgraph_ingest.graph import MemoryDocumentStore

        return MemoryDocumentStore()

    from docgraph_ingest.graph import Neo4jConfig, Neo4jDocumentStore

    return Neo4jDocumentStore(
        Neo4jConfig(
            uri=s.neo4j_uri,
            user=s.neo4j_user,
            password=s.neo4j_password,
            database=s.neo4j_database,
        )
    )


def _build_resolver(s: DocgraphSettings):
    from docgraph_ingest.chain import DocumentResolver

    return DocumentResolver(
        s.chain_url,
        s.contract,
        scope=s.scope,
        fetch_edges=s.fetch_edges,
        timeout=s.chain_timeout,
    )


async def _run(args: argparse.Namespace, s: DocgraphSettings) -> int:
    from docgraph_ingest.errors import DocgraphError
    from docgraph_ingest.feed import HyperionFeed
    from docgraph_ingest.pipeline import IngestionPipeline, PipelineConfig

    if args.start_from is not None:
        s = s.model_copy(update={"start_from": args.start_from})
    config = PipelineConfig.from_settings(s, in_flight_window=args.window)

    feed = HyperionFeed(
        s.feed_url,
        reconnect_attempts=s.reconnect_attempts,
        backoff_initial=s.backoff_initial,
        backoff_max=s.backoff_max,
        queue_size=s.feed_queue_size,
    )
    resolver = _build_resolver(s)
    store = _build_store(s, args.store)
    pipeline = IngestionPipeline(feed, resolver, store, config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except NotImplementedError:  # pragma: no cover
            pass

    try:
        await store.ensure_schema()
        stats = await pipeline.run()
    except DocgraphError as e:
        logger.error("ingestion failed: %s", e)
        return 1
    finally:
        await resolver.aclose()
        await store.close()

    print(json.dumps({o.value: n for o, n in stats.outcomes.items()}, sort_keys=True))
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    _configure_logging(settings)
    return asyncio.run(_run(args, settings))


async def _resolve(content_hash: str, s: DocgraphSettings) -> int:
    from docgraph_ingest.errors import ResolverError

    async with _build_resolver(s) as resolver:
        try:
            doc = await resolver.resolve(content_hash)
        except (ResolverError, ValueError) as e:
            logger.error("could not resolve %s: %s", content_hash, e)
            return 1

    if doc is None:
        print(f"There is no document with hash: {content_hash}")
        return 2
    print(doc.model_dump_json(indent=2))
    return 0


def cmd_resolve(args: argparse.Namespace) -> int:
    _configure_logging(settings)
    return asyncio.run(_resolve(args.hash, settings))


async def _schema(s: DocgraphSettings) -> int:
    store = _build_store(s, "neo4j")
    try:
        await store.ensure_schema()
    finally:
        await store.close()
    print("schema ok")
    return 0


def cmd_schema(_args: argparse.Namespace) -> int:
    _configure_logging(settings)
    return asyncio.run(_schema(settings))


def cmd_version() -> int:
    from docgraph_ingest import __version__

    print(__version__)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="docgraph-ingest")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("version").set_defaults(func=lambda _a: cmd_version())

    run = sub.add_parser("run", help="Stream document-creation actions into the graph store")
    run.add_argument(
        "--start-from",
        default=None,
        help="ISO timestamp or block number to replay from; 0 for the current tip",
    )
    run.add_argument("--window", type=int, default=None, help="Max unacknowledged events in flight")
    run.add_argument("--store", choices=["neo4j", "memory"], default="neo4j")
    run.set_defaults(func=cmd_run)

    res = sub.add_parser("resolve", help="Look up one document by content hash and print it")
    res.add_argument("hash")
    res.set_defaults(func=cmd_resolve)

    sub.add_parser("schema", help="Create graph constraints").set_defaults(func=cmd_schema)

    return p


def app() -> None:
    parser = build_parser()
    args = parser.parse_args()
    rc = args.func(args)
    raise SystemExit(rc)


if __name__ == "__main__":
    app()
