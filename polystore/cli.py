#!/usr/bin/env python3
"""
polystore CLI: poke at the configured backend from a shell.

    COMMAND         ALIASES         WHAT IT DOES
    -------         -------         ----------------------------------
    ping            status          Connect to the configured backend and disconnect
    count                           Count records of an entity
    find            query           List records matching a JSON filter
    embed                           Embed a text and show the vector's head
    similar         search          Vector search over an entity's embeddings

The backend and the embedding service come from config.yaml (storage: and
embedding: sections); --config points at another file.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

__version__ = "0.3.0"


def _load(args) -> dict:
    from polystore.config import get_config, load_config, setup_logging

    cfg = load_config(Path(args.config)) if args.config else get_config()
    if args.verbose:
        cfg = {**cfg, "logging": {**(cfg.get("logging") or {}), "level": "DEBUG"}}
    setup_logging(cfg)
    return cfg


def _parse_sort(values: list[str] | None) -> dict:
    """["timestamp:desc", "name"] -> {"timestamp": "desc", "name": "asc"}"""
    sort = {}
    for value in values or []:
        name, _, direction = value.partition(":")
        sort[name] = direction or "asc"
    return sort


def _print_json(obj):
    print(json.dumps(obj, indent=2, default=str, ensure_ascii=False))


async def _with_repository(cfg: dict, entity: str, action):
    from polystore.storage import StorageService

    async with StorageService.from_config(cfg) as storage:
        storage.register_model(entity)
        return await action(storage.get_repository(entity))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def cmd_ping(args) -> int:
    """Connect to the configured backend and disconnect again."""
    from polystore.storage import StorageService

    cfg = _load(args)
    storage = StorageService.from_config(cfg)

    async def ping():
        async with storage:
            return storage.is_connected()

    try:
        connected = asyncio.run(ping())
    except Exception as e:
        print(f"  ✗  {storage.kind.value}: {e}")
        return 1
    print(f"  ✓  {storage.kind.value} is {'UP' if connected else 'DOWN'}")
    return 0 if connected else 1


def cmd_count(args) -> int:
    cfg = _load(args)
    flt = json.loads(args.filter) if args.filter else None
    total = asyncio.run(_with_repository(cfg, args.entity, lambda repo: repo.count(flt)))
    print(total)
    return 0


def cmd_find(args) -> int:
    """List records matching a JSON filter."""
    from polystore.models import FindOptions

    cfg = _load(args)
    flt = json.loads(args.filter) if args.filter else None
    options = FindOptions.of(skip=args.skip, limit=args.limit, sort=_parse_sort(args.sort))
    records = asyncio.run(_with_repository(cfg, args.entity, lambda repo: repo.find(flt, options)))
    _print_json(records)
    return 0


def cmd_embed(args) -> int:
    from polystore.embeddings import EmbeddingGenerator

    cfg = _load(args)
    generator = EmbeddingGenerator.from_config(cfg)
    vector = asyncio.run(generator.generate(" ".join(args.text)))
    head = ", ".join(f"{x:.4f}" for x in vector[: args.head])
    print(f"  dimension: {len(vector)}  remote: {generator.remote_enabled}")
    print(f"  [{head}{', ...' if len(vector) > args.head else ''}]")
    return 0


def cmd_similar(args) -> int:
    """Vector search over an entity's stored embeddings."""
    from polystore.embeddings import EmbeddingGenerator
    from polystore.models import VectorSearchOptions
    from polystore.similarity import rank_by_similarity
    from polystore.storage import supports_vector_search

    cfg = _load(args)
    generator = EmbeddingGenerator.from_config(cfg)
    text = " ".join(args.text)
    options = VectorSearchOptions(limit=args.limit, min_score=args.min_score)

    async def search(repo):
        vector = await generator.generate(text)
        if supports_vector_search(repo):
            return await repo.vector_search(args.field, vector, options)
        candidates = await repo.find({args.field: {"ne": None}})
        return rank_by_similarity(candidates, args.field, vector, options.limit, options.min_score)

    results = asyncio.run(_with_repository(cfg, args.entity, search))
    if not results:
        print("  No matches.")
        return 0
    for i, hit in enumerate(results, 1):
        item = {k: v for k, v in hit.item.items() if k != args.field}
        summary = item.get("text") or json.dumps(item, default=str)
        if len(summary) > 200:
            summary = summary[:200] + "..."
        print(f"\n  [{i}] score: {hit.score:.3f} | id: {item.get('id', '?')}")
        print(f"      {summary}")
    return 0


# ---------------------------------------------------------------------------
# Parser with aliases
# ---------------------------------------------------------------------------

def _add_command(subparsers, names, help_text, func, setup_fn=None):
    """Register a command under its name and aliases."""
    p = subparsers.add_parser(names[0], help=help_text, aliases=names[1:])
    p.set_defaults(func=func)
    if setup_fn:
        setup_fn(p)
    return p


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polystore",
        description="polystore: one repository contract over MongoDB, Memgraph and Redis.",
        epilog="Run 'polystore <command> --help' for command-specific options.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--version", "-V", action="version", version=f"polystore {__version__}")
    parser.add_argument("--config", "-c", default=None, help="Path to config.yaml (default: repo root)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log at DEBUG level")

    sub = parser.add_subparsers(dest="command", metavar="<command>")

    _add_command(sub, ["ping", "status"], "Check the configured backend is reachable", cmd_ping)

    def setup_count(p):
        p.add_argument("entity", help="Entity / model name")
        p.add_argument("--filter", "-f", default=None, help='JSON filter, e.g. \'{"platform": "twitter"}\'')
    _add_command(sub, ["count"], "Count records of an entity", cmd_count, setup_count)

    def setup_find(p):
        p.add_argument("entity", help="Entity / model name")
        p.add_argument("--filter", "-f", default=None, help="JSON filter")
        p.add_argument("--limit", "-n", type=int, default=20, help="Max records (default: 20)")
        p.add_argument("--skip", type=int, default=0, help="Records to skip")
        p.add_argument("--sort", "-s", action="append", default=None,
                       help="field[:asc|desc], repeatable")
    _add_command(sub, ["find", "query"], "List records matching a filter", cmd_find, setup_find)

    def setup_embed(p):
        p.add_argument("text", nargs="+", help="Text to embed")
        p.add_argument("--head", type=int, default=8, help="Components to print (default: 8)")
    _add_command(sub, ["embed"], "Embed a text", cmd_embed, setup_embed)

    def setup_similar(p):
        p.add_argument("entity", help="Entity / model name")
        p.add_argument("text", nargs="+", help="Query text")
        p.add_argument("--field", default="embedding", help="Vector field (default: embedding)")
        p.add_argument("--limit", "-n", type=int, default=10, help="Max results (default: 10)")
        p.add_argument("--min-score", type=float, default=0.7, help="Similarity threshold (default: 0.7)")
    _add_command(sub, ["similar", "search"], "Vector search over stored embeddings", cmd_similar, setup_similar)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
