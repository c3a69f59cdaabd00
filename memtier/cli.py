"""
memtier CLI - command-line access to a tiered memory store.

Intended for schedulers (consolidation, expiry cleanup) and retention
tooling. Storage and embedder come from ``MEMTIER_*`` environment
variables (see ``memtier.config``).

Usage:
    memtier store TENANT USER CONTENT [--type T] [--source S] [--scope ID] [--tag T]...
    memtier retrieve TENANT USER QUERY [--limit N] [--scope ID] [--threshold X]
    memtier get MEMORY_ID
    memtier consolidate TENANT [--user U] [--min-age-hours H] [--batch-size N]
                               [--max-batches N] [--merge] [--dry-run]
    memtier forget TENANT [--user U] [--id ID]... [--keyword K]... [--hard]
    memtier cleanup

Every command accepts --json.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from memtier.config import EngineConfig, RetrievalOptions
from memtier.embeddings import embedder_from_config
from memtier.engine import MemoryEngine
from memtier.logging_config import setup_memtier_logging
from memtier.protocols import MemoryRejected, MemtierError
from memtier.results import ForgetCriteria
from memtier.storage import storage_from_config
from memtier.types import MemorySource, MemoryType

logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def cmd_store(args, engine: MemoryEngine):
    """Store one memory."""
    try:
        result = engine.store(
            args.tenant,
            args.user,
            args.type,
            args.content,
            args.source,
            scope_id=args.scope,
            tags=args.tag,
        )
    except MemoryRejected as e:
        if args.json:
            _print_json({"rejected": True, "score": e.score, "threshold": e.threshold})
        else:
            print(f"Rejected: {e.reason}")
        return 2

    memory = result.memory
    if args.json:
        data = memory.to_dict()
        data.pop("embedding", None)
        _print_json({"reinforced": result.reinforced, "memory": data})
    else:
        verb = "Reinforced" if result.reinforced else "Stored"
        print(f"✓ {verb} {memory.type.value} {memory.id[:8]}... in {memory.tier.value}")
        print(f"  importance: {memory.importance_score:.3f}")
    return 0


def cmd_retrieve(args, engine: MemoryEngine):
    """Search memories by meaning."""
    options = RetrievalOptions(limit=args.limit)
    if args.threshold is not None:
        options.similarity_threshold = args.threshold
    result = engine.retrieve(args.query, args.tenant, args.user, args.scope, options)

    if args.json:
        _print_json(result.to_dict())
        return 0

    if not result.memories:
        print("No memories found.")
        return 0

    print(f"Memories for '{result.query}' ({len(result.memories)} of {result.total_candidates})")
    print("=" * 60)
    for i, item in enumerate(result.memories, 1):
        m = item.memory
        print(f"{i}. [{m.type.value:<12}] {m.content[:60]}")
        print(
            f"   relevance {item.relevance_score:.3f} | similarity {item.similarity:.3f}"
            f" | {m.tier.value} | {m.id[:8]}..."
        )
    return 0


def cmd_get(args, engine: MemoryEngine):
    """Show one memory, tombstones included."""
    memory = engine.get(args.memory_id)
    if memory is None:
        print(f"Memory not found: {args.memory_id}")
        return 1

    data = memory.to_dict()
    data.pop("embedding", None)
    if args.json:
        _print_json(data)
    else:
        status = " (deleted)" if memory.is_deleted else ""
        print(f"{memory.id}{status}")
        print(f"  [{memory.type.value}] {memory.content}")
        print(f"  tier: {memory.tier.value}  importance: {memory.importance_score:.3f}")
        print(f"  decay: {memory.decay.score:.3f}  confidence: {memory.confidence.score:.3f}")
        print(f"  accessed: {memory.metadata.access_count} times  version: {memory.version}")
    return 0


def cmd_consolidate(args, engine: MemoryEngine):
    """Run a consolidation pass for a tenant."""
    result = engine.consolidate(
        args.tenant,
        args.user,
        min_age_hours=args.min_age_hours,
        batch_size=args.batch_size,
        max_batches=args.max_batches,
        merge_similar=args.merge,
        dry_run=args.dry_run,
    )
    if args.json:
        _print_json(result.to_dict())
    else:
        prefix = "Would consolidate" if result.dry_run else "Consolidated"
        counts = result.counts()
        print(f"{prefix} {counts.pop('processed')} memories")
        for name, count in counts.items():
            if count:
                print(f"  {name}: {count}")
    return 1 if result.errors else 0


def cmd_forget(args, engine: MemoryEngine):
    """Forget memories matching criteria."""
    criteria = ForgetCriteria(
        tenant_id=args.tenant,
        user_id=args.user,
        scope_id=args.scope,
        types=args.type or [],
        tags=args.tag or [],
        memory_ids=args.id or [],
        decay_threshold=args.decay_below,
        older_than_days=args.older_than_days,
        contains_keywords=args.keyword or [],
        skip_high_importance=args.skip_important,
        importance_threshold=args.importance_threshold,
        hard_delete=args.hard,
    )
    result = engine.forget(criteria)
    if args.json:
        _print_json(result.to_dict())
    else:
        mode = "Deleted" if result.hard_delete else "Forgot"
        print(f"✓ {mode} {len(result.forgotten)} of {result.evaluated} memories")
        if result.skipped:
            print(f"  skipped (important): {len(result.skipped)}")
        for error in result.errors:
            print(f"  failed {error.memory_id}: {error.error}")
    return 1 if result.errors else 0


def cmd_cleanup(args, engine: MemoryEngine):
    """Remove expired memories."""
    removed = engine.cleanup_expired()
    if args.json:
        _print_json({"removed": removed})
    else:
        print(f"✓ Removed {removed} expired memories")
    return 0


COMMANDS = {
    "store": cmd_store,
    "retrieve": cmd_retrieve,
    "get": cmd_get,
    "consolidate": cmd_consolidate,
    "forget": cmd_forget,
    "cleanup": cmd_cleanup,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memtier",
        description="Tiered memory store: store, retrieve, consolidate and forget",
    )
    parser.add_argument("--log-level", default=None, help="Log level for the local log file")
    parser.add_argument("--no-log-file", action="store_true", help="Do not write a log file")

    subparsers = parser.add_subparsers(dest="command", required=True)
    memory_types = [t.value for t in MemoryType]

    # store
    p_store = subparsers.add_parser("store", help="Store a memory")
    p_store.add_argument("tenant", help="Tenant ID")
    p_store.add_argument("user", help="User ID")
    p_store.add_argument("content", help="Memory content")
    p_store.add_argument("--type", "-t", choices=memory_types, default="fact")
    p_store.add_argument(
        "--source",
        "-s",
        choices=[s.value for s in MemorySource],
        default=MemorySource.EXPLICIT_STATEMENT.value,
    )
    p_store.add_argument("--scope", help="Scope ID (e.g. a chatbot)")
    p_store.add_argument("--tag", action="append", help="Tag (repeatable)")
    p_store.add_argument("--json", "-j", action="store_true")

    # retrieve
    p_retrieve = subparsers.add_parser("retrieve", help="Search memories by meaning")
    p_retrieve.add_argument("tenant", help="Tenant ID")
    p_retrieve.add_argument("user", help="User ID")
    p_retrieve.add_argument("query", help="Search query")
    p_retrieve.add_argument("--limit", "-l", type=int, default=10)
    p_retrieve.add_argument("--scope", help="Scope ID (global memories are included)")
    p_retrieve.add_argument("--threshold", type=float, help="Minimum similarity")
    p_retrieve.add_argument("--json", "-j", action="store_true")

    # get
    p_get = subparsers.add_parser("get", help="Show one memory")
    p_get.add_argument("memory_id", help="Memory ID")
    p_get.add_argument("--json", "-j", action="store_true")

    # consolidate
    p_consolidate = subparsers.add_parser("consolidate", help="Run consolidation")
    p_consolidate.add_argument("tenant", help="Tenant ID")
    p_consolidate.add_argument("--user", "-u", help="Limit to one user")
    p_consolidate.add_argument("--min-age-hours", type=float, default=24.0)
    p_consolidate.add_argument("--batch-size", type=int, default=100)
    p_consolidate.add_argument("--max-batches", type=int, default=1)
    p_consolidate.add_argument("--merge", action="store_true", help="Merge near-identical memories")
    p_consolidate.add_argument("--dry-run", action="store_true", help="Plan only, write nothing")
    p_consolidate.add_argument("--json", "-j", action="store_true")

    # forget
    p_forget = subparsers.add_parser("forget", help="Forget memories matching criteria")
    p_forget.add_argument("tenant", help="Tenant ID")
    p_forget.add_argument("--user", "-u", help="User ID")
    p_forget.add_argument("--scope", help="Scope ID")
    p_forget.add_argument("--type", action="append", choices=memory_types)
    p_forget.add_argument("--tag", action="append", help="Tag (any match)")
    p_forget.add_argument("--id", action="append", help="Memory ID (repeatable)")
    p_forget.add_argument("--keyword", "-k", action="append", help="Content keyword (any match)")
    p_forget.add_argument("--decay-below", type=float, help="Only memories with decay <= X")
    p_forget.add_argument("--older-than-days", type=float)
    p_forget.add_argument(
        "--skip-important", action="store_true", help="Spare high-importance memories"
    )
    p_forget.add_argument(
        "--importance-threshold",
        type=float,
        default=0.8,
        help="Importance spared by --skip-important (default: 0.8)",
    )
    p_forget.add_argument("--hard", action="store_true", help="Delete permanently")
    p_forget.add_argument("--json", "-j", action="store_true")

    # cleanup
    p_cleanup = subparsers.add_parser("cleanup", help="Remove expired memories")
    p_cleanup.add_argument("--json", "-j", action="store_true")

    return parser


def create_engine(config: EngineConfig) -> MemoryEngine:
    return MemoryEngine(
        storage_from_config(config), embedder_from_config(config), config=config
    )


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = EngineConfig.from_env()
        if not args.no_log_file:
            setup_memtier_logging(args.log_level or config.log_level, config.data_dir / "logs")
        engine = create_engine(config)
    except (MemtierError, ValueError, ImportError) as e:
        logger.error(f"Failed to initialize memtier: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1

    with engine:
        try:
            return COMMANDS[args.command](args, engine)
        except MemtierError as e:
            logger.error(f"Command failed: {e}")
            print(f"Error: {e}", file=sys.stderr)
            return 1


if __name__ == "__main__":
    sys.exit(main())
