#!/usr/bin/env python3
"""
Vector Reindex Script

Fetches the full member-message corpus and upserts it into the local
vector index used by semantic search. Run this before enabling
ENABLE_SEMANTIC_SEARCH, and again whenever the corpus has grown.

Usage:
    python scripts/reindex.py [--dry-run] [--batch-size 100]
"""

import sys
import argparse
import asyncio
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


async def reindex(args) -> int:
    from memberqa.common.config import ensure_directories, load_config
    from memberqa.common.message_source import HttpMessageSource, SourceUnavailable
    from memberqa.common.vector_index import ChromaVectorIndex

    config = load_config()

    print(f"[Reindex] Fetching messages from {config.source.base_url}...")
    source = HttpMessageSource(config.source)
    try:
        messages = await source.fetch_all()
    except SourceUnavailable as e:
        print(f"[Reindex] ERROR: Failed to fetch messages: {e}")
        return 1
    finally:
        await source.close()

    users = {m.user_name for m in messages}
    print(f"[Reindex] Found {len(messages)} messages from {len(users)} members")

    if not messages:
        print("[Reindex] No messages to index")
        return 0

    if args.dry_run:
        print("[Reindex] DRY RUN - no changes will be made")
        print(f"[Reindex] Would upsert into collection '{config.semantic.collection}'")
        print(f"[Reindex] Index path: {config.semantic.persist_path}")
        print(f"[Reindex] Batch size: {args.batch_size}")
        return 0

    ensure_directories()
    index = ChromaVectorIndex(config.semantic, openai_api_key=config.llm.openai_api_key or None)
    if not await index.connect(force=True):
        print("[Reindex] ERROR: Vector index not available")
        return 1

    try:
        indexed = await index.upsert(messages, batch_size=args.batch_size)
    except Exception as e:
        print(f"[Reindex] ERROR: Upsert failed: {e}")
        return 1

    print(f"[Reindex] Complete: {indexed} indexed, collection stats: {index.stats()}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Index member messages for semantic search")
    parser.add_argument("--dry-run", action="store_true", help="Fetch and report without writing to the index")
    parser.add_argument("--batch-size", type=int, default=100, help="Number of messages to upsert per batch")
    args = parser.parse_args()

    if args.batch_size < 1:
        parser.error("--batch-size must be positive")

    sys.exit(asyncio.run(reindex(args)))


if __name__ == "__main__":
    main()
