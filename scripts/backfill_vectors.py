"""
MemCore — Vector Backfill
===========================
Embed and index every relational memory that has no vector entry.

Run against the configured stores:
    python scripts/backfill_vectors.py --batch-size 200

Prerequisites:
    1. ``pip install -e .``
    2. Set environment variables in .env:
        - MEMCORE_DATABASE_URL
        - MEMCORE_CHROMA_PERSIST_DIRECTORY (an ephemeral index is pointless here)
        - MEMCORE_AZURE_OPENAI_* (otherwise the mock embedding provider is used)
"""

from __future__ import annotations

import argparse
import asyncio
import sys

from memcore.core.config import get_settings
from memcore.core.logging import configure_logging
from memcore.engine import MemoryEngine


async def backfill(batch_size: int) -> bool:
    settings = get_settings()
    print("\n" + "=" * 60)
    print("MemCore Vector Backfill")
    print("=" * 60)

    if not settings.chroma_persist_directory:
        print("\n[ERROR] MEMCORE_CHROMA_PERSIST_DIRECTORY is not set;")
        print("        an in-process index would be discarded on exit.")
        return False

    engine = MemoryEngine.from_settings(settings)
    try:
        await engine.start()
        stats = await engine.ensure_indexed(batch_size=batch_size)
    finally:
        await engine.close()

    print(f"\n[OK] Scanned: {stats['scanned']}")
    print(f"     Indexed: {stats['indexed']}")
    print(f"     Failed:  {stats['failed']}")
    return stats["failed"] == 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill the MemCore vector index.")
    parser.add_argument("--batch-size", type=int, default=100)
    args = parser.parse_args()

    configure_logging()
    success = asyncio.run(backfill(args.batch_size))
    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
