#!/usr/bin/env python3
"""Script to reset the database and rebuild the Qdrant context index.

Usage:
  python scripts/reset_db.py [--force] [--only sqlite|qdrant]
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to sys.path so we can import backend packages
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv

from backend.core.context_indexer import ContextIndexer
from backend.core.database import Base, get_engine, init_db
from backend.core.embeddings import EmbeddingProvider
from backend.core.vector_index import VectorIndex


def reset_sqlite(force: bool):
    """Drop and recreate all tables."""
    print("Resetting database...")
    if not force:
        confirm = input("  This will delete all chat history and catalog data. Continue? [y/N]: ")
        if confirm.lower() != 'y':
            print("  Skipping database reset.")
            return

    init_db(os.environ.get("DATABASE_URL"))
    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    print("  Tables dropped and recreated.")


async def rebuild_context(force: bool):
    """Wipe the context collection and re-index the knowledge document."""
    print("Rebuilding Qdrant context index...")
    index = VectorIndex()

    if not index.is_healthy():
        print("  Could not connect to Qdrant. Check QDRANT_URL/QDRANT_API_KEY.")
        return

    if not force:
        confirm = input(f"  This will delete every vector in '{index.collection}'. Continue? [y/N]: ")
        if confirm.lower() != 'y':
            print("  Skipping Qdrant rebuild.")
            return

    indexer = ContextIndexer(EmbeddingProvider(), index)
    chunks = await indexer.index_context(force_reindex=True)
    if chunks is None:
        print(f"  Nothing indexed. Is {indexer.path} present?")
    else:
        print(f"  Indexed {chunks} chunk(s) from {indexer.path}.")


def main():
    parser = argparse.ArgumentParser(description="Reset the assistant's data stores.")
    parser.add_argument("--force", "-f", action="store_true", help="Skip confirmation prompts")
    parser.add_argument("--only", choices=["sqlite", "qdrant"], help="Only reset specific datastore")
    args = parser.parse_args()

    # Load environment variables
    load_dotenv(project_root / ".env")

    if args.only in ["sqlite", None]:
        reset_sqlite(args.force)
        print("")

    if args.only in ["qdrant", None]:
        asyncio.run(rebuild_context(args.force))
        print("")

    print("Done!")


if __name__ == "__main__":
    main()
