#!/usr/bin/env python
"""Index markdown notes into the document store.

Usage:
    python scripts/reindex.py                      # Index NOTES_DIR
    python scripts/reindex.py notes/docker.md      # Index (or re-index) one file
    python scripts/reindex.py --strategy section   # Use another chunking strategy
    python scripts/reindex.py --list               # List indexed documents
    python scripts/reindex.py --delete <id>        # Delete a document
    python scripts/reindex.py --stats              # Show index statistics
"""
import argparse
import asyncio
import sys
from datetime import datetime
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from docrag import config
from docrag.config import Settings
from docrag.errors import DocRagError
from docrag.logging_config import configure_logging
from docrag.rag.chunker import STRATEGIES, DocumentChunker, with_strategy
from docrag.rag.embeddings import EmbeddingClient
from docrag.rag.ingest import IngestPipeline
from docrag.rag.md_parser import MarkdownParser
from docrag.rag.store import VectorStore

logger = structlog.get_logger()


class ProgressReporter:
    """Simple progress reporter for CLI."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose
        self.start_time = None

    def start(self, message: str):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  {message}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path):
        percentage = (current / total) * 100 if total > 0 else 0
        bar_length = 40
        filled = int(bar_length * current / total) if total > 0 else 0
        bar = "█" * filled + "░" * (bar_length - filled)

        print(
            f"\r  [{bar}] {percentage:5.1f}% ({current}/{total}) {file_path.name[:30]:<30}",
            end="",
            flush=True,
        )

        if self.verbose:
            print()

    def finish(self, stats: dict, db_path: Path):
        print("\n")
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"{'=' * 60}")
        print("  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  📁 Files processed:      {stats['files_processed']}")
        print(f"  ❌ Files failed:         {stats['files_failed']}")
        print(f"  📝 Chunks created:       {stats['chunks_created']}")
        print(f"  🧮 Embeddings stored:    {stats['embeddings_stored']}")
        print(f"  ⚠️  Embeddings failed:    {stats['embeddings_failed']}")
        print(f"  ⏱️  Time elapsed:         {elapsed_seconds:.1f}s")

        if stats["chunks_created"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_created"] / elapsed_seconds
            print(f"  ⚡ Indexing rate:        {rate:.1f} chunks/sec")

        print(f"\n{'=' * 60}\n")

        if stats["files_failed"] > 0:
            print(f"⚠️  Warning: {stats['files_failed']} file(s) failed to index:")
            for failure in stats["failures"]:
                print(f"   - {failure['path']}: {failure['error']}")
            print()

        if stats["files_processed"] > 0:
            print(f"✅ Database at: {db_path}\n")


def print_documents(store: VectorStore):
    documents = store.list_documents()
    if not documents:
        print("\nNo documents indexed.\n")
        return

    print(f"\n{len(documents)} document(s):\n")
    for document in documents:
        tags = ", ".join(document.tags)
        print(f"  {document.id}  {document.display_title}")
        print(f"      path:    {document.filepath}")
        print(f"      indexed: {document.indexed_at}")
        if tags:
            print(f"      tags:    {tags}")
    print()


def print_stats(store: VectorStore):
    stats = store.stats()
    print("\n📊 Index statistics:")
    print(f"   Documents:   {stats['total_documents']}")
    print(f"   Chunks:      {stats['total_chunks']}")
    print(f"   Embeddings:  {stats['total_embeddings']}")
    print(f"   Size:        {stats['db_size_kb']} KB\n")


async def index_paths(pipeline: IngestPipeline, paths, progress: ProgressReporter) -> dict:
    """Index directories and individual files, aggregating their stats."""
    totals = {
        "files_processed": 0,
        "files_failed": 0,
        "chunks_created": 0,
        "embeddings_stored": 0,
        "embeddings_failed": 0,
        "failures": [],
    }

    for path in paths:
        if path.is_dir():
            stats = await pipeline.ingest_directory(path, progress_callback=progress.update)
            for key in totals:
                totals[key] += stats[key]
            continue

        progress.update(1, 1, path)
        try:
            result = await pipeline.ingest_file(path)
        except DocRagError as e:
            totals["files_failed"] += 1
            totals["failures"].append({"path": str(path), "error": str(e)})
            continue

        totals["files_processed"] += 1
        totals["chunks_created"] += result.chunks_created
        totals["embeddings_stored"] += result.embeddings_stored
        totals["embeddings_failed"] += result.embeddings_failed

    return totals


async def main():
    """Main entry point for reindex script."""
    parser = argparse.ArgumentParser(
        description="Index markdown notes for retrieval",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "paths",
        nargs="*",
        type=Path,
        help=f"Files or directories to index (default: {config.NOTES_DIR})",
    )
    parser.add_argument("--list", action="store_true", help="List indexed documents")
    parser.add_argument("--delete", metavar="ID", help="Delete a document by id")
    parser.add_argument("--stats", action="store_true", help="Show index statistics")
    parser.add_argument(
        "--strategy",
        choices=STRATEGIES,
        default=None,
        help="Chunking strategy (default: CHUNK_STRATEGY)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show verbose progress output and debug logs",
    )

    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else config.LOG_LEVEL, json_output=False)
    settings = Settings.from_env()
    store = VectorStore(settings.storage)

    try:
        if args.list:
            print_documents(store)
            return
        if args.delete:
            store.delete_document(args.delete)
            print(f"\n🗑️  Deleted document {args.delete}\n")
            return
        if args.stats:
            print_stats(store)
            return

        chunking = settings.chunking
        if args.strategy:
            chunking = with_strategy(chunking, args.strategy)

        paths = args.paths or [config.NOTES_DIR]

        print("\n📋 Configuration:")
        print(f"   Paths:            {', '.join(str(p) for p in paths)}")
        print(f"   Embedding model:  {settings.embedding.model}")
        print(f"   Strategy:         {chunking.strategy}")
        print(f"   Chunk size:       {chunking.max_chunk_size} chars")
        print(f"   Chunk overlap:    {chunking.overlap} chars")
        print(f"   Database:         {settings.storage.db_path}")

        pipeline = IngestPipeline(
            parser=MarkdownParser(),
            chunker=DocumentChunker(chunking),
            embedder=EmbeddingClient(settings.embedding),
            store=store,
        )

        progress = ProgressReporter(verbose=args.verbose)
        progress.start("Indexing Notes")
        stats = await index_paths(pipeline, paths, progress)
        progress.finish(stats, settings.storage.db_path)

        if stats["files_failed"] > 0:
            sys.exit(1)

    except KeyboardInterrupt:
        print("\n\n⚠️  Indexing cancelled by user.\n")
        sys.exit(1)

    except (DocRagError, FileNotFoundError) as e:
        print(f"\n❌ Error: {e}\n")
        sys.exit(1)

    except Exception as e:
        print(f"\n❌ Error: {e}\n")
        logger.error("reindex_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
