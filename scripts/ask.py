#!/usr/bin/env python
"""Ask a question against the indexed notes.

Usage:
    python scripts/ask.py "How do I restart a container?"
    python scripts/ask.py --mode filtered --threshold 0.75 "..."
    python scripts/ask.py --mode thresholds --threshold 0.5 --threshold 0.8 "..."
    python scripts/ask.py --mode search --top-k 10 "..."

Results are printed as JSON.
"""
import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog

from docrag import config
from docrag.config import Settings
from docrag.errors import DocRagError
from docrag.llm_client import OllamaClient
from docrag.logging_config import configure_logging
from docrag.rag.embeddings import EmbeddingClient
from docrag.rag.orchestrator import RetrievalOrchestrator
from docrag.rag.reranker import LLMReranker
from docrag.rag.search import SimilaritySearch
from docrag.rag.store import VectorStore

logger = structlog.get_logger()

MODES = ("rag", "plain", "filtered", "rerank", "compare", "thresholds", "methods", "search")


async def run(args, settings: Settings):
    llm = OllamaClient.for_generation(settings.generation)
    search = SimilaritySearch(
        EmbeddingClient(settings.embedding),
        VectorStore(settings.storage),
        settings.search,
    )
    orchestrator = RetrievalOrchestrator(
        search, LLMReranker(llm, settings.generation), llm
    )
    question = args.question

    if args.mode == "search":
        results = await search.search(question, top_k=args.top_k)
        return [
            {
                "rank": r.rank,
                "score": round(r.score, 4),
                "document": asdict(r.document),
                "heading": r.chunk.section_heading,
                "content": r.chunk.content,
            }
            for r in results
        ]

    if args.mode == "rag":
        response = await orchestrator.query_with_rag(question, top_k=args.top_k or 3)
    elif args.mode == "plain":
        response = await orchestrator.query_without_rag(question)
    elif args.mode == "filtered":
        threshold = args.threshold[0] if args.threshold else 0.7
        response = await orchestrator.query_with_filtered_rag(question, threshold)
    elif args.mode == "rerank":
        threshold = args.threshold[0] if args.threshold else 0.6
        response = await orchestrator.query_with_reranking(question, threshold)
    elif args.mode == "compare":
        response = await orchestrator.compare(question)
    elif args.mode == "thresholds":
        response = await orchestrator.compare_thresholds(question, args.threshold or None)
    else:
        response = await orchestrator.compare_methods(question)

    return response.model_dump()


async def main():
    parser = argparse.ArgumentParser(
        description="Query indexed notes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("question", help="Question to ask")
    parser.add_argument("--mode", choices=MODES, default="rag", help="Query strategy (default: rag)")
    parser.add_argument(
        "--threshold",
        type=float,
        action="append",
        help="Similarity threshold; repeat for --mode thresholds",
    )
    parser.add_argument("--top-k", type=int, default=None, help="Number of results")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logs")

    args = parser.parse_args()

    configure_logging("DEBUG" if args.verbose else config.LOG_LEVEL, json_output=False)

    try:
        output = await run(args, Settings.from_env())
    except DocRagError as e:
        print(json.dumps({"error": str(e), "component": e.component}), file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        logger.error("ask_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)

    print(json.dumps(output, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    asyncio.run(main())
