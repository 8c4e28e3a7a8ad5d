"""Ingest pipeline for indexing markdown notes.

Orchestrates:
- File discovery
- Markdown parsing
- Chunking
- Embedding generation
- Document, chunk and vector storage
"""
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from docrag.errors import ChunkingFailed, DocRagError, ValidationFailed
from docrag.rag.chunker import DocumentChunker
from docrag.rag.embeddings import EmbeddingClient
from docrag.rag.md_parser import MarkdownParser
from docrag.rag.store import VectorStore

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, Path], None]


@dataclass
class IngestResult:
    document_id: str
    filepath: str
    chunks_created: int
    embeddings_stored: int
    embeddings_failed: int


class IngestPipeline:
    """Pipeline for ingesting markdown notes into the index."""

    def __init__(
        self,
        parser: Optional[MarkdownParser] = None,
        chunker: Optional[DocumentChunker] = None,
        embedder: Optional[EmbeddingClient] = None,
        store: Optional[VectorStore] = None,
    ):
        """Initialize the ingest pipeline.

        Args:
            parser: Markdown parser
            chunker: Document chunker (default config from docrag.config)
            embedder: Embedding client
            store: Vector store receiving documents, chunks and vectors
        """
        self.parser = parser or MarkdownParser()
        self.chunker = chunker or DocumentChunker()
        self.embedder = embedder or EmbeddingClient()
        self.store = store or VectorStore()

        logger.info(
            "ingest_pipeline_initialized",
            strategy=self.chunker.config.strategy,
            max_chunk_size=self.chunker.config.max_chunk_size,
            overlap=self.chunker.config.overlap,
            embedding_model=self.embedder.model,
        )

    def discover_markdown_files(self, directory: Union[str, Path]) -> List[Path]:
        """Discover all markdown files under a directory.

        Args:
            directory: Directory to search recursively

        Returns:
            Sorted list of markdown file paths

        Raises:
            FileNotFoundError: If the directory doesn't exist
        """
        directory = Path(directory)
        if not directory.is_dir():
            raise FileNotFoundError(f"Notes directory not found: {directory}")

        md_files = sorted(directory.rglob("*.md"))

        logger.info(
            "markdown_files_discovered",
            count=len(md_files),
            notes_dir=str(directory),
        )

        return md_files

    async def ingest_file(self, file_path: Union[str, Path]) -> IngestResult:
        """Ingest a single markdown file.

        A document previously indexed from the same path is replaced.

        Args:
            file_path: Path to a .md file

        Returns:
            IngestResult

        Raises:
            ValidationFailed: If the path is not a markdown file
            DocumentNotFound: If the file doesn't exist
            ChunkingFailed: If the document produced no chunks
            StorageError: If the document could not be stored (a previously
                indexed copy is kept)
        """
        path = Path(file_path)
        if path.suffix.lower() != ".md":
            raise ValidationFailed(f"Only markdown files can be indexed: {path}")

        path = path.resolve()
        logger.info("ingesting_file", path=str(path))

        document = self.parser.parse_file(path)
        chunks = self.chunker.create_chunks(document)

        if not chunks:
            raise ChunkingFailed(f"No chunks produced for {path}")

        document_id = self.store.replace_document(document, chunks)

        vectors = await self.embedder.embed_batch([chunk.content for chunk in chunks])

        stored = 0
        for chunk, vector in zip(chunks, vectors):
            if not vector:
                continue
            self.store.save_embedding(chunk.id, vector, self.embedder.model)
            stored += 1

        failed = len(chunks) - stored
        if failed:
            logger.warning(
                "embeddings_missing",
                path=str(path),
                failed=failed,
                total=len(chunks),
            )

        logger.info(
            "file_ingested",
            path=str(path),
            document_id=document_id,
            **self.chunker.get_chunk_stats(chunks),
        )

        return IngestResult(
            document_id=document_id,
            filepath=document.filepath,
            chunks_created=len(chunks),
            embeddings_stored=stored,
            embeddings_failed=failed,
        )

    async def ingest_directory(
        self,
        directory: Union[str, Path],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """Ingest every markdown file under a directory.

        A file that fails is logged and counted; the run continues.

        Args:
            directory: Directory containing markdown notes
            progress_callback: Optional callback(current, total, file_path)

        Returns:
            Dictionary with ingestion statistics
        """
        stats: Dict[str, Any] = {
            "files_processed": 0,
            "files_failed": 0,
            "chunks_created": 0,
            "embeddings_stored": 0,
            "embeddings_failed": 0,
            "failures": [],
        }

        md_files = self.discover_markdown_files(directory)

        if not md_files:
            logger.warning("no_markdown_files_found", notes_dir=str(directory))
            return stats

        for idx, file_path in enumerate(md_files, 1):
            if progress_callback:
                progress_callback(idx, len(md_files), file_path)

            try:
                result = await self.ingest_file(file_path)
            except (DocRagError, OSError) as e:
                logger.error(
                    "file_ingestion_failed",
                    path=str(file_path),
                    error=str(e),
                )
                stats["files_failed"] += 1
                stats["failures"].append({"path": str(file_path), "error": str(e)})
                continue

            stats["files_processed"] += 1
            stats["chunks_created"] += result.chunks_created
            stats["embeddings_stored"] += result.embeddings_stored
            stats["embeddings_failed"] += result.embeddings_failed

        logger.info(
            "ingest_directory_completed",
            files_processed=stats["files_processed"],
            files_failed=stats["files_failed"],
            chunks_created=stats["chunks_created"],
        )

        return stats
