"""Pytest configuration and fixtures for unit tests."""
from typing import Dict, List, Optional, Sequence, Tuple
from unittest.mock import AsyncMock

import pytest

from docrag.config import ChunkingConfig, SearchConfig, StorageConfig
from docrag.rag.chunker import Chunk
from docrag.rag.md_parser import ParsedDocument
from docrag.rag.search import DocumentRef, SearchResult, SimilaritySearch
from docrag.rag.store import VectorStore


EMBEDDING_MODEL = "fake-embed"


class FakeEmbedder:
    """Stands in for EmbeddingClient; vectors are looked up by text."""

    def __init__(
        self,
        vectors: Optional[Dict[str, List[float]]] = None,
        default: Optional[List[float]] = None,
    ):
        self.model = EMBEDDING_MODEL
        self.vectors = vectors or {}
        self.default = default if default is not None else [1.0, 0.0, 0.0]
        self.embed_one = AsyncMock(side_effect=self._lookup)
        self.embed_batch = AsyncMock(side_effect=lambda texts: [self._lookup(t) for t in texts])

    def _lookup(self, text: str) -> List[float]:
        return self.vectors.get(text, self.default)


@pytest.fixture
def store(tmp_path) -> VectorStore:
    """Empty store backed by a temporary database."""
    vector_store = VectorStore(StorageConfig(db_path=tmp_path / "index.db"))
    vector_store.initialize()
    return vector_store


@pytest.fixture
def add_document(store):
    """Insert a document with chunks and their vectors directly into the store.

    Returns a function(filepath, chunks, tags=None, title=None) where chunks
    is a list of (content, vector) pairs; a vector of None stores no
    embedding for that chunk.
    """

    def _add(
        filepath: str,
        chunks: Sequence[Tuple[str, Optional[List[float]]]],
        tags: Optional[List[str]] = None,
        title: Optional[str] = None,
    ) -> str:
        document = ParsedDocument(
            metadata={"title": title or filepath, "tags": tags or []},
            sections=[],
            raw_content="",
            filepath=filepath,
        )
        document_id = store.save_document(document)

        saved = []
        offset = 0
        for position, (content, _) in enumerate(chunks):
            saved.append(
                Chunk(
                    content=content,
                    position=position,
                    char_start=offset,
                    char_end=offset + len(content),
                    document_title=document.title,
                    document_id=document_id,
                )
            )
            offset += len(content)
        store.save_chunks(saved)

        for chunk, (_, vector) in zip(saved, chunks):
            if vector is not None:
                store.save_embedding(chunk.id, vector, EMBEDDING_MODEL)

        return document_id

    return _add


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def search(store, embedder) -> SimilaritySearch:
    return SimilaritySearch(embedder, store, SearchConfig(default_top_k=5, min_score=0.0))


@pytest.fixture
def chunking_config() -> ChunkingConfig:
    return ChunkingConfig(
        max_chunk_size=400,
        min_chunk_size=50,
        overlap=50,
        preserve_headings=True,
        strategy="recursive",
    )


@pytest.fixture
def make_result():
    """Build a SearchResult without touching the store."""

    def _make(score: float, filepath: str, content: str = "", rank: int = 1) -> SearchResult:
        return SearchResult(
            chunk=Chunk(
                content=content or f"Content of {filepath}",
                position=0,
                char_start=0,
                char_end=len(content),
                document_title=filepath,
                document_id=filepath,
            ),
            score=score,
            rank=rank,
            document=DocumentRef(id=filepath, title=filepath, filepath=filepath),
        )

    return _make


@pytest.fixture
def notes_dir(tmp_path):
    """Directory with a couple of realistic markdown notes."""
    directory = tmp_path / "notes"
    (directory / "ops").mkdir(parents=True)

    (directory / "docker.md").write_text(
        "---\n"
        "title: Docker Basics\n"
        "tags: [docker, containers]\n"
        "created: 2024-01-15\n"
        "---\n"
        "# Docker\n\n"
        "Docker packages applications into containers.\n\n"
        "## Running containers\n\n"
        "Use docker run to start a container from an image.\n\n"
        "## Stopping containers\n\n"
        "Use docker stop to stop a running container.\n",
        encoding="utf-8",
    )
    (directory / "ops" / "backups.md").write_text(
        "# Backups\n\n"
        "Nightly backups are written to the storage bucket.\n\n"
        "## Restore\n\n"
        "Restores are done from the most recent snapshot.\n",
        encoding="utf-8",
    )
    return directory
