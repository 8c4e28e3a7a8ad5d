"""Semantic search over indexed chunks.

Handles:
- Query embedding generation
- Linear cosine-similarity scan over every stored embedding
- Score threshold, document and tag filters
- Ranking and context formatting for RAG
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import structlog

from docrag.config import SearchConfig
from docrag.errors import ValidationFailed
from docrag.rag.chunker import Chunk
from docrag.rag.embeddings import EmbeddingClient
from docrag.rag.store import StoredDocument, VectorStore

logger = structlog.get_logger()

CONTEXT_SEPARATOR = "\n\n---\n\n"


def cosine_similarity(a, b) -> float:
    """Cosine of the angle between two equal-length vectors.

    Returns 0.0 when either vector has zero norm. The result is clipped to
    [-1, 1] to absorb floating-point drift.

    Raises:
        ValueError: If the vectors differ in length
    """
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")

    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0.0:
        return 0.0
    return float(np.clip(np.dot(va, vb) / norm, -1.0, 1.0))


@dataclass
class SearchFilters:
    document_ids: Optional[List[str]] = None
    tags: Optional[List[str]] = None


@dataclass
class DocumentRef:
    id: str
    title: str
    filepath: str


@dataclass
class SearchResult:
    """A single retrieved chunk with its score and provenance."""

    chunk: Chunk
    score: float
    rank: int
    document: DocumentRef

    @property
    def source(self) -> str:
        return self.document.filepath


@dataclass
class ThresholdSearchResult:
    results: List[SearchResult]
    total: int  # comparable candidates scanned
    filtered: int  # candidates at or above the threshold
    threshold: float


@dataclass
class RagContext:
    context: str
    results: List[SearchResult] = field(default_factory=list)


class SimilaritySearch:
    """Brute-force semantic retriever for the RAG pipeline."""

    def __init__(
        self,
        embedder: EmbeddingClient,
        store: VectorStore,
        config: Optional[SearchConfig] = None,
    ):
        """Initialize the search component.

        Args:
            embedder: Client used to embed queries
            store: Vector store holding the indexed embeddings
            config: Search defaults (top-K, minimum score)
        """
        self.embedder = embedder
        self.store = store
        self.config = config or SearchConfig()

    def _validate(self, top_k: int, min_score: float) -> None:
        if top_k < 1:
            raise ValidationFailed(f"top_k must be at least 1, got {top_k}")
        if not -1.0 <= min_score <= 1.0:
            raise ValidationFailed(f"min_score must be within [-1, 1], got {min_score}")

    async def embed_query(self, query: str) -> List[float]:
        if not query or not query.strip():
            raise ValidationFailed("Query must not be empty")
        return await self.embedder.embed_one(query)

    async def search(
        self,
        query: str,
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        """Embed a query once and search with it.

        Args:
            query: User query text
            top_k: Number of results to return (default from config)
            min_score: Minimum cosine similarity (default from config)
            filters: Optional document id / tag filters

        Returns:
            Results sorted by score, best first; empty if nothing qualifies

        Raises:
            ValidationFailed: On an empty query or out-of-range options
        """
        top_k = top_k if top_k is not None else self.config.default_top_k
        min_score = min_score if min_score is not None else self.config.min_score
        self._validate(top_k, min_score)

        query_vector = await self.embed_query(query)
        return self.search_by_vector(query_vector, top_k, min_score, filters)

    def search_by_vector(
        self,
        query_vector: Sequence[float],
        top_k: Optional[int] = None,
        min_score: Optional[float] = None,
        filters: Optional[SearchFilters] = None,
    ) -> List[SearchResult]:
        """Score every stored embedding against a query vector.

        Empty vectors and dimension mismatches are skipped, not errors.
        """
        top_k = top_k if top_k is not None else self.config.default_top_k
        min_score = min_score if min_score is not None else self.config.min_score
        self._validate(top_k, min_score)

        results, _, _ = self._scan(query_vector, top_k, min_score, filters)
        return results

    def _scan(
        self,
        query_vector: Sequence[float],
        top_k: int,
        min_score: float,
        filters: Optional[SearchFilters],
    ):
        """Return (ranked results, comparable candidates, candidates above min_score)."""
        query = np.asarray(query_vector, dtype=np.float32)
        records = self.store.get_all_embeddings_joined()

        if not records:
            logger.warning("search_index_empty")
            return [], 0, 0

        scored = []
        skipped_empty = 0
        skipped_dimension = 0

        for record in records:
            if record.vector.size == 0:
                skipped_empty += 1
                continue
            if record.vector.shape != query.shape:
                skipped_dimension += 1
                continue

            score = cosine_similarity(query, record.vector)
            if score >= min_score:
                scored.append((record.chunk, score))

        if skipped_empty or skipped_dimension:
            logger.warning(
                "search_skipped_embeddings",
                empty_vectors=skipped_empty,
                dimension_mismatch=skipped_dimension,
                query_dimension=int(query.shape[0]),
            )

        comparable = len(records) - skipped_empty - skipped_dimension
        documents: Dict[str, Optional[StoredDocument]] = {}

        def load_document(document_id: str) -> Optional[StoredDocument]:
            if document_id not in documents:
                documents[document_id] = self.store.get_document(document_id)
            return documents[document_id]

        if filters and filters.document_ids:
            allowed = set(filters.document_ids)
            scored = [item for item in scored if item[0].document_id in allowed]

        if filters and filters.tags:
            wanted = set(filters.tags)
            kept = []
            for chunk, score in scored:
                document = load_document(chunk.document_id)
                if document and wanted.intersection(document.tags):
                    kept.append((chunk, score))
            scored = kept

        scored.sort(key=lambda item: item[1], reverse=True)

        results = []
        for chunk, score in scored:
            if len(results) >= top_k:
                break
            document = load_document(chunk.document_id)
            if document is None:
                logger.warning("search_document_missing", chunk_id=chunk.id)
                continue
            results.append(
                SearchResult(
                    chunk=chunk,
                    score=score,
                    rank=len(results) + 1,
                    document=DocumentRef(
                        id=document.id,
                        title=document.display_title,
                        filepath=document.filepath,
                    ),
                )
            )

        logger.info(
            "search_completed",
            candidates=comparable,
            above_threshold=len(scored),
            returned=len(results),
            top_score=results[0].score if results else None,
        )

        return results, comparable, len(scored)

    async def search_with_threshold(
        self, query: str, top_k: int = 10, threshold: float = 0.7
    ) -> ThresholdSearchResult:
        """Search and report how many candidates survived the threshold.

        Args:
            query: User query text
            top_k: Maximum number of results
            threshold: Minimum similarity score in [0, 1]

        Returns:
            ThresholdSearchResult
        """
        if not 0.0 <= threshold <= 1.0:
            raise ValidationFailed(f"threshold must be within [0, 1], got {threshold}")
        self._validate(top_k, threshold)

        query_vector = await self.embed_query(query)
        results, total, filtered = self._scan(query_vector, top_k, threshold, None)

        logger.info(
            "threshold_search_completed",
            threshold=threshold,
            total=total,
            filtered=filtered,
        )

        return ThresholdSearchResult(
            results=results, total=total, filtered=filtered, threshold=threshold
        )

    async def search_with_rag(self, query: str, top_k: int = 3) -> RagContext:
        """Search and concatenate the winning chunks into a context string.

        Each chunk is tagged with its source path; an empty result yields an
        empty context.
        """
        results = await self.search(query, top_k=top_k)

        if not results:
            return RagContext(context="", results=[])

        context = CONTEXT_SEPARATOR.join(
            f"[{r.document.filepath}]\n{r.chunk.content}" for r in results
        )

        logger.debug(
            "rag_context_built",
            chunks=len(results),
            context_length=len(context),
        )

        return RagContext(context=context, results=results)
