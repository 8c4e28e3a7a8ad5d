"""Retrieval strategies built on search, reranking and generation.

Strategies:
- Plain RAG: search, concatenate context, generate
- Filtered RAG: threshold search, at most 3 results, scores shown in context
- Reranked RAG: loose threshold search, LLM rerank, both scores in context
- Comparisons across modes, thresholds and methods

Every call is independent; the orchestrator keeps no state between calls.
"""
import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, List, Optional, Protocol, Sequence, Tuple, TypeVar

import structlog
from pydantic import BaseModel, Field

from docrag.errors import ValidationFailed
from docrag.rag.reranker import LLMReranker
from docrag.rag.search import CONTEXT_SEPARATOR, SimilaritySearch

logger = structlog.get_logger()

T = TypeVar("T")

NO_RELEVANT_ANSWER = "No relevant information was found in the knowledge base."
DEFAULT_THRESHOLD = 0.7
CANDIDATE_POOL = 10
MAX_CONTEXT_RESULTS = 3
MAX_THRESHOLDS = 5

RAG_PROMPT = """Using the following context, answer the question.
If the context does not contain enough information, say so.

CONTEXT:
{context}

QUESTION: {question}

ANSWER:"""

VERDICT_NOTHING_FOUND = (
    "Filtering and reranking found no relevant documents. "
    "Basic RAG used every available document."
)
VERDICT_RERANK_CONFIDENT = (
    "Reranking is highly confident in relevance (score > 0.8). "
    "This method is recommended."
)
VERDICT_FILTER_ADEQUATE = (
    "Filtering found enough relevant documents. Reranking may add precision."
)
VERDICT_INCONCLUSIVE = (
    "Check the quality of the indexed documents or refine the query."
)


class Generator(Protocol):
    async def generate(self, prompt: str) -> str: ...


class RAGResponse(BaseModel):
    """Answer from plain RAG or a direct model call."""
    answer: str
    sources: List[str] = Field(default_factory=list)
    context: Optional[str] = None
    used_context: bool


class CompareResult(BaseModel):
    question: str
    with_rag: RAGResponse
    without_rag: RAGResponse
    timestamp: str


class FilteredRAGResponse(BaseModel):
    """Answer built from results above a similarity threshold."""
    answer: str
    sources: List[str]
    scores: List[float]
    used_documents: int
    total_candidates: int
    threshold: float


class RerankSource(BaseModel):
    source: str
    vector_score: float
    rerank_score: float


class PipelineStats(BaseModel):
    total_candidates: int
    after_filter: int
    after_rerank: int


class RerankingRAGResponse(BaseModel):
    """Answer built from reranked candidates."""
    answer: str
    sources: List[RerankSource]
    pipeline: PipelineStats


class ThresholdRun(BaseModel):
    threshold: float
    answer: str
    sources: List[str]
    scores: List[float]
    used_documents: int
    total_candidates: int


class Recommendation(BaseModel):
    best_threshold: float
    reason: str


class ThresholdComparisonResult(BaseModel):
    question: str
    results: List[ThresholdRun]
    recommendation: Recommendation


class BasicMethod(BaseModel):
    answer: str
    sources: List[str]
    time_ms: int


class FilteredMethod(BaseModel):
    answer: str
    sources: List[str]
    scores: List[float]
    used_documents: int
    time_ms: int


class RerankedMethod(BaseModel):
    answer: str
    sources: List[RerankSource]
    pipeline: PipelineStats
    time_ms: int


class MethodResults(BaseModel):
    basic: BasicMethod
    filtered: FilteredMethod
    reranked: RerankedMethod


class DocumentsUsed(BaseModel):
    basic: int
    filtered: int
    reranked: int


class MethodAnalysis(BaseModel):
    documents_used: DocumentsUsed
    quality_comparison: str


class MethodComparisonResult(BaseModel):
    question: str
    methods: MethodResults
    analysis: MethodAnalysis


def _check_threshold(threshold: float) -> None:
    if not 0.0 <= threshold <= 1.0:
        raise ValidationFailed(f"threshold must be within [0, 1], got {threshold}")


async def _timed(awaitable: Awaitable[T]) -> Tuple[T, int]:
    start = time.perf_counter()
    result = await awaitable
    return result, round((time.perf_counter() - start) * 1000)


class RetrievalOrchestrator:
    """Composes search, reranking and generation into query strategies."""

    def __init__(
        self,
        search: SimilaritySearch,
        reranker: LLMReranker,
        generator: Generator,
    ):
        """Initialize the orchestrator.

        Args:
            search: Similarity search over the index
            reranker: LLM reranker for the reranked strategy
            generator: Anything with ``async generate(prompt) -> str``
        """
        self.search = search
        self.reranker = reranker
        self.generator = generator

    @staticmethod
    def build_prompt(context: str, question: str) -> str:
        return RAG_PROMPT.format(context=context, question=question)

    async def query_with_rag(self, question: str, top_k: int = 3) -> RAGResponse:
        """Answer with the best-matching chunks as context.

        With no matching chunks the bare question is sent to the model.
        """
        logger.info("rag_query", question_preview=question[:100], top_k=top_k)
        start = time.perf_counter()

        rag = await self.search.search_with_rag(question, top_k)
        prompt = self.build_prompt(rag.context, question) if rag.context else question
        answer = await self.generator.generate(prompt)

        logger.info(
            "rag_query_completed",
            chunks=len(rag.results),
            elapsed_ms=round((time.perf_counter() - start) * 1000),
        )

        return RAGResponse(
            answer=answer,
            sources=[r.document.filepath for r in rag.results],
            context=rag.context,
            used_context=bool(rag.context),
        )

    async def query_without_rag(self, question: str) -> RAGResponse:
        logger.info("direct_query", question_preview=question[:100])
        answer = await self.generator.generate(question)
        return RAGResponse(answer=answer, used_context=False)

    async def compare(self, question: str) -> CompareResult:
        """Run RAG and direct answering side by side."""
        with_rag, without_rag = await asyncio.gather(
            self.query_with_rag(question),
            self.query_without_rag(question),
        )
        return CompareResult(
            question=question,
            with_rag=with_rag,
            without_rag=without_rag,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    async def query_with_filtered_rag(
        self, question: str, threshold: float = DEFAULT_THRESHOLD
    ) -> FilteredRAGResponse:
        """Answer from at most three results scoring at or above ``threshold``.

        When nothing passes the threshold a canned answer is returned and the
        model is not called.

        Raises:
            ValidationFailed: If threshold is outside [0, 1]
        """
        _check_threshold(threshold)
        logger.info("filtered_rag_query", question_preview=question[:100], threshold=threshold)

        found = await self.search.search_with_threshold(question, CANDIDATE_POOL, threshold)

        if found.filtered == 0:
            logger.warning("filtered_rag_no_results", threshold=threshold, total=found.total)
            return FilteredRAGResponse(
                answer=NO_RELEVANT_ANSWER,
                sources=[],
                scores=[],
                used_documents=0,
                total_candidates=found.total,
                threshold=threshold,
            )

        top = found.results[:MAX_CONTEXT_RESULTS]
        context = CONTEXT_SEPARATOR.join(
            f"[{r.document.filepath}] (score: {r.score:.2f})\n{r.chunk.content}" for r in top
        )
        answer = await self.generator.generate(self.build_prompt(context, question))

        return FilteredRAGResponse(
            answer=answer,
            sources=[r.document.filepath for r in top],
            scores=[r.score for r in top],
            used_documents=len(top),
            total_candidates=found.total,
            threshold=threshold,
        )

    async def query_with_reranking(
        self, question: str, initial_threshold: float = 0.6
    ) -> RerankingRAGResponse:
        """Answer from candidates reranked by the model.

        Raises:
            ValidationFailed: If initial_threshold is outside [0, 1]
        """
        _check_threshold(initial_threshold)
        logger.info(
            "reranking_rag_query",
            question_preview=question[:100],
            initial_threshold=initial_threshold,
        )

        found = await self.search.search_with_threshold(
            question, CANDIDATE_POOL, initial_threshold
        )

        if found.filtered == 0:
            logger.warning("reranking_rag_no_results", threshold=initial_threshold, total=found.total)
            return RerankingRAGResponse(
                answer=NO_RELEVANT_ANSWER,
                sources=[],
                pipeline=PipelineStats(
                    total_candidates=found.total, after_filter=0, after_rerank=0
                ),
            )

        ranked = await self.reranker.rerank(question, found.results, MAX_CONTEXT_RESULTS)
        context = CONTEXT_SEPARATOR.join(
            f"[{r.document.filepath}] (vector: {r.score:.2f}, rerank: {r.rerank_score:.2f})\n"
            f"{r.chunk.content}"
            for r in ranked
        )
        answer = await self.generator.generate(self.build_prompt(context, question))

        return RerankingRAGResponse(
            answer=answer,
            sources=[
                RerankSource(
                    source=r.document.filepath,
                    vector_score=r.score,
                    rerank_score=r.rerank_score,
                )
                for r in ranked
            ],
            pipeline=PipelineStats(
                total_candidates=found.total,
                after_filter=found.filtered,
                after_rerank=len(ranked),
            ),
        )

    async def compare_thresholds(
        self, question: str, thresholds: Optional[Sequence[float]] = None
    ) -> ThresholdComparisonResult:
        """Run filtered RAG at several thresholds and recommend one.

        Raises:
            ValidationFailed: If the list is empty, longer than five, or holds
                a value outside [0, 1]
        """
        thresholds = list(thresholds) if thresholds is not None else [0.5, 0.7, 0.8]
        if not 1 <= len(thresholds) <= MAX_THRESHOLDS:
            raise ValidationFailed(
                f"between 1 and {MAX_THRESHOLDS} thresholds required, got {len(thresholds)}"
            )
        for threshold in thresholds:
            _check_threshold(threshold)

        responses = await asyncio.gather(
            *(self.query_with_filtered_rag(question, t) for t in thresholds)
        )

        runs = [
            ThresholdRun(
                threshold=t,
                answer=r.answer,
                sources=r.sources,
                scores=r.scores,
                used_documents=r.used_documents,
                total_candidates=r.total_candidates,
            )
            for t, r in zip(thresholds, responses)
        ]
        recommendation = self.recommend_threshold(runs)

        logger.info(
            "threshold_comparison_completed",
            thresholds=thresholds,
            best_threshold=recommendation.best_threshold,
        )

        return ThresholdComparisonResult(
            question=question, results=runs, recommendation=recommendation
        )

    @staticmethod
    def recommend_threshold(runs: List[ThresholdRun]) -> Recommendation:
        """Lowest threshold keeping two or more documents averaging above 0.7."""
        for run in sorted(runs, key=lambda r: r.threshold):
            if run.used_documents >= 2 and run.scores:
                average = sum(run.scores) / len(run.scores)
                if average > 0.7:
                    return Recommendation(
                        best_threshold=run.threshold,
                        reason=f"{run.used_documents} documents with average score {average:.2f}",
                    )

        return Recommendation(best_threshold=DEFAULT_THRESHOLD, reason="default threshold used")

    async def compare_methods(self, question: str) -> MethodComparisonResult:
        """Time plain, filtered and reranked RAG on the same question."""
        (basic, basic_ms), (filtered, filtered_ms), (reranked, reranked_ms) = await asyncio.gather(
            _timed(self.query_with_rag(question)),
            _timed(self.query_with_filtered_rag(question, DEFAULT_THRESHOLD)),
            _timed(self.query_with_reranking(question)),
        )

        analysis = MethodAnalysis(
            documents_used=DocumentsUsed(
                basic=len(basic.sources),
                filtered=filtered.used_documents,
                reranked=len(reranked.sources),
            ),
            quality_comparison=self.judge_methods(filtered, reranked),
        )

        logger.info(
            "method_comparison_completed",
            basic_ms=basic_ms,
            filtered_ms=filtered_ms,
            reranked_ms=reranked_ms,
        )

        return MethodComparisonResult(
            question=question,
            methods=MethodResults(
                basic=BasicMethod(answer=basic.answer, sources=basic.sources, time_ms=basic_ms),
                filtered=FilteredMethod(
                    answer=filtered.answer,
                    sources=filtered.sources,
                    scores=filtered.scores,
                    used_documents=filtered.used_documents,
                    time_ms=filtered_ms,
                ),
                reranked=RerankedMethod(
                    answer=reranked.answer,
                    sources=reranked.sources,
                    pipeline=reranked.pipeline,
                    time_ms=reranked_ms,
                ),
            ),
            analysis=analysis,
        )

    @staticmethod
    def judge_methods(filtered: FilteredRAGResponse, reranked: RerankingRAGResponse) -> str:
        # Checked in this order; the first match wins
        if filtered.used_documents == 0 and not reranked.sources:
            return VERDICT_NOTHING_FOUND
        if reranked.sources and reranked.sources[0].rerank_score > 0.8:
            return VERDICT_RERANK_CONFIDENT
        if filtered.scores and filtered.scores[0] > 0.7 and filtered.used_documents >= 2:
            return VERDICT_FILTER_ADEQUATE
        return VERDICT_INCONCLUSIVE
