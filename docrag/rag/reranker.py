"""LLM-based reranking of search candidates.

Each candidate is judged independently by the generation model, which is
asked for a single relevance number in [0, 1]. A judgment that cannot be
obtained (timeout, transport failure, error status) scores a neutral 0.5; a
judgment that was obtained but is not a number scores 0.0.
"""
import asyncio
import re
import time
from dataclasses import dataclass
from typing import List, Optional

import httpx
import structlog

from docrag.config import GenerationConfig
from docrag.errors import DocRagError, ProviderUnavailable
from docrag.llm_client import OllamaClient
from docrag.rag.search import SearchResult

logger = structlog.get_logger()

MAX_DOCUMENT_CHARS = 500
NEUTRAL_SCORE = 0.5
UNPARSEABLE_SCORE = 0.0

RELEVANCE_PROMPT = """Rate how relevant the document is to the question on a scale from 0 to 1.
Answer ONLY with a number, no explanation.

Question: {query}

Document: {document}

Score:"""

# Leading number, as a lenient float parser would read it
_NUMBER_PATTERN = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def parse_score(text: str) -> Optional[float]:
    """Read the leading number of a model reply, clamped to [0, 1].

    Returns None if the reply does not start with a number.
    """
    match = _NUMBER_PATTERN.match(text.strip())
    if not match:
        return None
    return max(0.0, min(1.0, float(match.group(0))))


@dataclass
class RankedResult(SearchResult):
    rerank_score: float = 0.0


class LLMReranker:
    """Second-pass relevance scoring with a generation model."""

    def __init__(
        self,
        llm: Optional[OllamaClient] = None,
        config: Optional[GenerationConfig] = None,
    ):
        self.config = config or GenerationConfig()
        self.llm = llm or OllamaClient.for_generation(self.config)

    async def rerank(
        self, query: str, candidates: List[SearchResult], top_k: int = 3
    ) -> List[RankedResult]:
        """Score every candidate concurrently and keep the best ``top_k``.

        The vector score is not used as a tiebreaker; equal rerank scores
        keep their incoming order.

        Args:
            query: User question
            candidates: Results of a similarity search
            top_k: Number of results to keep

        Returns:
            RankedResult list ordered by rerank score, ranks renumbered 1..n
        """
        if not candidates:
            return []

        start = time.perf_counter()
        logger.info("rerank_started", candidates=len(candidates), query_preview=query[:100])

        scores = await asyncio.gather(
            *(self.score_relevance(query, c.chunk.content) for c in candidates)
        )

        ranked = [
            RankedResult(
                chunk=c.chunk,
                score=c.score,
                rank=c.rank,
                document=c.document,
                rerank_score=s,
            )
            for c, s in zip(candidates, scores)
        ]
        ranked.sort(key=lambda r: r.rerank_score, reverse=True)
        ranked = ranked[:top_k]

        for rank, result in enumerate(ranked, 1):
            result.rank = rank

        logger.info(
            "rerank_completed",
            elapsed_ms=round((time.perf_counter() - start) * 1000),
            top_scores=[round(r.rerank_score, 2) for r in ranked],
        )

        return ranked

    async def score_relevance(self, query: str, document: str) -> float:
        """Ask the model how relevant one document is to the query."""
        prompt = RELEVANCE_PROMPT.format(query=query, document=document[:MAX_DOCUMENT_CHARS])

        try:
            reply = await self.llm.generate(
                prompt,
                model=self.config.model,
                timeout=self.config.rerank_timeout,
                temperature=0.0,
            )
        except (ProviderUnavailable, httpx.HTTPError, ValueError) as e:
            # ProviderTimeout is a ProviderUnavailable
            logger.warning("rerank_judgment_unavailable", error=str(e))
            return NEUTRAL_SCORE
        except DocRagError as e:
            logger.warning("rerank_judgment_malformed", error=str(e))
            return UNPARSEABLE_SCORE

        score = parse_score(reply)
        if score is None:
            logger.warning("rerank_score_unparseable", reply=reply[:50])
            return UNPARSEABLE_SCORE

        return score
