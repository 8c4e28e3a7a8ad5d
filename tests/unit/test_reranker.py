"""Tests for LLM reranking."""
from unittest.mock import AsyncMock

import httpx
import pytest

from docrag.config import GenerationConfig
from docrag.errors import DocRagError, ProviderTimeout, ProviderUnavailable
from docrag.rag.reranker import LLMReranker, parse_score


def reranker_with(replies):
    """Reranker whose model answers by document content.

    ``replies`` maps a content marker to a reply string or an exception.
    """

    def generate(prompt, **kwargs):
        for marker, reply in replies.items():
            if marker in prompt:
                if isinstance(reply, Exception):
                    raise reply
                return reply
        return "0"

    llm = AsyncMock()
    llm.generate = AsyncMock(side_effect=generate)
    config = GenerationConfig(model="judge", rerank_timeout=5.0)
    return LLMReranker(llm, config), llm


@pytest.mark.parametrize(
    "reply, expected",
    [
        ("0.8", 0.8),
        (" 0.35\n", 0.35),
        ("0.9 - highly relevant", 0.9),
        ("1", 1.0),
        ("1.7", 1.0),
        ("-0.2", 0.0),
        (".5", 0.5),
        ("relevant", None),
        ("", None),
    ],
)
def test_parse_score(reply, expected):
    assert parse_score(reply) == expected


async def test_transport_error_gets_neutral_score(make_result):
    """Test that an unreachable judgment scores 0.5 and is ranked by that score."""
    candidates = [
        make_result(0.7, "a.md", "alpha content", rank=1),
        make_result(0.6, "b.md", "beta content", rank=2),
        make_result(0.5, "c.md", "gamma content", rank=3),
    ]
    reranker, _ = reranker_with(
        {
            "alpha content": "0.3",
            "beta content": ProviderUnavailable("connection refused"),
            "gamma content": "0.9",
        }
    )

    ranked = await reranker.rerank("question", candidates, top_k=3)

    assert [r.document.filepath for r in ranked] == ["c.md", "b.md", "a.md"]
    assert [r.rerank_score for r in ranked] == [0.9, 0.5, 0.3]
    assert [r.rank for r in ranked] == [1, 2, 3]
    assert [r.score for r in ranked] == [0.5, 0.6, 0.7]


@pytest.mark.parametrize(
    "failure",
    [
        ProviderTimeout("timed out"),
        httpx.HTTPStatusError(
            "server error",
            request=httpx.Request("POST", "http://ollama.test/api/generate"),
            response=httpx.Response(500),
        ),
    ],
)
async def test_timeouts_and_error_statuses_are_neutral(make_result, failure):
    reranker, _ = reranker_with({"alpha": failure})
    ranked = await reranker.rerank("q", [make_result(0.7, "a.md", "alpha")])
    assert ranked[0].rerank_score == 0.5


async def test_unparseable_reply_scores_zero(make_result):
    """Test that a non-numeric judgment counts as irrelevant."""
    reranker, _ = reranker_with({"alpha": "Quite relevant, I think", "beta": "0.2"})

    ranked = await reranker.rerank(
        "q", [make_result(0.9, "a.md", "alpha"), make_result(0.8, "b.md", "beta")]
    )

    assert [(r.document.filepath, r.rerank_score) for r in ranked] == [("b.md", 0.2), ("a.md", 0.0)]


async def test_malformed_response_scores_zero(make_result):
    reranker, _ = reranker_with({"alpha": DocRagError("Malformed response", "generation")})
    ranked = await reranker.rerank("q", [make_result(0.9, "a.md", "alpha")])
    assert ranked[0].rerank_score == 0.0


async def test_rerank_truncates_and_keeps_stable_order(make_result):
    """Test top_k truncation and that ties keep their incoming order."""
    candidates = [make_result(0.9 - i / 10, f"{i}.md", f"doc {i}", rank=i + 1) for i in range(5)]
    reranker, _ = reranker_with({"doc 3": "0.9"})  # all others reply "0"

    ranked = await reranker.rerank("q", candidates, top_k=3)

    assert [r.document.filepath for r in ranked] == ["3.md", "0.md", "1.md"]
    assert [r.rank for r in ranked] == [1, 2, 3]


async def test_rerank_empty_candidates(make_result):
    reranker, llm = reranker_with({})
    assert await reranker.rerank("q", []) == []
    llm.generate.assert_not_awaited()


async def test_judgment_request_is_bounded(make_result):
    """Test content truncation, deterministic sampling and the rerank timeout."""
    reranker, llm = reranker_with({})
    long_content = "y" * 1200

    await reranker.rerank("what is y?", [make_result(0.5, "y.md", long_content)])

    prompt = llm.generate.await_args.args[0]
    kwargs = llm.generate.await_args.kwargs
    assert "y" * 500 in prompt
    assert "y" * 501 not in prompt
    assert "what is y?" in prompt
    assert kwargs["temperature"] == 0.0
    assert kwargs["timeout"] == 5.0
    assert kwargs["model"] == "judge"
