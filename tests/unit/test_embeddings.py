"""Tests for the embedding client, driven through a mocked Ollama transport."""
import json

import httpx
import pytest

from docrag.config import EmbeddingConfig
from docrag.errors import EmbeddingFailed, ProviderUnavailable
from docrag.llm_client import OllamaClient
from docrag.rag.embeddings import EmbeddingClient

BASE_URL = "http://ollama.test"


def make_client(handler, **overrides) -> EmbeddingClient:
    settings = {
        "base_url": BASE_URL,
        "model": "nomic-embed-text",
        "timeout": 1.0,
        "max_retries": 3,
        "batch_size": 2,
        "backoff_base": 0.0,
    }
    settings.update(overrides)
    config = EmbeddingConfig(**settings)
    ollama = OllamaClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return EmbeddingClient(config, ollama)


def vector_for(prompt: str):
    return [float(len(prompt)), 1.0, 0.5]


def embedding_handler(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    if body["prompt"].startswith("bad"):
        return httpx.Response(500, json={"error": "model crashed"})
    return httpx.Response(200, json={"embedding": vector_for(body["prompt"])})


async def test_embed_one_returns_vector():
    """Test that a single text is embedded with the configured model."""
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return embedding_handler(request)

    client = make_client(handler)
    vector = await client.embed_one("hello")

    assert vector == [5.0, 1.0, 0.5]
    assert seen == [{"model": "nomic-embed-text", "prompt": "hello"}]


async def test_embed_one_retries_then_succeeds():
    """Test that transient failures are retried."""
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] < 3:
            return httpx.Response(503, json={"error": "loading"})
        return embedding_handler(request)

    vector = await make_client(handler).embed_one("retry")

    assert calls["count"] == 3
    assert vector == vector_for("retry")


async def test_embed_one_raises_after_retries_exhausted():
    """Test that persistent failures raise EmbeddingFailed after max_retries."""
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        return httpx.Response(500, json={"error": "boom"})

    with pytest.raises(EmbeddingFailed):
        await make_client(handler, max_retries=2).embed_one("text")

    assert calls["count"] == 2


async def test_embed_one_rejects_empty_embedding():
    """Test that an empty embedding counts as a failure."""

    def handler(request):
        return httpx.Response(200, json={"embedding": []})

    with pytest.raises(EmbeddingFailed):
        await make_client(handler).embed_one("text")


async def test_connection_failure_is_reported_as_unavailable():
    """Test that an unreachable provider is classified distinctly."""
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable) as exc_info:
        await make_client(handler).embed_one("text")

    assert calls["count"] == 3
    assert exc_info.value.component == "embedding"


async def test_timeout_is_retried_and_reported_as_failure():
    """Test that request timeouts are retried and end as EmbeddingFailed."""
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(EmbeddingFailed):
        await make_client(handler).embed_one("text")

    assert calls["count"] == 3


async def test_embed_batch_preserves_length_and_order_on_failure():
    """Test that failed texts become empty vectors at their own positions."""
    client = make_client(embedding_handler, max_retries=1)
    texts = ["one", "bad two", "three", "four", "bad five"]

    vectors = await client.embed_batch(texts)

    assert len(vectors) == len(texts)
    assert vectors[0] == vector_for("one")
    assert vectors[1] == []
    assert vectors[2] == vector_for("three")
    assert vectors[3] == vector_for("four")
    assert vectors[4] == []


async def test_embed_batch_empty_input():
    """Test that an empty batch makes no requests."""

    def handler(request):
        raise AssertionError("no request expected")

    assert await make_client(handler).embed_batch([]) == []


@pytest.mark.parametrize(
    "installed, expected",
    [
        (["nomic-embed-text:latest", "qwen2.5:3b"], True),
        (["nomic-embed-text"], True),
        (["llama3:8b"], False),
        ([], False),
    ],
)
async def test_health_check_reports_model_presence(installed, expected):
    """Test that the health check looks for the configured model."""

    def handler(request):
        assert request.url.path == "/api/tags"
        return httpx.Response(200, json={"models": [{"name": name} for name in installed]})

    assert await make_client(handler).health_check() is expected


async def test_health_check_unreachable_raises():
    """Test that a connection failure during the health check raises."""

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderUnavailable):
        await make_client(handler).health_check()
