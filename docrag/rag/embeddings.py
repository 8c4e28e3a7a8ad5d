"""Embedding generation through Ollama with retry and backoff.

Batches keep their input order and length even when individual texts fail:
a failed text yields an empty vector at its position so callers can zip the
results back onto their chunks and skip the empty ones.
"""
import asyncio
from typing import List, Optional

import httpx
import structlog

from docrag.config import EmbeddingConfig
from docrag.errors import EmbeddingFailed, ProviderTimeout, ProviderUnavailable
from docrag.llm_client import OllamaClient

logger = structlog.get_logger()


class EmbeddingClient:
    """Turns text into fixed-dimension vectors via an Ollama embedding model."""

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        client: Optional[OllamaClient] = None,
    ):
        """Initialize the embedding client.

        Args:
            config: Embedding configuration (defaults from docrag.config)
            client: Ollama client to use (built from the config if omitted)
        """
        self.config = config or EmbeddingConfig()
        self.client = client or OllamaClient(
            base_url=self.config.base_url, timeout=self.config.timeout
        )

        logger.info(
            "embedding_client_initialized",
            model=self.config.model,
            batch_size=self.config.batch_size,
            max_retries=self.config.max_retries,
        )

    @property
    def model(self) -> str:
        return self.config.model

    async def embed_one(self, text: str) -> List[float]:
        """Embed a single text, retrying with exponential backoff.

        Args:
            text: Text to embed

        Returns:
            Embedding vector

        Raises:
            ProviderUnavailable: If the last attempt could not reach Ollama
            EmbeddingFailed: If all attempts failed for any other reason
        """
        attempts = max(1, self.config.max_retries)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.embeddings(
                    prompt=text,
                    model=self.config.model,
                    timeout=self.config.timeout,
                )
                embedding = response.get("embedding")
                if not isinstance(embedding, list) or not embedding:
                    raise EmbeddingFailed("Malformed embedding response from Ollama")

                return [float(x) for x in embedding]

            except ProviderTimeout as e:
                last_error = e
                kind = "timeout"
            except ProviderUnavailable as e:
                last_error = e
                kind = "provider_unavailable"
            except (EmbeddingFailed, httpx.HTTPError, ValueError, TypeError) as e:
                last_error = e
                kind = "request_failed"

            if attempt < attempts:
                delay = self.config.backoff_base * 2 ** (attempt - 1)
                logger.warning(
                    "embedding_attempt_failed",
                    attempt=attempt,
                    max_retries=attempts,
                    retry_in=delay,
                    failure=kind,
                    error=str(last_error),
                )
                await asyncio.sleep(delay)

        logger.error(
            "embedding_retries_exhausted",
            max_retries=attempts,
            text_preview=text[:100],
            error=str(last_error),
        )

        if isinstance(last_error, ProviderUnavailable) and not isinstance(last_error, ProviderTimeout):
            raise ProviderUnavailable(
                f"Embedding provider unreachable after {attempts} attempts: {last_error.message}",
                "embedding",
            ) from last_error
        raise EmbeddingFailed(
            f"Failed to generate embedding after {attempts} attempts: {last_error}"
        ) from last_error

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed many texts, preserving order and length.

        Texts are processed in groups of ``batch_size``; the items of a group
        run concurrently and groups run one after another.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text; ``[]`` where embedding failed
        """
        if not texts:
            return []

        batch_size = max(1, self.config.batch_size)
        total_batches = (len(texts) + batch_size - 1) // batch_size
        results: List[List[float]] = []

        logger.info(
            "embedding_batch_started",
            text_count=len(texts),
            batches=total_batches,
        )

        for start in range(0, len(texts), batch_size):
            batch = texts[start : start + batch_size]
            batch_results = await asyncio.gather(
                *(self._embed_or_empty(text, start + offset) for offset, text in enumerate(batch))
            )
            results.extend(batch_results)

            logger.debug(
                "embedding_batch_completed",
                batch=start // batch_size + 1,
                batches=total_batches,
                size=len(batch),
            )

        succeeded = sum(1 for vector in results if vector)
        logger.info(
            "embedding_batch_finished",
            succeeded=succeeded,
            failed=len(texts) - succeeded,
            total=len(texts),
        )

        return results

    async def _embed_or_empty(self, text: str, index: int) -> List[float]:
        try:
            return await self.embed_one(text)
        except ProviderUnavailable as e:
            logger.warning("embedding_skipped_provider_unavailable", index=index, error=str(e))
        except EmbeddingFailed as e:
            logger.warning("embedding_skipped", index=index, error=str(e))
        return []

    async def health_check(self) -> bool:
        """Check that Ollama is reachable and the model is installed.

        Returns:
            True if the configured model is listed, False otherwise

        Raises:
            ProviderUnavailable: If Ollama cannot be reached
        """
        try:
            models = await self.client.list_models()
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Ollama health check failed: {e}", "embedding") from e

        wanted = self.config.model
        found = any(
            name == wanted
            or name.split(":")[0] == wanted.split(":")[0]
            or wanted in name
            for name in models
        )

        if not found:
            logger.warning("embedding_model_missing", model=wanted, available=models)
            return False

        logger.info("embedding_provider_healthy", model=wanted)
        return True
