"""Ollama HTTP client wrapper with error handling."""
import httpx
from typing import Any, Dict, List, Optional
import structlog

from docrag import config
from docrag.errors import DocRagError, ProviderTimeout, ProviderUnavailable

logger = structlog.get_logger()


class OllamaClient:
    """Async client for interacting with the Ollama API."""

    def __init__(
        self,
        base_url: str = None,
        timeout: float = 60.0,
        model: str = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            timeout: Default request timeout in seconds
            model: Default generation model (defaults to config.CHAT_MODEL)
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.timeout = timeout
        self.model = model or config.CHAT_MODEL
        self._transport = transport

    @classmethod
    def for_generation(
        cls, generation: config.GenerationConfig, **kwargs
    ) -> "OllamaClient":
        return cls(
            base_url=generation.base_url,
            timeout=generation.timeout,
            model=generation.model,
            **kwargs,
        )

    def _client(self, timeout: Optional[float]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout if timeout is not None else self.timeout,
            transport=self._transport,
        )

    async def _post(
        self, path: str, payload: Dict[str, Any], timeout: Optional[float]
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with self._client(timeout) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
                return response.json()
        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise ProviderUnavailable(
                f"Cannot connect to Ollama at {self.base_url}: {e}"
            ) from e
        except httpx.TimeoutException as e:
            logger.warning("ollama_timeout", path=path, timeout=timeout or self.timeout)
            raise ProviderTimeout(
                f"Ollama request to {path} timed out after {timeout or self.timeout}s"
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                path=path,
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise

    async def embeddings(
        self,
        prompt: str,
        model: str = None,
        timeout: Optional[float] = None,
    ) -> Dict:
        """Generate embeddings for a text prompt.

        Args:
            prompt: Text to embed
            model: Model to use (defaults to config.EMBEDDING_MODEL)
            timeout: Per-request timeout override in seconds

        Returns:
            Response dict with 'embedding' list

        Raises:
            ProviderUnavailable: If Ollama cannot be reached
            ProviderTimeout: If the request timed out
            httpx.HTTPError: On other API errors
        """
        model = model or config.EMBEDDING_MODEL

        logger.debug(
            "ollama_embedding_request",
            model=model,
            prompt_length=len(prompt),
        )

        data = await self._post(
            "/api/embeddings", {"model": model, "prompt": prompt}, timeout
        )

        logger.debug(
            "ollama_embedding_response",
            model=model,
            dimension=len(data.get("embedding") or []),
        )

        return data

    async def generate(
        self,
        prompt: str,
        model: str = None,
        timeout: Optional[float] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a single-prompt completion request to Ollama.

        Args:
            prompt: Full prompt text
            model: Model to use (defaults to the client's model)
            timeout: Per-request timeout override in seconds
            temperature: Sampling temperature (0.0-2.0)

        Returns:
            Generated text, stripped

        Raises:
            ProviderUnavailable: If Ollama cannot be reached
            ProviderTimeout: If generation timed out
            DocRagError: If the response has no text
        """
        model = model or self.model

        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
        }

        if temperature is not None:
            payload["options"] = {"temperature": temperature}

        logger.info("ollama_generate_request", model=model, prompt_length=len(prompt))

        data = await self._post("/api/generate", payload, timeout)

        text = data.get("response")
        if not isinstance(text, str):
            raise DocRagError("Malformed response from Ollama /api/generate", "generation")

        logger.info("ollama_generate_response", model=model, response_length=len(text))

        return text.strip()

    async def list_models(self, timeout: float = 5.0) -> List[str]:
        """List all available Ollama models.

        Returns:
            List of model names

        Raises:
            ProviderUnavailable: If Ollama cannot be reached or times out
            httpx.HTTPError: On other API errors
        """
        try:
            async with self._client(timeout) as client:
                response = await client.get(f"{self.base_url}/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            logger.error("ollama_list_models_error", error=str(e), base_url=self.base_url)
            raise ProviderUnavailable(
                f"Cannot reach Ollama at {self.base_url}: {e}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise
