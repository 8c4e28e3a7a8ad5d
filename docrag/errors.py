"""Exception hierarchy for the indexing and retrieval pipeline."""
from typing import Optional


class DocRagError(Exception):
    """Base class for all docrag errors.

    Args:
        message: Human-readable description
        component: Name of the component that failed (e.g. "embedding")
    """

    default_component: Optional[str] = None

    def __init__(self, message: str, component: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.component = component or self.default_component

    def __str__(self) -> str:
        if self.component:
            return f"[{self.component}] {self.message}"
        return self.message


class DocumentNotFound(DocRagError):
    """A source file or stored document does not exist."""

    default_component = "documents"


class DocumentParseError(DocRagError):
    """A markdown file exists but could not be parsed."""

    default_component = "parser"


class ChunkingFailed(DocRagError):
    default_component = "chunker"


class ProviderUnavailable(DocRagError):
    """The Ollama backend could not be reached."""

    default_component = "ollama"


class ProviderTimeout(ProviderUnavailable):
    """The Ollama backend did not answer within the request timeout."""


class EmbeddingFailed(DocRagError):
    """All retries for one text were exhausted."""

    default_component = "embedding"


class ValidationFailed(DocRagError):
    default_component = "validation"


class StorageError(DocRagError):
    default_component = "storage"
