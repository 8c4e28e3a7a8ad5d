"""Application configuration with sensible defaults.

Environment variables are read once into module constants; components never
read them directly. Each component receives one of the dataclasses below,
which are seeded from these constants.
"""
import os
from dataclasses import dataclass, field
from pathlib import Path


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))
NOTES_DIR = Path(os.getenv("NOTES_DIR", str(BASE_DIR / "notes")))

# Ollama configuration
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "nomic-embed-text")
EMBEDDING_TIMEOUT = float(os.getenv("EMBEDDING_TIMEOUT", "30.0"))
EMBEDDING_MAX_RETRIES = int(os.getenv("EMBEDDING_MAX_RETRIES", "3"))
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "16"))

# Generation (answers and rerank judgments)
CHAT_MODEL = os.getenv("CHAT_MODEL", "qwen2.5:3b")
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "60.0"))
RERANK_TIMEOUT = float(os.getenv("RERANK_TIMEOUT", "5.0"))

# Chunking parameters (character-based to avoid tokenizer inconsistencies)
CHUNK_MAX_SIZE = int(os.getenv("CHUNK_MAX_SIZE", "1000"))    # ≈250 tokens
CHUNK_MIN_SIZE = int(os.getenv("CHUNK_MIN_SIZE", "200"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))
CHUNK_STRATEGY = os.getenv("CHUNK_STRATEGY", "recursive")
CHUNK_PRESERVE_HEADINGS = _bool(os.getenv("CHUNK_PRESERVE_HEADINGS", "true"))

# Search
SEARCH_TOP_K = int(os.getenv("SEARCH_TOP_K", "5"))
SEARCH_MIN_SCORE = float(os.getenv("SEARCH_MIN_SCORE", "0.3"))

# Database
INDEX_DB_PATH = Path(os.getenv("INDEX_DB_PATH", str(DATA_DIR / "index.db")))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass
class EmbeddingConfig:
    base_url: str = OLLAMA_BASE_URL
    model: str = EMBEDDING_MODEL
    timeout: float = EMBEDDING_TIMEOUT
    max_retries: int = EMBEDDING_MAX_RETRIES
    batch_size: int = EMBEDDING_BATCH_SIZE
    backoff_base: float = 1.0  # seconds; delay is backoff_base * 2^(attempt-1)


@dataclass
class ChunkingConfig:
    max_chunk_size: int = CHUNK_MAX_SIZE
    min_chunk_size: int = CHUNK_MIN_SIZE
    overlap: int = CHUNK_OVERLAP
    preserve_headings: bool = CHUNK_PRESERVE_HEADINGS
    strategy: str = CHUNK_STRATEGY


@dataclass
class StorageConfig:
    db_path: Path = INDEX_DB_PATH


@dataclass
class SearchConfig:
    default_top_k: int = SEARCH_TOP_K
    min_score: float = SEARCH_MIN_SCORE


@dataclass
class GenerationConfig:
    base_url: str = OLLAMA_BASE_URL
    model: str = CHAT_MODEL
    timeout: float = GENERATION_TIMEOUT
    rerank_timeout: float = RERANK_TIMEOUT


@dataclass
class Settings:
    """All component configurations bundled together."""

    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    chunking: ChunkingConfig = field(default_factory=ChunkingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the current environment.

        Unlike the module defaults, this re-reads os.environ, so it picks up
        variables set after import (e.g. by a CLI flag or a test).
        """

        def _str(name: str, default: str) -> str:
            return os.environ.get(name) or default

        def _int(name: str, default: int) -> int:
            value = os.environ.get(name)
            return int(value) if value else default

        def _float(name: str, default: float) -> float:
            value = os.environ.get(name)
            return float(value) if value else default

        base_url = _str("OLLAMA_BASE_URL", OLLAMA_BASE_URL)
        preserve = os.environ.get("CHUNK_PRESERVE_HEADINGS")

        return cls(
            embedding=EmbeddingConfig(
                base_url=base_url,
                model=_str("EMBEDDING_MODEL", EMBEDDING_MODEL),
                timeout=_float("EMBEDDING_TIMEOUT", EMBEDDING_TIMEOUT),
                max_retries=_int("EMBEDDING_MAX_RETRIES", EMBEDDING_MAX_RETRIES),
                batch_size=_int("EMBEDDING_BATCH_SIZE", EMBEDDING_BATCH_SIZE),
            ),
            chunking=ChunkingConfig(
                max_chunk_size=_int("CHUNK_MAX_SIZE", CHUNK_MAX_SIZE),
                min_chunk_size=_int("CHUNK_MIN_SIZE", CHUNK_MIN_SIZE),
                overlap=_int("CHUNK_OVERLAP", CHUNK_OVERLAP),
                preserve_headings=_bool(preserve) if preserve else CHUNK_PRESERVE_HEADINGS,
                strategy=_str("CHUNK_STRATEGY", CHUNK_STRATEGY),
            ),
            storage=StorageConfig(
                db_path=Path(_str("INDEX_DB_PATH", str(INDEX_DB_PATH))),
            ),
            search=SearchConfig(
                default_top_k=_int("SEARCH_TOP_K", SEARCH_TOP_K),
                min_score=_float("SEARCH_MIN_SCORE", SEARCH_MIN_SCORE),
            ),
            generation=GenerationConfig(
                base_url=base_url,
                model=_str("CHAT_MODEL", CHAT_MODEL),
                timeout=_float("GENERATION_TIMEOUT", GENERATION_TIMEOUT),
                rerank_timeout=_float("RERANK_TIMEOUT", RERANK_TIMEOUT),
            ),
        )
