"""SQLite-backed store for documents, chunks and embeddings.

Stores:
- Documents with their frontmatter metadata
- Chunks in document order
- Embeddings as packed little-endian float32 blobs

Deleting a document cascades to its chunks and their embeddings through
foreign keys, so every connection enables ``PRAGMA foreign_keys``.
"""
import json
import sqlite3
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional
from contextlib import contextmanager

import numpy as np
import structlog

from docrag.config import StorageConfig
from docrag.errors import DocumentNotFound, StorageError
from docrag.rag.chunker import Chunk
from docrag.rag.md_parser import ParsedDocument

logger = structlog.get_logger()

VECTOR_DTYPE = np.dtype("<f4")

SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    id TEXT PRIMARY KEY,
    filepath TEXT NOT NULL UNIQUE,
    title TEXT,
    metadata TEXT,
    created_at TEXT NOT NULL,
    indexed_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS chunks (
    id TEXT PRIMARY KEY,
    document_id TEXT NOT NULL,
    content TEXT NOT NULL,
    position INTEGER NOT NULL,
    metadata TEXT,
    FOREIGN KEY (document_id) REFERENCES documents(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS embeddings (
    chunk_id TEXT PRIMARY KEY,
    vector BLOB NOT NULL,
    model TEXT NOT NULL,
    dimension INTEGER NOT NULL,
    FOREIGN KEY (chunk_id) REFERENCES chunks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id);
CREATE INDEX IF NOT EXISTS idx_chunks_position ON chunks(document_id, position);
CREATE INDEX IF NOT EXISTS idx_embeddings_model ON embeddings(model);
"""


def pack_vector(vector) -> bytes:
    """Serialize a vector as raw little-endian float32 bytes."""
    return np.asarray(vector, dtype=VECTOR_DTYPE).tobytes()


def unpack_vector(blob: bytes) -> np.ndarray:
    """View stored bytes as a float32 array without copying or parsing."""
    return np.frombuffer(blob, dtype=VECTOR_DTYPE)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class StoredDocument:
    """A document row."""

    id: str
    filepath: str
    title: Optional[str]
    metadata: Dict[str, Any]
    created_at: str
    indexed_at: str

    @property
    def tags(self) -> List[str]:
        tags = self.metadata.get("tags") or []
        if isinstance(tags, str):
            return [tags]
        return [str(t) for t in tags]

    @property
    def display_title(self) -> str:
        return self.title or self.metadata.get("title") or self.filepath


@dataclass
class EmbeddingRecord:
    """An embedding joined with its chunk and the owning document's title."""

    chunk_id: str
    vector: np.ndarray
    model: str
    dimension: int
    chunk: Chunk
    document_title: str = ""


class VectorStore:
    """Persistence for documents, chunks and embeddings."""

    def __init__(self, config: Optional[StorageConfig] = None):
        """Initialize the store.

        Args:
            config: Storage configuration (defaults from docrag.config)
        """
        self.config = config or StorageConfig()
        self.db_path = Path(self.config.db_path)
        self._initialized = False

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection with foreign keys enforced.

        Returns:
            sqlite3.Connection with row_factory set to sqlite3.Row
        """
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _connect(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back and wrap errors."""
        if not self._initialized:
            self.initialize()

        conn = self.get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("storage_operation_failed", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the database file and schema if they don't exist.

        Enables write-ahead logging so readers are not blocked by the writer.
        """
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = self.get_connection()
            try:
                conn.execute("PRAGMA journal_mode = WAL")
                conn.executescript(SCHEMA)
                conn.commit()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            logger.error("database_init_failed", db_path=str(self.db_path), error=str(e))
            raise StorageError(f"Failed to initialize database at {self.db_path}: {e}") from e

        self._initialized = True
        logger.info("database_initialized", db_path=str(self.db_path))

    # Writes

    @staticmethod
    def _insert_document(conn: sqlite3.Connection, document: ParsedDocument) -> str:
        document_id = str(uuid.uuid4())
        now = _utcnow()

        # A document can't be indexed before it was created
        created = _parse_timestamp(document.metadata.get("created")) or now
        created = min(created, now)

        conn.execute(
            """
            INSERT INTO documents (id, filepath, title, metadata, created_at, indexed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                document_id,
                document.filepath,
                document.title,
                json.dumps(document.metadata, default=str),
                created.isoformat(),
                now.isoformat(),
            ),
        )
        return document_id

    @staticmethod
    def _insert_chunks(conn: sqlite3.Connection, chunks: List[Chunk]) -> None:
        conn.executemany(
            """
            INSERT INTO chunks (id, document_id, content, position, metadata)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                (
                    chunk.id,
                    chunk.document_id,
                    chunk.content,
                    chunk.position,
                    json.dumps(chunk.metadata),
                )
                for chunk in chunks
            ],
        )

    def save_document(self, document: ParsedDocument) -> str:
        """Insert a parsed document.

        Args:
            document: Parsed markdown document

        Returns:
            ID of the new document
        """
        with self._connect("save_document") as conn:
            document_id = self._insert_document(conn, document)

        logger.info("document_saved", document_id=document_id, path=document.filepath)
        return document_id

    def save_chunks(self, chunks: List[Chunk]) -> None:
        """Insert chunks in a single transaction; all are stored or none.

        Args:
            chunks: Chunks with document_id already assigned

        Raises:
            StorageError: If any insert fails (nothing is stored)
        """
        if not chunks:
            return

        with self._connect("save_chunks") as conn:
            self._insert_chunks(conn, chunks)

        logger.info("chunks_saved", count=len(chunks), document_id=chunks[0].document_id)

    def replace_document(self, document: ParsedDocument, chunks: List[Chunk]) -> str:
        """Store a document and its chunks, replacing any copy at the same path.

        The old copy is removed, and the new document and its chunks are
        inserted, in one transaction. On failure the previous copy stays
        indexed and nothing of the new one is visible.

        Args:
            document: Parsed markdown document
            chunks: Its chunks; their document_id is assigned here

        Returns:
            ID of the new document

        Raises:
            StorageError: If any statement fails (nothing changes)
        """
        with self._connect("replace_document") as conn:
            replaced = conn.execute(
                "DELETE FROM documents WHERE filepath = ?", (document.filepath,)
            ).rowcount
            document_id = self._insert_document(conn, document)
            for chunk in chunks:
                chunk.document_id = document_id
            self._insert_chunks(conn, chunks)

        logger.info(
            "document_replaced" if replaced else "document_saved",
            document_id=document_id,
            path=document.filepath,
            chunk_count=len(chunks),
        )
        return document_id

    def save_embedding(self, chunk_id: str, vector, model: str) -> None:
        """Store (or replace) the embedding of a chunk.

        Args:
            chunk_id: ID of an existing chunk
            vector: Sequence of floats
            model: Name of the model that produced the vector
        """
        blob = pack_vector(vector)
        dimension = len(blob) // VECTOR_DTYPE.itemsize

        with self._connect("save_embedding") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO embeddings (chunk_id, vector, model, dimension)
                VALUES (?, ?, ?, ?)
                """,
                (chunk_id, blob, model, dimension),
            )

        logger.debug("embedding_saved", chunk_id=chunk_id, dimension=dimension)

    def delete_document(self, document_id: str) -> None:
        """Delete a document together with its chunks and embeddings.

        Raises:
            DocumentNotFound: If no document has this id
        """
        with self._connect("delete_document") as conn:
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
            deleted = cursor.rowcount

        if deleted == 0:
            raise DocumentNotFound(f"Document not found: {document_id}")

        logger.info("document_deleted", document_id=document_id)

    # Reads

    @staticmethod
    def _row_to_document(row: sqlite3.Row) -> StoredDocument:
        try:
            metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        except json.JSONDecodeError:
            logger.warning("document_metadata_corrupt", document_id=row["id"])
            metadata = {}
        return StoredDocument(
            id=row["id"],
            filepath=row["filepath"],
            title=row["title"],
            metadata=metadata,
            created_at=row["created_at"],
            indexed_at=row["indexed_at"],
        )

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row, document_title: str = "") -> Chunk:
        try:
            metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        except json.JSONDecodeError:
            logger.warning("chunk_metadata_corrupt", chunk_id=row["id"])
            metadata = {}
        return Chunk(
            id=row["id"],
            document_id=row["document_id"],
            content=row["content"],
            position=row["position"],
            char_start=metadata.get("char_start", 0),
            char_end=metadata.get("char_end", 0),
            document_title=document_title or metadata.get("document_title", ""),
            section_heading=metadata.get("section_heading"),
            token_count=metadata.get("token_count", 0),
        )

    def get_document(self, document_id: str) -> Optional[StoredDocument]:
        with self._connect("get_document") as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ?", (document_id,)
            ).fetchone()
        return self._row_to_document(row) if row else None

    def get_document_by_path(self, filepath: str) -> Optional[StoredDocument]:
        with self._connect("get_document_by_path") as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE filepath = ?", (filepath,)
            ).fetchone()
        return self._row_to_document(row) if row else None

    def list_documents(self) -> List[StoredDocument]:
        """All documents, most recently indexed first."""
        with self._connect("list_documents") as conn:
            rows = conn.execute(
                "SELECT * FROM documents ORDER BY indexed_at DESC"
            ).fetchall()
        return [self._row_to_document(row) for row in rows]

    def get_chunks_for_document(self, document_id: str) -> List[Chunk]:
        """Chunks of a document ordered by position (empty if none)."""
        with self._connect("get_chunks_for_document") as conn:
            rows = conn.execute(
                "SELECT * FROM chunks WHERE document_id = ? ORDER BY position ASC",
                (document_id,),
            ).fetchall()
        return [self._row_to_chunk(row) for row in rows]

    def get_all_embeddings_joined(self, model: Optional[str] = None) -> List[EmbeddingRecord]:
        """Every embedding with its chunk and the document title.

        Rows whose stored dimension disagrees with the blob length are
        skipped and logged.

        Args:
            model: Only return embeddings produced by this model

        Returns:
            List of EmbeddingRecord
        """
        query = """
            SELECT
                e.chunk_id, e.vector, e.model, e.dimension,
                c.id, c.document_id, c.content, c.position, c.metadata,
                d.title AS document_title, d.filepath
            FROM embeddings e
            JOIN chunks c ON e.chunk_id = c.id
            JOIN documents d ON c.document_id = d.id
        """
        params: tuple = ()
        if model:
            query += " WHERE e.model = ?"
            params = (model,)

        with self._connect("get_all_embeddings_joined") as conn:
            rows = conn.execute(query, params).fetchall()

        records = []
        for row in rows:
            vector = unpack_vector(row["vector"])
            if len(vector) != row["dimension"]:
                logger.warning(
                    "embedding_dimension_corrupt",
                    chunk_id=row["chunk_id"],
                    stored_dimension=row["dimension"],
                    actual_dimension=len(vector),
                )
                continue

            title = row["document_title"] or row["filepath"]
            records.append(
                EmbeddingRecord(
                    chunk_id=row["chunk_id"],
                    vector=vector,
                    model=row["model"],
                    dimension=row["dimension"],
                    chunk=self._row_to_chunk(row, title),
                    document_title=title,
                )
            )

        return records

    def stats(self) -> Dict[str, Any]:
        """Document, chunk and embedding counts plus database size."""
        with self._connect("stats") as conn:
            total_documents = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            total_chunks = conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            total_embeddings = conn.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

        size = 0
        for suffix in ("", "-wal"):
            path = Path(f"{self.db_path}{suffix}")
            if path.exists():
                size += path.stat().st_size

        return {
            "total_documents": total_documents,
            "total_chunks": total_chunks,
            "total_embeddings": total_embeddings,
            "db_size_kb": round(size / 1024),
        }
