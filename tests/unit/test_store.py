"""Tests for the SQLite document and vector store."""
from datetime import datetime

import numpy as np
import pytest

from docrag.config import StorageConfig
from docrag.errors import DocumentNotFound, StorageError
from docrag.rag.chunker import Chunk
from docrag.rag.md_parser import ParsedDocument
from docrag.rag.store import VectorStore, pack_vector, unpack_vector


def parsed(filepath="notes/a.md", **metadata) -> ParsedDocument:
    metadata.setdefault("title", "A")
    metadata.setdefault("tags", [])
    return ParsedDocument(metadata=metadata, sections=[], raw_content="", filepath=filepath)


def chunk(document_id: str, position: int, content: str = None) -> Chunk:
    content = content or f"chunk {position}"
    return Chunk(
        content=content,
        position=position,
        char_start=0,
        char_end=len(content),
        document_title="A",
        section_heading="Intro",
        document_id=document_id,
    )


def test_initialize_enables_wal(store):
    """Test that the database uses write-ahead logging."""
    conn = store.get_connection()
    try:
        mode = conn.execute("PRAGMA journal_mode").fetchone()[0]
        fk = conn.execute("PRAGMA foreign_keys").fetchone()[0]
    finally:
        conn.close()

    assert mode.lower() == "wal"
    assert fk == 1


def test_store_initializes_lazily(tmp_path):
    """Test that the first operation creates the database."""
    db_path = tmp_path / "nested" / "index.db"
    lazy = VectorStore(StorageConfig(db_path=db_path))

    assert lazy.list_documents() == []
    assert db_path.exists()


def test_save_and_get_document(store):
    """Test document round trip including metadata."""
    document_id = store.save_document(parsed(tags=["docker", "ops"], author="me"))

    stored = store.get_document(document_id)
    assert stored.filepath == "notes/a.md"
    assert stored.title == "A"
    assert stored.tags == ["docker", "ops"]
    assert stored.metadata["author"] == "me"

    assert store.get_document_by_path("notes/a.md").id == document_id
    assert store.get_document("missing") is None


def test_indexed_at_not_before_created_at(store):
    """Test that a future creation date is clamped to the indexing time."""
    document_id = store.save_document(parsed(created="2999-01-01"))
    stored = store.get_document(document_id)

    assert datetime.fromisoformat(stored.indexed_at) >= datetime.fromisoformat(stored.created_at)


def test_past_created_date_is_kept(store):
    document_id = store.save_document(parsed(created="2024-01-15"))
    assert store.get_document(document_id).created_at.startswith("2024-01-15")


def test_duplicate_filepath_raises_storage_error(store):
    """Test that file paths are unique."""
    store.save_document(parsed())
    with pytest.raises(StorageError):
        store.save_document(parsed())


def test_chunks_come_back_in_position_order(store):
    """Test that chunks are ordered by position regardless of insert order."""
    document_id = store.save_document(parsed())
    store.save_chunks([chunk(document_id, 2), chunk(document_id, 0), chunk(document_id, 1)])

    chunks = store.get_chunks_for_document(document_id)

    assert [c.position for c in chunks] == [0, 1, 2]
    assert chunks[0].section_heading == "Intro"
    assert chunks[0].document_id == document_id


def test_save_chunks_is_all_or_nothing(store):
    """Test that a failing batch stores no chunks at all."""
    document_id = store.save_document(parsed())
    first = chunk(document_id, 0)
    duplicate = chunk(document_id, 1)
    duplicate.id = first.id

    with pytest.raises(StorageError):
        store.save_chunks([first, chunk(document_id, 2), duplicate])

    assert store.get_chunks_for_document(document_id) == []


def test_save_chunks_requires_existing_document(store):
    """Test that chunks cannot reference an unknown document."""
    with pytest.raises(StorageError):
        store.save_chunks([chunk("no-such-document", 0)])


def test_embedding_round_trip(store):
    """Test that vectors are packed as float32 and joined with their chunk."""
    document_id = store.save_document(parsed())
    saved = chunk(document_id, 0, "vector text")
    store.save_chunks([saved])
    store.save_embedding(saved.id, [0.1, 0.2, 0.3], "nomic-embed-text")

    records = store.get_all_embeddings_joined()

    assert len(records) == 1
    record = records[0]
    assert record.dimension == 3
    assert record.vector.dtype == np.float32
    assert np.allclose(record.vector, [0.1, 0.2, 0.3])
    assert record.chunk.content == "vector text"
    assert record.document_title == "A"


def test_embeddings_filtered_by_model(store):
    document_id = store.save_document(parsed())
    first, second = chunk(document_id, 0), chunk(document_id, 1)
    store.save_chunks([first, second])
    store.save_embedding(first.id, [1.0, 0.0], "model-a")
    store.save_embedding(second.id, [0.0, 1.0], "model-b")

    assert [r.chunk_id for r in store.get_all_embeddings_joined("model-b")] == [second.id]
    assert len(store.get_all_embeddings_joined()) == 2


def test_corrupt_dimension_is_skipped(store):
    """Test that a row whose blob disagrees with its dimension is skipped."""
    document_id = store.save_document(parsed())
    good, bad = chunk(document_id, 0), chunk(document_id, 1)
    store.save_chunks([good, bad])
    store.save_embedding(good.id, [1.0, 2.0], "m")
    store.save_embedding(bad.id, [1.0, 2.0], "m")

    conn = store.get_connection()
    conn.execute("UPDATE embeddings SET dimension = 5 WHERE chunk_id = ?", (bad.id,))
    conn.commit()
    conn.close()

    assert [r.chunk_id for r in store.get_all_embeddings_joined()] == [good.id]


def test_delete_document_cascades(store):
    """Test that deleting a document removes its chunks and embeddings."""
    keep_id = store.save_document(parsed("notes/keep.md"))
    drop_id = store.save_document(parsed("notes/drop.md"))
    kept, dropped = chunk(keep_id, 0), chunk(drop_id, 0)
    store.save_chunks([kept])
    store.save_chunks([dropped])
    store.save_embedding(kept.id, [1.0, 0.0], "m")
    store.save_embedding(dropped.id, [0.0, 1.0], "m")

    store.delete_document(drop_id)

    assert store.get_document(drop_id) is None
    assert store.get_chunks_for_document(drop_id) == []
    assert [r.chunk_id for r in store.get_all_embeddings_joined()] == [kept.id]
    assert store.stats()["total_embeddings"] == 1


def test_delete_unknown_document_raises(store):
    """Test that deleting a phantom id is an error, not a silent success."""
    with pytest.raises(DocumentNotFound):
        store.delete_document("does-not-exist")


def test_replace_document_swaps_copies(store):
    """Test that replacing a path drops the old copy and its embeddings."""
    old_id = store.replace_document(parsed(), [chunk("", 0)])
    old_chunk = store.get_chunks_for_document(old_id)[0]
    store.save_embedding(old_chunk.id, [1.0, 0.0], "m")

    new_chunks = [chunk("", 0), chunk("", 1)]
    new_id = store.replace_document(parsed(), new_chunks)

    assert new_id != old_id
    assert all(c.document_id == new_id for c in new_chunks)
    assert [d.id for d in store.list_documents()] == [new_id]
    assert [c.position for c in store.get_chunks_for_document(new_id)] == [0, 1]
    assert store.get_all_embeddings_joined() == []


def test_failed_replace_keeps_previous_copy(store):
    """Test that a failing chunk insert leaves the indexed copy untouched."""
    old_id = store.replace_document(parsed(), [chunk("", 0, "old text")])
    first = chunk("", 0)
    duplicate = chunk("", 1)
    duplicate.id = first.id

    with pytest.raises(StorageError):
        store.replace_document(parsed(), [first, duplicate])

    assert [d.id for d in store.list_documents()] == [old_id]
    assert [c.content for c in store.get_chunks_for_document(old_id)] == ["old text"]


def test_corrupt_chunk_metadata_is_tolerated(store):
    """Test that a chunk row with unreadable metadata still loads."""
    document_id = store.save_document(parsed())
    saved = chunk(document_id, 0, "still searchable")
    store.save_chunks([saved])
    store.save_embedding(saved.id, [1.0, 0.0], "m")

    conn = store.get_connection()
    conn.execute("UPDATE chunks SET metadata = '{not json' WHERE id = ?", (saved.id,))
    conn.commit()
    conn.close()

    records = store.get_all_embeddings_joined()

    assert [r.chunk.content for r in records] == ["still searchable"]
    assert records[0].chunk.section_heading is None
    assert records[0].document_title == "A"


def test_stats(store):
    """Test document, chunk and embedding counts."""
    document_id = store.save_document(parsed())
    saved = [chunk(document_id, 0), chunk(document_id, 1)]
    store.save_chunks(saved)
    store.save_embedding(saved[0].id, [1.0], "m")

    stats = store.stats()

    assert stats["total_documents"] == 1
    assert stats["total_chunks"] == 2
    assert stats["total_embeddings"] == 1
    assert stats["db_size_kb"] >= 0


def test_list_documents(store):
    ids = {store.save_document(parsed(f"notes/{n}.md")) for n in range(3)}
    assert {d.id for d in store.list_documents()} == ids


def test_vector_packing_is_little_endian_float32():
    """Test the binary vector layout."""
    blob = pack_vector([1.0, -2.5])
    assert blob == np.array([1.0, -2.5], dtype="<f4").tobytes()
    assert len(blob) == 8
    assert unpack_vector(blob).tolist() == [1.0, -2.5]
