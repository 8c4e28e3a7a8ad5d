"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Markdown parsing and section extraction
- Document chunking with overlap
- Embedding generation with retry
- SQLite document and vector storage
- Similarity search and LLM reranking
- Retrieval strategies and their comparison
"""
